"""Merges query snapshots, change events and optimistic mutations into the cache.

Events of one topic are applied in `server_seq` order. An event that arrives
ahead of the next expected seq is held back; if the missing seqs do not show
up within the gap timeout, the topic's entries are marked stale and re-fetched
once. The cache itself still drops anything at or below an entity's
last-applied seq, so replays and late duplicates are harmless.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from classroom_live.cache import ApplyResult, CacheStore
from classroom_live.collaborators import QueryCollaborator, TransportError, as_snapshot
from classroom_live.common import WarningCode
from classroom_live.feed import ChangeFeedClient
from classroom_live.models import (
    CacheEntry,
    CacheKey,
    ChangeEvent,
    Entity,
    EntryStatus,
    FeedStatus,
    Operation,
    Topic,
)
from classroom_live.mutations import OptimisticMutationQueue
from classroom_live.schemas import validate_entity

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _TopicState:
    topic: Topic
    head: int | None = None
    ahead: dict[int, ChangeEvent] = field(default_factory=dict)
    gap_timer: asyncio.TimerHandle | None = None
    consumer: asyncio.Task[None] | None = None
    disconnected: bool = False


class Reconciler:
    def __init__(
        self,
        store: CacheStore,
        query: QueryCollaborator,
        *,
        mutations: OptimisticMutationQueue | None = None,
        gap_timeout_seconds: float = 10.0,
        resync_initial_seconds: float = 0.25,
        resync_max_seconds: float = 4.0,
        resync_attempts: int = 5,
        max_buffered: int = 1000,
    ) -> None:
        if resync_attempts < 1:
            raise ValueError("resync_attempts must be >= 1")
        self._store = store
        self._query = query
        self._mutations = mutations
        self.gap_timeout_seconds = gap_timeout_seconds
        self.resync_initial_seconds = resync_initial_seconds
        self.resync_max_seconds = resync_max_seconds
        self.resync_attempts = resync_attempts
        self.max_buffered = max_buffered
        self._states: dict[Topic, _TopicState] = {}
        self._loads: dict[CacheKey, asyncio.Task[CacheEntry]] = {}
        self._resyncs: dict[Topic, asyncio.Task[None]] = {}
        self.fetch_count = 0

    # -- feed lifecycle (wired to SubscriptionManager) ----------------------

    def start(self, topic: Topic, client: ChangeFeedClient) -> None:
        state = self._states.setdefault(topic, _TopicState(topic))
        if client.status is FeedStatus.DISCONNECTED:
            state.disconnected = True
        state.consumer = asyncio.get_running_loop().create_task(
            self._consume(topic, client), name=f"feed-{topic}"
        )

    def stop(self, topic: Topic) -> None:
        """Forget a released topic: cancel its work and evict its cache entries."""
        state = self._states.pop(topic, None)
        if state is not None:
            if state.gap_timer is not None:
                state.gap_timer.cancel()
            if state.consumer is not None:
                state.consumer.cancel()
        resync = self._resyncs.pop(topic, None)
        if resync is not None:
            resync.cancel()
        for key in self._store.keys_for(topic):
            load = self._loads.pop(key, None)
            if load is not None:
                load.cancel()
            self._store.evict(key)

    async def _consume(self, topic: Topic, client: ChangeFeedClient) -> None:
        async for item in client:
            try:
                if isinstance(item, FeedStatus):
                    self.handle_status(topic, item)
                else:
                    self.handle_event(item)
            except Exception:
                logger.exception("failed to reconcile feed item topic=%s", topic)

    # -- queries -------------------------------------------------------------

    def track(self, key: CacheKey) -> asyncio.Task[CacheEntry] | None:
        """Make sure `key` is cached, starting its initial load if needed.

        Returns the load task, or None when the entry is already loaded.
        """
        running = self._loads.get(key)
        if running is not None and not running.done():
            return running
        if key in self._store and self._store.read(key).status is not EntryStatus.LOADING:
            return None
        self._store.ensure(key)
        task = asyncio.get_running_loop().create_task(self.load(key), name=f"load-{key.entity_kind}")
        self._loads[key] = task
        task.add_done_callback(lambda t, key=key: self._forget_load(key, t))
        return task

    def _forget_load(self, key: CacheKey, task: asyncio.Task[CacheEntry]) -> None:
        if self._loads.get(key) is task:
            del self._loads[key]

    async def load(self, key: CacheKey) -> CacheEntry:
        """Fetch a full snapshot for `key` and replace the cached entry.

        Transport failures mark the entry stale and are retried with
        exponential backoff; after the last attempt the entry stays stale.
        """
        delay = self.resync_initial_seconds
        for attempt in range(1, self.resync_attempts + 1):
            try:
                self.fetch_count += 1
                result = await self._query.fetch(
                    key.entity_kind, key.filters, f"created_at {key.order}", key.limit
                )
            except TransportError as e:
                self._store.mark_stale(key)
                logger.warning(
                    "fetch failed key=%s attempt=%s/%s: %s", key, attempt, self.resync_attempts, e
                )
                if attempt == self.resync_attempts:
                    break
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.resync_max_seconds)
                continue
            if key not in self._store:
                return self._store.read(key)
            snapshot = as_snapshot(result)
            entry = self._store.replace(key, self._valid_rows(key, snapshot.items), snapshot.seq)
            logger.debug("loaded key=%s items=%s seq=%s", key, len(entry.items), snapshot.seq)
            topic = key.topic
            if topic is not None:
                self._advance_head(topic, snapshot.seq)
            return entry
        return self._store.read(key)

    def resync(self, topic: Topic) -> asyncio.Task[None]:
        """Re-fetch every entry of `topic`, unless a resync is already running."""
        running = self._resyncs.get(topic)
        if running is not None and not running.done():
            return running
        task = asyncio.get_running_loop().create_task(self._resync(topic), name=f"resync-{topic}")
        self._resyncs[topic] = task
        task.add_done_callback(lambda t, topic=topic: self._forget_resync(topic, t))
        return task

    def _forget_resync(self, topic: Topic, task: asyncio.Task[None]) -> None:
        if self._resyncs.get(topic) is task:
            del self._resyncs[topic]

    async def _resync(self, topic: Topic) -> None:
        keys = self._store.keys_for(topic)
        with self._store.batch():
            for key in keys:
                self._store.mark_stale(key)
        logger.info("resyncing topic=%s keys=%s", topic, len(keys))
        for key in keys:
            await self.load(key)

    def _valid_rows(self, key: CacheKey, items: Iterable[Entity]) -> list[dict[str, Any]]:
        rows = []
        for item in items:
            try:
                rows.append(validate_entity(key.entity_kind, item))
            except ValueError as e:
                logger.warning("%s key=%s: %s", WarningCode.MALFORMED_EVENT, key, e)
        return rows

    # -- events --------------------------------------------------------------

    def handle_status(self, topic: Topic, status: FeedStatus) -> None:
        state = self._states.get(topic)
        if state is None:
            return
        if status is FeedStatus.DISCONNECTED:
            if state.disconnected:
                return
            state.disconnected = True
            logger.warning("%s topic=%s", WarningCode.FEED_DISCONNECTED, topic)
            with self._store.batch():
                for key in self._store.keys_for(topic):
                    self._store.mark_stale(key)
            return
        if state.disconnected:
            state.disconnected = False
            logger.info("feed reconnected topic=%s", topic)
            self.resync(topic)

    def handle_event(self, event: ChangeEvent) -> None:
        state = self._states.get(event.topic)
        if state is None:
            self._apply(event)
            return
        seq = event.server_seq
        if state.head is not None and seq <= state.head:
            self._apply(event)
            return
        if state.head is not None and seq == state.head + 1:
            state.head = seq
            self._apply(event)
            self._drain(state)
            return
        state.ahead.setdefault(seq, event)
        if len(state.ahead) > self.max_buffered:
            logger.warning(
                "%s topic=%s: %s events held back; resyncing",
                WarningCode.ORDERING_GAP,
                event.topic,
                len(state.ahead),
            )
            state.ahead.clear()
            self.resync(event.topic)
            return
        if state.head is not None:
            self._arm_gap_timer(state)

    def _advance_head(self, topic: Topic, seq: int) -> None:
        state = self._states.get(topic)
        if state is None:
            return
        state.head = seq if state.head is None else max(state.head, seq)
        self._drain(state)

    def _drain(self, state: _TopicState) -> None:
        if state.head is None:
            return
        for seq in sorted(s for s in state.ahead if s <= state.head):
            self._apply(state.ahead.pop(seq))
        while state.head + 1 in state.ahead:
            state.head += 1
            self._apply(state.ahead.pop(state.head))
        if not state.ahead:
            if state.gap_timer is not None:
                state.gap_timer.cancel()
                state.gap_timer = None
        else:
            self._arm_gap_timer(state)

    def _arm_gap_timer(self, state: _TopicState) -> None:
        if state.gap_timer is not None:
            return
        state.gap_timer = asyncio.get_running_loop().call_later(
            self.gap_timeout_seconds, self._gap_expired, state.topic
        )

    def _gap_expired(self, topic: Topic) -> None:
        state = self._states.get(topic)
        if state is None:
            return
        state.gap_timer = None
        if not state.ahead or state.head is None:
            return
        logger.warning(
            "%s topic=%s: expected seq %s, holding %s",
            WarningCode.ORDERING_GAP,
            topic,
            state.head + 1,
            sorted(state.ahead),
        )
        self.resync(topic)

    def _apply(self, event: ChangeEvent) -> None:
        keys = self._store.keys_for(event.topic, event.entity_kind)
        confirmed = self._mutations.match_event(event) if self._mutations is not None else []
        short: list[CacheKey] = []
        with self._store.batch():
            for key in keys:
                full = key.limit is not None and len(self._store.read(key).items) >= key.limit
                result = self._store.apply_change(key, event)
                if result is ApplyResult.DUPLICATE:
                    logger.debug("duplicate event key=%s seq=%s", key, event.server_seq)
                elif (
                    full
                    and result is ApplyResult.APPLIED
                    and event.operation is Operation.DELETE
                ):
                    short.append(key)
            for token in confirmed:
                self._store.revert(token)
        if any(self._store.read(key).status is EntryStatus.STALE for key in keys):
            self.resync(event.topic)
            return
        for key in short:
            self.refill(key)

    def refill(self, key: CacheKey) -> asyncio.Task[CacheEntry]:
        """Reload a limited key whose window lost a row to a delete."""
        running = self._loads.get(key)
        if running is not None and not running.done():
            return running
        logger.debug("refilling key=%s below its limit", key)
        task = asyncio.get_running_loop().create_task(self.load(key), name=f"refill-{key.entity_kind}")
        self._loads[key] = task
        task.add_done_callback(lambda t, key=key: self._forget_load(key, t))
        return task

    async def aclose(self) -> None:
        tasks: list[asyncio.Task] = [*self._loads.values(), *self._resyncs.values()]
        for state in self._states.values():
            if state.gap_timer is not None:
                state.gap_timer.cancel()
            if state.consumer is not None:
                tasks.append(state.consumer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._states.clear()
        self._loads.clear()
        self._resyncs.clear()
