"""Keyed, versioned in-memory cache of query results.

Each key holds the authoritative rows (from snapshots and change events) plus
an overlay of optimistic patches. The published `CacheEntry` is the overlay
applied on top of the authoritative rows, so removing a patch always restores
the entry that existed without it.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from classroom_live.common import WarningCode
from classroom_live.models import (
    CacheEntry,
    CacheKey,
    ChangeEvent,
    Entity,
    EntityKind,
    EntryStatus,
    Operation,
    Topic,
)

logger = logging.getLogger(__name__)

Observer = Callable[[CacheEntry], None]


class ApplyResult(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    IGNORED = "ignored"


@dataclass(frozen=True, slots=True)
class OptimisticPatch:
    operation: Operation
    entity_id: str
    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def insert(cls, entity: Mapping[str, Any]) -> OptimisticPatch:
        return cls(Operation.INSERT, str(entity["id"]), dict(entity))

    @classmethod
    def update(cls, entity_id: str, changes: Mapping[str, Any]) -> OptimisticPatch:
        return cls(Operation.UPDATE, str(entity_id), dict(changes))

    @classmethod
    def delete(cls, entity_id: str) -> OptimisticPatch:
        return cls(Operation.DELETE, str(entity_id))


@dataclass(frozen=True, slots=True)
class UndoToken:
    key: CacheKey
    patch_id: int


@dataclass(slots=True)
class _Deferred:
    event: ChangeEvent
    attempts: int = 0


@dataclass(slots=True)
class _Slot:
    key: CacheKey
    entry: CacheEntry
    base: list[dict[str, Any]] = field(default_factory=list)
    baseline_seq: int = 0
    last_synced_seq: int = 0
    status: EntryStatus = EntryStatus.LOADING
    seen: dict[str, int] = field(default_factory=dict)
    # newest applied event per entity, replayed over a snapshot older than it
    applied: dict[str, ChangeEvent] = field(default_factory=dict)
    deferred: list[_Deferred] = field(default_factory=list)
    patches: dict[int, OptimisticPatch] = field(default_factory=dict)
    observers: list[Observer] = field(default_factory=list)

    def position(self, entity_id: str) -> int | None:
        for pos, item in enumerate(self.base):
            if str(item["id"]) == entity_id:
                return pos
        return None

    def floor(self, entity_id: str) -> int:
        return max(self.baseline_seq, self.seen.get(entity_id, 0))


def _sort_key(item: Entity) -> tuple[float, str]:
    return (float(item.get("created_at") or 0.0), str(item["id"]))


def _sorted(items: Iterable[dict[str, Any]], key: CacheKey) -> list[dict[str, Any]]:
    return sorted(items, key=_sort_key, reverse=key.order == "desc")


class CacheStore:
    def __init__(self, *, max_update_retries: int = 3) -> None:
        if max_update_retries < 0:
            raise ValueError("max_update_retries must be >= 0")
        self.max_update_retries = max_update_retries
        self._slots: dict[CacheKey, _Slot] = {}
        self._patch_ids = itertools.count(1)
        self._batch_depth = 0
        self._dirty: dict[CacheKey, _Slot] = {}

    # -- reads -------------------------------------------------------------

    def read(self, key: CacheKey) -> CacheEntry:
        slot = self._slots.get(key)
        if slot is None:
            return CacheEntry.loading(key)
        return slot.entry

    def __contains__(self, key: object) -> bool:
        return key in self._slots

    def ensure(self, key: CacheKey) -> CacheEntry:
        """Start tracking `key`; a new key reads as Loading until its first replace."""
        return self._slot(key).entry

    def keys(self) -> list[CacheKey]:
        return list(self._slots)

    def keys_for(self, topic: Topic, entity_kind: EntityKind | None = None) -> list[CacheKey]:
        return [
            k
            for k in self._slots
            if k.topic == topic and (entity_kind is None or k.entity_kind is entity_kind)
        ]

    def subscribe(self, key: CacheKey, callback: Observer) -> Callable[[], None]:
        """Register an observer of `key`; returns the unsubscribe callable."""
        slot = self._slot(key)
        slot.observers.append(callback)

        def _unsubscribe() -> None:
            current = self._slots.get(key)
            if current is not None and callback in current.observers:
                current.observers.remove(callback)

        return _unsubscribe

    # -- authoritative writes ----------------------------------------------

    def replace(self, key: CacheKey, items: Iterable[Entity], seq: int) -> CacheEntry:
        """Full snapshot replace after an initial or resync query.

        Events already applied with a seq above the snapshot's are applied
        again on top of it, so a query that raced newer events loses nothing.
        """
        slot = self._slot(key)
        newer = sorted(
            (e for e in slot.applied.values() if e.server_seq > seq),
            key=lambda e: e.server_seq,
        )
        by_id: dict[str, dict[str, Any]] = {}
        for item in items:
            by_id[str(item["id"])] = dict(item)
        slot.base = _sorted(by_id.values(), key)
        slot.baseline_seq = seq
        slot.seen = {}
        slot.applied = {}
        slot.last_synced_seq = max(slot.last_synced_seq, seq)
        slot.status = EntryStatus.FRESH
        for event in newer:
            self._apply(slot, event)
        self._retry_deferred(slot)
        self._publish(slot)
        return slot.entry

    def apply_change(self, key: CacheKey, event: ChangeEvent) -> ApplyResult:
        slot = self._slots.get(key)
        if slot is None:
            return ApplyResult.IGNORED
        result = self._apply(slot, event)
        if result is ApplyResult.APPLIED:
            self._retry_deferred(slot)
        if result is not ApplyResult.DUPLICATE:
            self._publish(slot)
        return result

    def mark_stale(self, key: CacheKey) -> None:
        slot = self._slots.get(key)
        if slot is None or slot.status is EntryStatus.STALE:
            return
        slot.status = EntryStatus.STALE
        self._publish(slot)

    def evict(self, key: CacheKey) -> None:
        self._slots.pop(key, None)
        self._dirty.pop(key, None)

    # -- optimistic overlay -------------------------------------------------

    def patch_optimistic(self, key: CacheKey, patch: OptimisticPatch) -> UndoToken:
        slot = self._slots.get(key)
        if slot is None:
            raise KeyError(f"no cache entry for {key}")
        patch_id = next(self._patch_ids)
        slot.patches[patch_id] = patch
        self._publish(slot)
        return UndoToken(key=key, patch_id=patch_id)

    def revert(self, token: UndoToken) -> bool:
        """Drop an optimistic patch. Returns False if it (or its key) is already gone."""
        slot = self._slots.get(token.key)
        if slot is None or slot.patches.pop(token.patch_id, None) is None:
            return False
        self._publish(slot)
        return True

    def promote(self, token: UndoToken, *, entity_id: str | None = None) -> bool:
        """Keep an optimistic effect as authoritative, without a confirming event.

        Used when a write was acknowledged but no change event followed. The
        promoted row stays open to later events for the same entity.
        """
        slot = self._slots.get(token.key)
        if slot is None:
            return False
        patch = slot.patches.pop(token.patch_id, None)
        if patch is None:
            return False
        if patch.operation is Operation.INSERT:
            real_id = entity_id or patch.entity_id
            if slot.position(real_id) is None:
                row = {**patch.values, "id": real_id, "pending": False}
                slot.base = _sorted([*slot.base, row], slot.key)
        elif patch.operation is Operation.UPDATE:
            pos = slot.position(patch.entity_id)
            if pos is not None:
                slot.base[pos] = {**slot.base[pos], **patch.values}
        else:
            pos = slot.position(patch.entity_id)
            if pos is not None:
                del slot.base[pos]
        self._publish(slot)
        return True

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer observer notifications until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                dirty, self._dirty = self._dirty, {}
                for slot in dirty.values():
                    if self._slots.get(slot.key) is slot:
                        self._publish(slot)

    # -- internals ----------------------------------------------------------

    def _slot(self, key: CacheKey) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot(key=key, entry=CacheEntry.loading(key))
            self._slots[key] = slot
        return slot

    def _apply(self, slot: _Slot, event: ChangeEvent) -> ApplyResult:
        entity_id = event.entity_id
        if event.server_seq <= slot.floor(entity_id):
            return ApplyResult.DUPLICATE
        pos = slot.position(entity_id)

        if event.operation is Operation.DELETE:
            slot.seen[entity_id] = event.server_seq
            slot.applied[entity_id] = event
            slot.last_synced_seq = max(slot.last_synced_seq, event.server_seq)
            if pos is None:
                return ApplyResult.IGNORED
            del slot.base[pos]
            return ApplyResult.APPLIED

        if pos is None and event.operation is Operation.UPDATE:
            return self._defer(slot, event)
        # Row payloads are full rows: the newest one wins, whatever the operation.
        row = {**event.payload, "id": entity_id}
        rows = slot.base if pos is None else slot.base[:pos] + slot.base[pos + 1 :]
        slot.base = _sorted([*rows, row], slot.key)
        slot.seen[entity_id] = event.server_seq
        slot.applied[entity_id] = event
        slot.last_synced_seq = max(slot.last_synced_seq, event.server_seq)
        return ApplyResult.APPLIED

    def _defer(self, slot: _Slot, event: ChangeEvent) -> ApplyResult:
        for d in slot.deferred:
            if d.event.entity_id == event.entity_id and d.event.server_seq == event.server_seq:
                return ApplyResult.DUPLICATE
        if self.max_update_retries == 0:
            self._give_up(slot, event)
            return ApplyResult.IGNORED
        slot.deferred.append(_Deferred(event))
        logger.debug(
            "deferred update key=%s entity=%s seq=%s",
            slot.key,
            event.entity_id,
            event.server_seq,
        )
        return ApplyResult.DEFERRED

    def _retry_deferred(self, slot: _Slot) -> None:
        if not slot.deferred:
            return
        pending, slot.deferred = slot.deferred, []
        for d in sorted(pending, key=lambda d: d.event.server_seq):
            if d.event.server_seq <= slot.floor(d.event.entity_id):
                continue
            if slot.position(d.event.entity_id) is not None:
                self._apply(slot, d.event)
                continue
            d.attempts += 1
            if d.attempts >= self.max_update_retries:
                self._give_up(slot, d.event)
                continue
            slot.deferred.append(d)

    def _give_up(self, slot: _Slot, event: ChangeEvent) -> None:
        logger.warning(
            "%s key=%s entity=%s seq=%s; marking stale",
            WarningCode.UPDATE_RETRIES_EXHAUSTED,
            slot.key,
            event.entity_id,
            event.server_seq,
        )
        slot.status = EntryStatus.STALE

    def _compose(self, slot: _Slot) -> CacheEntry:
        items = list(slot.base)
        if slot.patches:
            ids = {str(i["id"]) for i in items}
            client_ids = {i.get("client_message_id") for i in items} - {None}
            for patch in slot.patches.values():
                if patch.operation is Operation.INSERT:
                    client_id = patch.values.get("client_message_id")
                    if patch.entity_id in ids or (client_id is not None and client_id in client_ids):
                        continue
                    items.append(dict(patch.values))
                    ids.add(patch.entity_id)
                    continue
                for pos, item in enumerate(items):
                    if str(item["id"]) != patch.entity_id:
                        continue
                    if patch.operation is Operation.UPDATE:
                        items[pos] = {**item, **patch.values}
                    else:
                        del items[pos]
                    break
            items = _sorted(items, slot.key)
        return CacheEntry(
            key=slot.key,
            items=tuple(items),
            last_synced_seq=slot.last_synced_seq,
            status=slot.status,
        )

    def _publish(self, slot: _Slot) -> None:
        if self._batch_depth:
            self._dirty[slot.key] = slot
            return
        entry = self._compose(slot)
        if entry == slot.entry:
            return
        slot.entry = entry
        for observer in list(slot.observers):
            try:
                observer(entry)
            except Exception:
                logger.exception("cache observer failed key=%s", slot.key)
