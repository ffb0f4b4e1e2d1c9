from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from classroom_live.collaborators import OnEvent, Snapshot, TransportError, WriteError
from classroom_live.models import (
    ChangeEvent,
    EntityKind,
    FeedStatus,
    Identity,
    Operation,
    Role,
    Topic,
)

ANA = Identity(id="u-ana", role=Role.STUDENT, name="Ana")
BEN = Identity(id="u-ben", role=Role.TEACHER, name="Ben")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def spin(times: int = 10) -> None:
    """Let queued callbacks and tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


def topic_of(kind: EntityKind, row: Mapping[str, Any]) -> Topic:
    if kind is EntityKind.MESSAGE:
        return Topic.room(str(row["room_id"]))
    return Topic.user(str(row["user_id"]))


def make_event(
    topic: Topic | str,
    operation: Operation | str,
    entity_id: str,
    server_seq: int,
    payload: Mapping[str, Any] | None = None,
    *,
    kind: EntityKind = EntityKind.MESSAGE,
) -> ChangeEvent:
    return ChangeEvent(
        topic=Topic.parse(topic) if isinstance(topic, str) else topic,
        operation=Operation(operation),
        entity_kind=kind,
        entity_id=entity_id,
        payload=dict(payload or {}),
        server_seq=server_seq,
    )


class FakeBackend:
    """In-memory query, write and push collaborators that count their calls."""

    def __init__(self) -> None:
        self.rows: dict[Topic, dict[str, dict[str, Any]]] = {}
        self.seq: dict[Topic, int] = {}
        self.handlers: dict[Topic, list[OnEvent]] = {}
        self.fetch_calls = 0
        self.insert_calls = 0
        self.update_calls = 0
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0
        self.fetch_failures = 0
        self.fetch_delay = 0.0
        # read rows when called and return them after `fetch_delay`
        self.snapshot_on_call = False
        self.subscribe_error: Exception | None = None
        self.write_error: Exception | None = None
        self.reject: Callable[[Mapping[str, Any]], Exception | None] | None = None
        self.write_delay = 0.0
        self.auto_publish = True
        self._clock = itertools.count(1)
        self._ids = itertools.count(1)

    # -- seeding -----------------------------------------------------------

    def seed(self, kind: EntityKind, row: Mapping[str, Any]) -> tuple[dict[str, Any], int]:
        """Store a row without publishing it; returns (row, seq)."""
        topic = topic_of(kind, row)
        full = {"created_at": float(next(self._clock)), **row}
        full.setdefault("id", f"srv-{next(self._ids)}")
        seq = self._bump(topic)
        full["seq"] = seq
        self.rows.setdefault(topic, {})[str(full["id"])] = full
        return full, seq

    def remove(self, topic: Topic, entity_id: str) -> int:
        """Delete a stored row without publishing it; returns the new seq."""
        del self.rows[topic][entity_id]
        return self._bump(topic)

    def _bump(self, topic: Topic) -> int:
        self.seq[topic] = self.seq.get(topic, 0) + 1
        return self.seq[topic]

    def emit(self, event: ChangeEvent | Mapping[str, Any] | FeedStatus, topic: Topic | None = None) -> None:
        if isinstance(event, ChangeEvent):
            topic = event.topic
        elif isinstance(event, Mapping):
            topic = Topic.parse(str(event["topic"]))
        assert topic is not None
        for handler in list(self.handlers.get(topic, [])):
            handler(event)

    # -- collaborator API ----------------------------------------------------

    async def fetch(
        self,
        resource_kind: EntityKind,
        filter_params: Mapping[str, Any],
        order_by: str,
        limit: int | None = None,
    ) -> Snapshot:
        self.fetch_calls += 1
        if self.snapshot_on_call:
            snapshot = self._snapshot(resource_kind, filter_params, order_by, limit)
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            raise TransportError("query service unreachable")
        if self.snapshot_on_call:
            return snapshot
        return self._snapshot(resource_kind, filter_params, order_by, limit)

    def _snapshot(
        self,
        resource_kind: EntityKind,
        filter_params: Mapping[str, Any],
        order_by: str,
        limit: int | None,
    ) -> Snapshot:
        topic = topic_of(resource_kind, filter_params)
        items = sorted(
            self.rows.get(topic, {}).values(),
            key=lambda r: (r["created_at"], r["id"]),
            reverse=order_by.endswith("desc"),
        )
        if limit is not None:
            items = items[:limit]
        return Snapshot(items=tuple(dict(i) for i in items), seq=self.seq.get(topic, 0))

    def _check_write(self, payload: Mapping[str, Any]) -> None:
        if self.write_error is not None:
            raise self.write_error
        if self.reject is not None and (error := self.reject(payload)) is not None:
            raise error

    async def insert(self, resource_kind: EntityKind, payload: Mapping[str, Any]) -> str:
        self.insert_calls += 1
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self._check_write(payload)
        row, seq = self.seed(resource_kind, payload)
        if self.auto_publish:
            self.emit(
                make_event(
                    topic_of(resource_kind, row), "INSERT", row["id"], seq, row, kind=resource_kind
                )
            )
        return str(row["id"])

    async def update(
        self, resource_kind: EntityKind, entity_id: str, patch: Mapping[str, Any]
    ) -> None:
        self.update_calls += 1
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self._check_write(patch)
        for topic, rows in self.rows.items():
            if entity_id in rows:
                seq = self._bump(topic)
                row = {**rows[entity_id], **patch, "seq": seq}
                rows[entity_id] = row
                if self.auto_publish:
                    self.emit(make_event(topic, "UPDATE", entity_id, seq, row, kind=resource_kind))
                return
        raise WriteError(f"no such {resource_kind}: {entity_id}")

    def subscribe(self, topic: Topic, on_event: OnEvent):
        self.subscribe_calls += 1
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.handlers.setdefault(topic, []).append(on_event)

        def _unsubscribe() -> None:
            self.unsubscribe_calls += 1
            self.handlers[topic].remove(on_event)

        return _unsubscribe


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
