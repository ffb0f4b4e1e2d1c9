from __future__ import annotations

import asyncio
import logging

import pytest
from conftest import ANA, make_event, spin

from classroom_live.cache import CacheStore
from classroom_live.collaborators import StaticIdentity, TransportError, WriteError
from classroom_live.feed import ChangeFeedClient
from classroom_live.models import CacheKey, EntityKind, MutationState, Topic
from classroom_live.mutations import OptimisticMutationQueue
from classroom_live.reconciler import Reconciler
from classroom_live.session import NotSignedInError, SessionContext

ROOM = Topic.room("42")
KEY = CacheKey.room_messages("42")
INBOX = CacheKey.user_notifications(ANA.id)


class _Stack:
    def __init__(self, backend, user=ANA, **kwargs) -> None:
        self.store = CacheStore()
        self.session = SessionContext(StaticIdentity(user))
        self.queue = OptimisticMutationQueue(self.store, backend, self.session, **kwargs)
        self.reconciler = Reconciler(self.store, backend, mutations=self.queue)
        self.outcomes = []
        self.failures = []
        self.queue.on_outcome(self.outcomes.append)
        self.queue.on_failure(self.failures.append)

    async def open(self, backend, topic: Topic, key: CacheKey) -> None:
        self.reconciler.start(topic, ChangeFeedClient(backend).open(topic))
        await self.reconciler.track(key)

    async def aclose(self) -> None:
        await self.queue.aclose()
        await self.reconciler.aclose()


@pytest.mark.anyio
async def test_send_is_visible_before_the_write_returns(backend):
    stack = _Stack(backend)
    await stack.open(backend, ROOM, KEY)

    local_id = stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "hello"})
    entry = stack.store.read(KEY)
    assert entry.ids() == [local_id]
    row = entry.items[0]
    assert row["pending"] is True
    assert row["sender_id"] == ANA.id
    assert row["sender_name"] == "Ana"
    assert stack.queue.get(local_id).state is MutationState.IN_FLIGHT

    await spin()
    entry = stack.store.read(KEY)
    assert len(entry.items) == 1
    assert entry.items[0]["id"].startswith("srv-")
    assert not entry.items[0].get("pending")
    assert [m.state for m in stack.outcomes] == [MutationState.CONFIRMED]
    assert stack.outcomes[0].reconciled_by_timeout is False
    assert stack.queue.pending() == []
    await stack.aclose()


@pytest.mark.anyio
async def test_write_payload_leaves_out_display_columns(backend):
    stack = _Stack(backend)
    await stack.open(backend, ROOM, KEY)
    local_id = stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "hi"})
    await spin()

    (stored,) = backend.rows[ROOM].values()
    assert stored["client_message_id"] == local_id
    assert stored["sender_id"] == ANA.id
    assert "pending" not in stored
    assert "sender_name" not in stored
    await stack.aclose()


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("error", "code"),
    [
        (WriteError("content rejected"), "WRITE_REJECTED"),
        (WriteError("deadline exceeded", timed_out=True), "WRITE_TIMEOUT"),
        (TransportError("offline"), "TRANSPORT_UNAVAILABLE"),
        (RuntimeError("writer crashed"), "WRITE_REJECTED"),
    ],
)
async def test_failed_write_reverts_and_reports(backend, error, code):
    row, _ = backend.seed(EntityKind.MESSAGE, {"room_id": "42", "sender_id": "u-ben", "content": "hi"})
    stack = _Stack(backend)
    await stack.open(backend, ROOM, KEY)
    before = stack.store.read(KEY)

    backend.write_error = error
    local_id = stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "nope"})
    assert stack.store.read(KEY).ids() == [row["id"], local_id]
    await spin()

    assert stack.store.read(KEY) == before
    (failure,) = stack.failures
    assert failure.local_id == local_id
    assert failure.code == code
    assert stack.outcomes[0].state is MutationState.FAILED
    await stack.aclose()


@pytest.mark.anyio
async def test_one_failed_send_leaves_other_sends_alone(backend):
    stack = _Stack(backend)
    await stack.open(backend, ROOM, KEY)
    backend.write_delay = 0.02
    backend.reject = lambda payload: (
        WriteError("blocked word") if payload.get("content") == "bad" else None
    )

    good = stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "good"})
    bad = stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "bad"})
    assert set(stack.store.read(KEY).ids()) == {good, bad}
    await asyncio.sleep(0.1)

    assert [(f.local_id, f.code) for f in stack.failures] == [(bad, "WRITE_REJECTED")]
    (row,) = stack.store.read(KEY).items
    assert row["content"] == "good"
    assert row["client_message_id"] == good
    assert not row.get("pending")
    assert {(m.local_id, m.state) for m in stack.outcomes} == {
        (good, MutationState.CONFIRMED),
        (bad, MutationState.FAILED),
    }
    assert stack.queue.pending() == []
    await stack.aclose()


@pytest.mark.anyio
async def test_slow_write_times_out(backend):
    stack = _Stack(backend, write_timeout_seconds=0.05)
    await stack.open(backend, ROOM, KEY)
    backend.write_delay = 0.5
    stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "slow"})
    await asyncio.sleep(0.1)

    assert [f.code for f in stack.failures] == ["WRITE_TIMEOUT"]
    assert stack.store.read(KEY).items == ()
    await stack.aclose()


@pytest.mark.anyio
async def test_ack_without_event_confirms_by_timeout(backend, caplog):
    caplog.set_level(logging.INFO, logger="classroom_live.mutations")
    stack = _Stack(backend, confirm_timeout_seconds=0.05)
    await stack.open(backend, ROOM, KEY)
    backend.auto_publish = False

    stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "quiet"})
    await asyncio.sleep(0.1)

    (outcome,) = stack.outcomes
    assert outcome.state is MutationState.CONFIRMED
    assert outcome.reconciled_by_timeout is True
    entry = stack.store.read(KEY)
    assert entry.ids() == [outcome.entity_id]
    assert entry.items[0]["pending"] is False
    assert "RECONCILED_BY_TIMEOUT" in caplog.text

    # the event shows up late: still a single row
    stored = backend.rows[ROOM][outcome.entity_id]
    backend.emit(make_event(ROOM, "INSERT", outcome.entity_id, stored["seq"], stored))
    await spin()
    assert stack.store.read(KEY).ids() == [outcome.entity_id]
    assert len(stack.outcomes) == 1
    await stack.aclose()


@pytest.mark.anyio
async def test_mark_read_patches_then_confirms(backend):
    row, _ = backend.seed(
        EntityKind.NOTIFICATION,
        {"user_id": ANA.id, "title": "Quiz", "message": "graded", "type": "grade", "is_read": False},
    )
    stack = _Stack(backend)
    await stack.open(backend, Topic.user(ANA.id), INBOX)

    stack.queue.submit(EntityKind.NOTIFICATION, {"is_read": True}, target_id=row["id"])
    assert stack.store.read(INBOX).find(row["id"])["is_read"] is True
    await spin()

    assert backend.update_calls == 1
    assert stack.store.read(INBOX).find(row["id"])["is_read"] is True
    (outcome,) = stack.outcomes
    assert outcome.state is MutationState.CONFIRMED
    assert outcome.entity_id == row["id"]
    await stack.aclose()


@pytest.mark.anyio
async def test_submit_requires_a_signed_in_user(backend):
    stack = _Stack(backend, user=None)
    with pytest.raises(NotSignedInError):
        stack.queue.submit(EntityKind.MESSAGE, {"room_id": "42", "content": "hi"})
    assert backend.insert_calls == 0
    await stack.aclose()
