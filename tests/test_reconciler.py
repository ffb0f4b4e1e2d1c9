from __future__ import annotations

import asyncio

import pytest
from conftest import make_event, spin

from classroom_live.cache import CacheStore
from classroom_live.feed import ChangeFeedClient
from classroom_live.models import CacheKey, EntityKind, EntryStatus, FeedStatus, Topic
from classroom_live.reconciler import Reconciler

ROOM = Topic.room("42")
KEY = CacheKey.room_messages("42")


def _row(entity_id: str) -> dict:
    return {"id": entity_id, "room_id": "42", "sender_id": "u1", "content": f"msg {entity_id}"}


def _wire(backend, **kwargs) -> tuple[CacheStore, Reconciler]:
    store = CacheStore()
    kwargs.setdefault("gap_timeout_seconds", 0.05)
    rec = Reconciler(store, backend, resync_initial_seconds=0.01, **kwargs)
    rec.start(ROOM, ChangeFeedClient(backend).open(ROOM))
    return store, rec


def _publish(backend, entity_id: str) -> int:
    row, seq = backend.seed(EntityKind.MESSAGE, _row(entity_id))
    backend.emit(make_event(ROOM, "INSERT", entity_id, seq, row))
    return seq


@pytest.mark.anyio
async def test_missing_seq_triggers_exactly_one_resync(backend):
    for i in range(1, 6):
        backend.seed(EntityKind.MESSAGE, _row(f"m{i}"))
    store, rec = _wire(backend)
    entry = await rec.track(KEY)
    assert entry.last_synced_seq == 5
    assert backend.fetch_calls == 1

    backend.seed(EntityKind.MESSAGE, _row("m6"))  # seq 6 never reaches the feed
    _publish(backend, "m7")
    await spin()
    assert "m7" not in store.read(KEY).ids()

    await asyncio.sleep(0.15)
    entry = store.read(KEY)
    assert backend.fetch_calls == 2
    assert entry.status is EntryStatus.FRESH
    assert entry.last_synced_seq == 7
    assert entry.ids() == [f"m{i}" for i in range(1, 8)]

    await asyncio.sleep(0.15)
    assert backend.fetch_calls == 2
    await rec.aclose()


@pytest.mark.anyio
async def test_gap_filled_before_timeout_needs_no_resync(backend):
    backend.seed(EntityKind.MESSAGE, _row("m1"))
    store, rec = _wire(backend)
    await rec.track(KEY)

    row2, seq2 = backend.seed(EntityKind.MESSAGE, _row("m2"))
    _publish(backend, "m3")
    backend.emit(make_event(ROOM, "INSERT", "m2", seq2, row2))
    await asyncio.sleep(0.15)

    entry = store.read(KEY)
    assert entry.ids() == ["m1", "m2", "m3"]
    assert entry.last_synced_seq == 3
    assert backend.fetch_calls == 1
    await rec.aclose()


@pytest.mark.anyio
async def test_events_before_the_snapshot_are_held_until_it_lands(backend):
    backend.seed(EntityKind.MESSAGE, _row("m1"))
    backend.fetch_delay = 0.05
    store, rec = _wire(backend)
    load = rec.track(KEY)
    await spin()

    # seq 2 is emitted while the fetch is in flight and is not part of its result
    backend.emit(make_event(ROOM, "INSERT", "m2", 2, {**_row("m2"), "created_at": 99.0}))
    await spin()
    assert store.read(KEY).status is EntryStatus.LOADING

    entry = await load
    assert entry.last_synced_seq == 1
    entry = store.read(KEY)
    assert entry.ids() == ["m1", "m2"]
    assert entry.last_synced_seq == 2
    await rec.aclose()


@pytest.mark.anyio
async def test_transport_failure_marks_stale_then_retries(backend):
    backend.seed(EntityKind.MESSAGE, _row("m1"))
    backend.fetch_failures = 1
    store, rec = _wire(backend)
    statuses = []
    store.subscribe(KEY, lambda entry: statuses.append(entry.status))

    entry = await rec.track(KEY)
    assert entry.status is EntryStatus.FRESH
    assert statuses == [EntryStatus.STALE, EntryStatus.FRESH]
    assert backend.fetch_calls == 2
    assert rec.fetch_count == 2
    await rec.aclose()


@pytest.mark.anyio
async def test_gives_up_after_the_last_attempt(backend):
    backend.fetch_failures = 10
    store, rec = _wire(backend, resync_attempts=3)
    entry = await rec.track(KEY)
    assert entry.status is EntryStatus.STALE
    assert backend.fetch_calls == 3
    await rec.aclose()


@pytest.mark.anyio
async def test_disconnect_marks_stale_and_reconnect_resyncs(backend):
    backend.seed(EntityKind.MESSAGE, _row("m1"))
    store, rec = _wire(backend)
    await rec.track(KEY)

    backend.emit(FeedStatus.DISCONNECTED, topic=ROOM)
    await spin()
    assert store.read(KEY).status is EntryStatus.STALE

    backend.seed(EntityKind.MESSAGE, _row("m2"))  # written while offline
    backend.emit(FeedStatus.CONNECTED, topic=ROOM)
    await asyncio.sleep(0.05)

    entry = store.read(KEY)
    assert entry.status is EntryStatus.FRESH
    assert entry.ids() == ["m1", "m2"]
    assert backend.fetch_calls == 2
    await rec.aclose()


@pytest.mark.anyio
async def test_overflowing_hold_back_buffer_resyncs(backend):
    backend.seed(EntityKind.MESSAGE, _row("m1"))
    store, rec = _wire(backend, max_buffered=2, gap_timeout_seconds=10.0)
    await rec.track(KEY)

    backend.seed(EntityKind.MESSAGE, _row("m2"))
    for name in ("m3", "m4", "m5"):
        _publish(backend, name)
    await asyncio.sleep(0.05)

    entry = store.read(KEY)
    assert backend.fetch_calls == 2
    assert entry.last_synced_seq == 5
    assert len(entry.items) == 5
    await rec.aclose()


@pytest.mark.anyio
async def test_stop_evicts_the_topic(backend):
    store, rec = _wire(backend)
    await rec.track(KEY)
    assert KEY in store
    rec.stop(ROOM)
    assert KEY not in store
    assert rec.track(KEY) is not None
    await rec.aclose()


@pytest.mark.anyio
async def test_event_during_resync_survives_an_older_snapshot(backend):
    backend.seed(EntityKind.MESSAGE, _row("m1"))
    store, rec = _wire(backend)
    await rec.track(KEY)

    backend.snapshot_on_call = True
    backend.fetch_delay = 0.05
    resync = rec.resync(ROOM)
    await spin()
    _publish(backend, "m2")
    await spin()
    assert store.read(KEY).ids() == ["m1", "m2"]

    await resync
    entry = store.read(KEY)
    assert entry.ids() == ["m1", "m2"]
    assert entry.last_synced_seq == 2
    assert entry.status is EntryStatus.FRESH
    assert backend.fetch_calls == 2
    await rec.aclose()
