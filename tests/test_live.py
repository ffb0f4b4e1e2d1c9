from __future__ import annotations

import asyncio

import pytest
from conftest import ANA, BEN, make_event, spin

from classroom_live.collaborators import StaticIdentity, WriteError
from classroom_live.common import LiveSettings
from classroom_live.live import LiveClient
from classroom_live.models import EntityKind, EntryStatus, Topic
from classroom_live.session import NotSignedInError

ROOM = Topic.room("42")


def _client(backend, user=ANA, **settings) -> tuple[LiveClient, StaticIdentity]:
    identity = StaticIdentity(user)
    settings.setdefault("grace_seconds", 0.05)
    client = LiveClient(
        query=backend,
        writer=backend,
        push=backend,
        identity=identity,
        settings=LiveSettings(**settings),
    )
    return client, identity


def _message(entity_id: str, sender_id: str = BEN.id) -> dict:
    return {"id": entity_id, "room_id": "42", "sender_id": sender_id, "content": f"msg {entity_id}"}


def _notification(entity_id: str, *, is_read: bool = False) -> dict:
    return {
        "id": entity_id,
        "user_id": ANA.id,
        "title": f"title {entity_id}",
        "message": "body",
        "type": "announcement",
        "is_read": is_read,
    }


@pytest.mark.anyio
async def test_two_views_share_one_subscription_and_one_fetch(backend):
    for i in range(1, 7):
        backend.seed(EntityKind.MESSAGE, _message(f"m{i}"))
    async with _client(backend)[0] as client:
        first = client.open_room("42")
        second = client.open_room("42")
        await first.ready()
        await second.ready()
        assert backend.subscribe_calls == 1
        assert backend.fetch_calls == 1
        assert first.entry.last_synced_seq == 6

        local_id = first.send("hi")
        for view in (first, second):
            assert view.messages[-1].id == local_id
            assert view.messages[-1].pending is True
        await spin()

        (confirmed,) = [m for m in first.messages if m.content == "hi"]
        stored = backend.rows[ROOM][confirmed.id]
        assert stored["seq"] == 7
        # redelivery of the confirming event changes nothing
        backend.emit(make_event(ROOM, "INSERT", confirmed.id, 7, stored))
        await spin()

        for view in (first, second):
            assert [m.content for m in view.messages].count("hi") == 1
            assert len(view.messages) == 7
            assert view.entry.last_synced_seq == 7
        first.close()
        second.close()


@pytest.mark.anyio
async def test_is_own_follows_the_session(backend):
    backend.seed(EntityKind.MESSAGE, _message("m1", sender_id=ANA.id))
    backend.seed(EntityKind.MESSAGE, _message("m2", sender_id=BEN.id))
    client, identity = _client(backend)
    with client.open_room("42") as room:
        await room.ready()
        assert [m.is_own for m in room.messages] == [True, False]

        identity.user = BEN
        client.session.refresh()
        assert [m.is_own for m in room.messages] == [False, True]
    await client.aclose()


@pytest.mark.anyio
async def test_send_shows_pending_then_confirmed(backend):
    client, _ = _client(backend)
    with client.open_room("42") as room:
        await room.ready()
        seen = []
        room.subscribe(lambda entry: seen.append(entry.ids()))

        local_id = room.send("  hello class  ")
        (pending,) = room.messages
        assert pending.id == local_id
        assert pending.pending is True
        assert pending.is_own is True
        assert pending.content == "hello class"

        await spin()
        (confirmed,) = room.messages
        assert confirmed.pending is False
        assert confirmed.client_message_id == local_id
        assert seen[-1] == [confirmed.id]
    await client.aclose()


@pytest.mark.anyio
async def test_send_rejects_blank_content(backend):
    client, _ = _client(backend)
    with client.open_room("42") as room:
        with pytest.raises(ValueError):
            room.send("   ")
    assert backend.insert_calls == 0
    await client.aclose()


@pytest.mark.anyio
async def test_failed_send_reaches_failure_listeners(backend):
    client, _ = _client(backend)
    failures = []
    client.on_mutation_failed(failures.append)
    with client.open_room("42") as room:
        await room.ready()
        backend.write_error = WriteError("room is read-only")
        local_id = room.send("hello")
        await spin()
        assert room.messages == []
    assert [(f.local_id, f.code) for f in failures] == [(local_id, "WRITE_REJECTED")]
    await client.aclose()


@pytest.mark.anyio
async def test_notifications_are_newest_first_and_limited(backend):
    for i in range(1, 5):
        backend.seed(EntityKind.NOTIFICATION, _notification(f"n{i}", is_read=i == 1))
    client, _ = _client(backend)
    with client.open_notifications(limit=3) as feed:
        await feed.ready()
        assert [n.id for n in feed.notifications] == ["n4", "n3", "n2"]
        assert feed.unread_count == 3

        local_id = feed.mark_read("n3")
        assert local_id is not None
        assert feed.unread_count == 2
        await spin()
        assert feed.unread_count == 2
        assert backend.rows[Topic.user(ANA.id)]["n3"]["is_read"] is True

        assert feed.mark_read("n3") is None
        with pytest.raises(KeyError):
            feed.mark_read("missing")
    await client.aclose()


@pytest.mark.anyio
async def test_deleted_notification_is_backfilled_to_the_limit(backend):
    for i in range(1, 5):
        backend.seed(EntityKind.NOTIFICATION, _notification(f"n{i}"))
    inbox = Topic.user(ANA.id)
    client, _ = _client(backend)
    with client.open_notifications(limit=3) as feed:
        await feed.ready()
        assert [n.id for n in feed.notifications] == ["n4", "n3", "n2"]

        seq = backend.remove(inbox, "n3")
        backend.emit(make_event(inbox, "DELETE", "n3", seq, kind=EntityKind.NOTIFICATION))
        await spin(20)

        assert [n.id for n in feed.notifications] == ["n4", "n2", "n1"]
        assert backend.fetch_calls == 2
        assert feed.entry.last_synced_seq == seq
    await client.aclose()


@pytest.mark.anyio
async def test_mark_all_read(backend):
    for i in range(1, 4):
        backend.seed(EntityKind.NOTIFICATION, _notification(f"n{i}"))
    client, _ = _client(backend)
    with client.open_notifications() as feed:
        await feed.ready()
        assert len(feed.mark_all_read()) == 3
        assert feed.unread_count == 0
        await spin()
        assert backend.update_calls == 3
        assert feed.unread_count == 0
    await client.aclose()


@pytest.mark.anyio
async def test_notifications_need_a_signed_in_user(backend):
    client, _ = _client(backend, user=None)
    with pytest.raises(NotSignedInError):
        client.open_notifications()
    await client.aclose()


@pytest.mark.anyio
async def test_reopening_inside_grace_reuses_cache_then_evicts(backend):
    backend.seed(EntityKind.MESSAGE, _message("m1"))
    client, _ = _client(backend)

    room = client.open_room("42")
    await room.ready()
    room.close()
    room.close()

    again = client.open_room("42")
    assert again.status is EntryStatus.FRESH
    await again.ready()
    assert backend.subscribe_calls == 1
    assert backend.fetch_calls == 1
    again.close()

    await asyncio.sleep(0.15)
    assert backend.unsubscribe_calls == 1
    assert again.status is EntryStatus.LOADING

    late = client.open_room("42")
    await late.ready()
    assert backend.subscribe_calls == 2
    assert backend.fetch_calls == 2
    late.close()
    await client.aclose()


@pytest.mark.anyio
async def test_room_without_an_id_is_rejected(backend):
    client, _ = _client(backend)
    with pytest.raises(ValueError):
        client.open_room("")
    assert backend.subscribe_calls == 0
    await client.aclose()
