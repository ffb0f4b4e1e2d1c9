from __future__ import annotations

import pytest

from classroom_live.models import (
    CacheKey,
    EntityKind,
    Message,
    MutationState,
    Notification,
    Operation,
    PendingMutation,
    Topic,
)


def test_topic_parse_and_str_round_trip():
    t = Topic.parse("room:42")
    assert t == Topic.room("42")
    assert str(t) == "room:42"
    assert Topic.user("u1").kind == "user"


@pytest.mark.parametrize("value", ["42", "class:1", "room:"])
def test_topic_parse_rejects_bad_values(value):
    with pytest.raises(ValueError):
        Topic.parse(value)


def test_cache_key_is_order_independent_and_knows_its_topic():
    a = CacheKey.of(EntityKind.MESSAGE, room_id="42", extra="x")
    b = CacheKey.of(EntityKind.MESSAGE, extra="x", room_id="42")
    assert a == b
    assert hash(a) == hash(b)
    assert a.topic == Topic.room("42")

    feed = CacheKey.user_notifications("u1", limit=10)
    assert feed.order == "desc"
    assert feed.topic == Topic.user("u1")
    assert feed.filters == {"user_id": "u1"}


def test_message_is_own_compares_sender_with_viewer():
    row = {"id": "m1", "room_id": "42", "sender_id": "u1", "content": "hi", "created_at": 1.0}
    assert Message.from_entity(row, viewer_id="u1").is_own is True
    assert Message.from_entity(row, viewer_id="u2").is_own is False
    assert Message.from_entity(row).is_own is False


def test_notification_defaults_and_extra_columns():
    n = Notification.from_entity(
        {"id": "n1", "user_id": "u1", "title": "T", "message": "M", "created_at": 2.0, "seq": 4}
    )
    assert n.type == "general"
    assert n.is_read is False
    assert n.extra == {"seq": 4}


def test_pending_mutation_operation_and_terminal():
    m = PendingMutation("local-1", EntityKind.MESSAGE, {"content": "x"}, 1.0)
    assert m.operation is Operation.INSERT
    assert m.terminal is False
    u = PendingMutation(
        "local-2", EntityKind.NOTIFICATION, {"is_read": True}, 1.0, state=MutationState.FAILED, target_id="n1"
    )
    assert u.operation is Operation.UPDATE
    assert u.terminal is True
