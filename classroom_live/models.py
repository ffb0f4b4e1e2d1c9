from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

Entity = Mapping[str, Any]
TopicKind = Literal["room", "user"]
SortOrder = Literal["asc", "desc"]


class Operation(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityKind(StrEnum):
    MESSAGE = "message"
    NOTIFICATION = "notification"


class EntryStatus(StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    LOADING = "loading"


class MutationState(StrEnum):
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Role(StrEnum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class FeedStatus(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class Topic:
    kind: TopicKind
    id: str

    def __post_init__(self) -> None:
        if self.kind not in ("room", "user"):
            raise ValueError(f"unknown topic kind: {self.kind!r}")
        if not self.id:
            raise ValueError("topic id must be a non-empty string")

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"

    @classmethod
    def room(cls, room_id: str) -> Topic:
        return cls("room", str(room_id))

    @classmethod
    def user(cls, user_id: str) -> Topic:
        return cls("user", str(user_id))

    @classmethod
    def parse(cls, value: str) -> Topic:
        kind, sep, ident = value.partition(":")
        if not sep:
            raise ValueError(f"topic must look like 'room:<id>' or 'user:<id>': {value!r}")
        if kind not in ("room", "user"):
            raise ValueError(f"unknown topic kind: {kind!r}")
        return cls(kind, ident)


@dataclass(frozen=True, slots=True, eq=True)
class ChangeEvent:
    topic: Topic
    operation: Operation
    entity_kind: EntityKind
    entity_id: str
    payload: Mapping[str, Any]
    server_seq: int

    __hash__ = None  # type: ignore[assignment]


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Address of one query result: entity kind plus sorted filter params."""

    entity_kind: EntityKind
    params: tuple[tuple[str, Any], ...]
    order: SortOrder = "asc"
    limit: int | None = None

    @classmethod
    def of(
        cls,
        entity_kind: EntityKind,
        *,
        order: SortOrder = "asc",
        limit: int | None = None,
        **params: Any,
    ) -> CacheKey:
        return cls(entity_kind, tuple(sorted(params.items())), order, limit)

    @classmethod
    def room_messages(cls, room_id: str) -> CacheKey:
        return cls.of(EntityKind.MESSAGE, room_id=str(room_id))

    @classmethod
    def user_notifications(cls, user_id: str, *, limit: int | None = None) -> CacheKey:
        return cls.of(EntityKind.NOTIFICATION, order="desc", limit=limit, user_id=str(user_id))

    def param(self, name: str, default: Any = None) -> Any:
        return dict(self.params).get(name, default)

    @property
    def filters(self) -> dict[str, Any]:
        return dict(self.params)

    @property
    def topic(self) -> Topic | None:
        if self.entity_kind is EntityKind.MESSAGE and self.param("room_id"):
            return Topic.room(self.param("room_id"))
        if self.entity_kind is EntityKind.NOTIFICATION and self.param("user_id"):
            return Topic.user(self.param("user_id"))
        return None


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: CacheKey
    items: tuple[Entity, ...]
    last_synced_seq: int
    status: EntryStatus

    @classmethod
    def loading(cls, key: CacheKey) -> CacheEntry:
        return cls(key=key, items=(), last_synced_seq=0, status=EntryStatus.LOADING)

    def ids(self) -> list[str]:
        return [str(item["id"]) for item in self.items]

    def find(self, entity_id: str) -> Entity | None:
        for item in self.items:
            if str(item["id"]) == entity_id:
                return item
        return None


@dataclass(frozen=True, slots=True)
class PendingMutation:
    local_id: str
    entity_kind: EntityKind
    intended_payload: Mapping[str, Any]
    submitted_at: float
    state: MutationState = MutationState.IN_FLIGHT
    target_id: str | None = None
    entity_id: str | None = None
    reconciled_by_timeout: bool = False

    @property
    def operation(self) -> Operation:
        return Operation.INSERT if self.target_id is None else Operation.UPDATE

    @property
    def terminal(self) -> bool:
        return self.state is not MutationState.IN_FLIGHT


@dataclass(frozen=True, slots=True)
class MutationFailure:
    local_id: str
    entity_kind: EntityKind
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class Identity:
    id: str
    role: Role
    name: str | None = None


@dataclass(frozen=True, slots=True)
class ChatRoom:
    room_id: str
    name: str
    type: str
    created_at: float
    class_id: str | None = None


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    room_id: str
    sender_id: str
    content: str
    created_at: float
    sender_name: str | None = None
    client_message_id: str | None = None
    pending: bool = False
    is_own: bool = False

    @classmethod
    def from_entity(cls, item: Entity, *, viewer_id: str | None = None) -> Message:
        sender_id = str(item["sender_id"])
        return cls(
            id=str(item["id"]),
            room_id=str(item["room_id"]),
            sender_id=sender_id,
            content=str(item.get("content", "")),
            created_at=float(item["created_at"]),
            sender_name=item.get("sender_name"),
            client_message_id=item.get("client_message_id"),
            pending=bool(item.get("pending", False)),
            is_own=viewer_id is not None and sender_id == viewer_id,
        )


@dataclass(frozen=True, slots=True)
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    message: str
    created_at: float
    link: str | None = None
    is_read: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entity(cls, item: Entity) -> Notification:
        known = {"id", "user_id", "type", "title", "message", "created_at", "link", "is_read"}
        return cls(
            id=str(item["id"]),
            user_id=str(item["user_id"]),
            type=str(item.get("type") or "general"),
            title=str(item.get("title", "")),
            message=str(item.get("message", "")),
            created_at=float(item["created_at"]),
            link=item.get("link"),
            is_read=bool(item.get("is_read") or False),
            extra={k: v for k, v in item.items() if k not in known},
        )
