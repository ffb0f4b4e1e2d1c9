from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from classroom_live.models import (
    ChangeEvent,
    EntityKind,
    Operation,
    Topic,
)

OperationName = Literal["INSERT", "UPDATE", "DELETE"]
EntityKindName = Literal["message", "notification"]


class RawChangeEvent(BaseModel):
    """A change notification as delivered by the push collaborator.

    Accepts `seq` as an alias of `server_seq` and `table`/`type` spellings
    used by row-level change feeds.
    """

    model_config = ConfigDict(extra="ignore")

    topic: str
    operation: OperationName
    entity_kind: EntityKindName
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    server_seq: int = Field(ge=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        if "server_seq" not in out and "seq" in out:
            out["server_seq"] = out["seq"]
        if "operation" not in out and "type" in out:
            out["operation"] = out["type"]
        if isinstance(out.get("operation"), str):
            out["operation"] = out["operation"].upper()
        if "entity_kind" not in out and "table" in out:
            out["entity_kind"] = {"messages": "message", "notifications": "notification"}.get(
                out["table"], out["table"]
            )
        if "entity_id" not in out and isinstance(out.get("payload"), dict):
            ident = out["payload"].get("id")
            if ident is not None:
                out["entity_id"] = str(ident)
        return out

    @model_validator(mode="after")
    def _check_consistency(self) -> RawChangeEvent:
        Topic.parse(self.topic)
        ident = self.payload.get("id")
        if ident is not None and str(ident) != self.entity_id:
            raise ValueError("payload.id does not match entity_id")
        if self.operation != "DELETE" and not self.payload:
            raise ValueError(f"{self.operation} requires a payload")
        return self

    def to_event(self) -> ChangeEvent:
        payload = dict(self.payload)
        if self.operation != "DELETE":
            payload.setdefault("id", self.entity_id)
        return ChangeEvent(
            topic=Topic.parse(self.topic),
            operation=Operation(self.operation),
            entity_kind=EntityKind(self.entity_kind),
            entity_id=self.entity_id,
            payload=payload,
            server_seq=self.server_seq,
        )


class EntityRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created_at: float
    seq: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_columns(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            # ISO-8601 timestamps from row stores, e.g. "2024-05-01T09:30:00+00:00".
            try:
                data["created_at"] = datetime.fromisoformat(created_at).timestamp()
            except ValueError:
                pass
        return data


class MessageRow(EntityRow):
    room_id: str
    sender_id: str
    content: str
    client_message_id: str | None = None
    sender_name: str | None = None


class NotificationRow(EntityRow):
    user_id: str
    type: str = "general"
    title: str
    message: str
    link: str | None = None
    is_read: bool = False


NotificationTypeName = Literal[
    "announcement", "grade", "assignment", "deadline", "attendance", "general"
]


class MessageInput(BaseModel):
    room_id: str = Field(min_length=1)
    content: str = Field(min_length=1, max_length=10000)

    @model_validator(mode="before")
    @classmethod
    def _strip(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("content"), str):
            data = {**data, "content": data["content"].strip()}
        return data


class NotificationInput(BaseModel):
    user_id: str = Field(min_length=1)
    type: NotificationTypeName = "general"
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=1000)
    link: str | None = Field(default=None, max_length=500)

    @model_validator(mode="before")
    @classmethod
    def _strip(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {k: v.strip() if isinstance(v, str) else v for k, v in data.items()}


def validate_input(model: type[BaseModel], data: Any) -> dict[str, Any]:
    """Validate user-entered fields; raises ValueError with pydantic's message."""
    try:
        return model.model_validate(data).model_dump(exclude_none=True)
    except ValidationError as e:
        raise ValueError(str(e)) from e


_ROW_MODELS: dict[EntityKind, type[EntityRow]] = {
    EntityKind.MESSAGE: MessageRow,
    EntityKind.NOTIFICATION: NotificationRow,
}


def parse_change_event(raw: Any) -> ChangeEvent:
    """Normalize a raw push payload; raises ValueError when it is malformed."""
    if isinstance(raw, ChangeEvent):
        return raw
    try:
        return RawChangeEvent.model_validate(raw).to_event()
    except ValidationError as e:
        raise ValueError(str(e)) from e


def validate_entity(kind: EntityKind, row: Any) -> dict[str, Any]:
    try:
        model = _ROW_MODELS[kind].model_validate(row)
    except ValidationError as e:
        raise ValueError(str(e)) from e
    return model.model_dump(exclude_none=True)


class MessageOut(BaseModel):
    id: str
    room_id: str
    sender_id: str
    sender_name: str | None = None
    content: str
    created_at: float
    pending: bool = False
    is_own: bool = False


class NotificationOut(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    link: str | None = None
    is_read: bool
    created_at: float


class RoomOutput(BaseModel):
    room_id: str
    viewer_id: str
    status: Literal["fresh", "stale", "loading"]
    last_synced_seq: int
    messages: list[MessageOut]


class NotificationsOutput(BaseModel):
    user_id: str
    status: Literal["fresh", "stale", "loading"]
    last_synced_seq: int
    unread_count: int
    notifications: list[NotificationOut]


class MessageCreate(BaseModel):
    content: str


class MutationOutput(BaseModel):
    local_id: str | None
    state: Literal["in_flight", "confirmed", "failed", "noop"]
