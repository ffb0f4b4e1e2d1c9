"""Contracts of the external collaborators the realtime layer consumes.

The realtime layer is the only client of these. Query and write calls are
awaitables; the push subscription is callback based and returns an
unsubscribe callable.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from classroom_live.models import ChangeEvent, Entity, EntityKind, FeedStatus, Identity, Topic

OnEvent = Callable[[ChangeEvent | FeedStatus | Mapping[str, Any]], None]
Unsubscribe = Callable[[], None]


class TransportError(RuntimeError):
    """The push or query collaborator is unreachable."""


class WriteError(RuntimeError):
    """A durable write was rejected (or timed out)."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Result of a full query, with the topic head seq it reflects."""

    items: tuple[Entity, ...]
    seq: int


class QueryCollaborator(Protocol):
    async def fetch(
        self,
        resource_kind: EntityKind,
        filter_params: Mapping[str, Any],
        order_by: str,
        limit: int | None = None,
    ) -> Snapshot | Sequence[Entity]: ...


class WriteCollaborator(Protocol):
    async def insert(self, resource_kind: EntityKind, payload: Mapping[str, Any]) -> str: ...

    async def update(
        self, resource_kind: EntityKind, entity_id: str, patch: Mapping[str, Any]
    ) -> None: ...


class PushCollaborator(Protocol):
    def subscribe(self, topic: Topic, on_event: OnEvent) -> Unsubscribe: ...


class IdentityCollaborator(Protocol):
    def current_user(self) -> Identity | None: ...


def as_snapshot(result: Snapshot | Sequence[Entity]) -> Snapshot:
    """Accept either a Snapshot or a bare ordered row sequence.

    For bare rows the snapshot seq is the highest per-row `seq` column.
    """
    if isinstance(result, Snapshot):
        return result
    items = tuple(result)
    seq = max((int(i.get("seq") or 0) for i in items), default=0)
    return Snapshot(items=items, seq=seq)


class StaticIdentity:
    """Identity collaborator backed by a fixed (replaceable) user."""

    def __init__(self, user: Identity | None = None) -> None:
        self.user = user

    def current_user(self) -> Identity | None:
        return self.user
