"""Optimistic local mutations (send message, mark read) and their lifecycle.

A submitted mutation is visible in every cached view of its topic before the
write collaborator answers. It ends in exactly one terminal state:

- CONFIRMED by a matching change event, or by the write ack when no event
  follows within the confirm timeout (the optimistic row is then kept);
- FAILED when the write is rejected or times out (the optimistic row is
  removed and failure listeners receive the mutation's `local_id`).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from classroom_live.cache import CacheStore, OptimisticPatch, UndoToken
from classroom_live.collaborators import TransportError, WriteCollaborator, WriteError
from classroom_live.common import ErrorCode, WarningCode, now
from classroom_live.models import (
    CacheKey,
    ChangeEvent,
    EntityKind,
    Identity,
    MutationFailure,
    MutationState,
    Operation,
    PendingMutation,
    Topic,
)
from classroom_live.session import SessionContext

logger = logging.getLogger(__name__)

FailureListener = Callable[[MutationFailure], None]
OutcomeListener = Callable[[PendingMutation], None]

# Columns the client stamps for display only; the store assigns its own.
_LOCAL_ONLY = ("id", "pending", "created_at", "sender_name")


def new_local_id() -> str:
    return f"local-{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class _Tracked:
    mutation: PendingMutation
    tokens: list[UndoToken]
    write_payload: dict[str, Any]
    timer: asyncio.TimerHandle | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class OptimisticMutationQueue:
    def __init__(
        self,
        store: CacheStore,
        writer: WriteCollaborator,
        session: SessionContext,
        *,
        confirm_timeout_seconds: float = 15.0,
        write_timeout_seconds: float = 30.0,
    ) -> None:
        self._store = store
        self._writer = writer
        self._session = session
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.write_timeout_seconds = write_timeout_seconds
        self._tracked: dict[str, _Tracked] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._failure_listeners: list[FailureListener] = []
        self._outcome_listeners: list[OutcomeListener] = []

    # -- public API ---------------------------------------------------------

    def submit(
        self,
        entity_kind: EntityKind,
        intended_payload: Mapping[str, Any],
        *,
        target_id: str | None = None,
    ) -> str:
        """Apply a mutation optimistically and start its durable write.

        Without `target_id` the payload describes a new entity (insert);
        with it, the payload is a patch of that entity (update).
        """
        user = self._session.require_user()
        local_id = new_local_id()
        submitted_at = now()

        if target_id is None:
            provisional = self._provisional(entity_kind, intended_payload, local_id, user)
            provisional["created_at"] = submitted_at
            patch = OptimisticPatch.insert(provisional)
            keys = self._store.keys_for(self._topic_for(entity_kind, intended_payload), entity_kind)
            write_payload = {k: v for k, v in provisional.items() if k not in _LOCAL_ONLY}
        else:
            patch = OptimisticPatch.update(target_id, intended_payload)
            keys = self._keys_holding(entity_kind, target_id)
            write_payload = dict(intended_payload)

        with self._store.batch():
            tokens = [self._store.patch_optimistic(key, patch) for key in keys]

        tracked = _Tracked(
            mutation=PendingMutation(
                local_id=local_id,
                entity_kind=entity_kind,
                intended_payload=dict(intended_payload),
                submitted_at=submitted_at,
                target_id=target_id,
            ),
            tokens=tokens,
            write_payload=write_payload,
        )
        self._tracked[local_id] = tracked
        task = asyncio.get_running_loop().create_task(self._write(tracked), name=f"write-{local_id}")
        tracked.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("submitted %s %s local_id=%s", patch.operation, entity_kind, local_id)
        return local_id

    def get(self, local_id: str) -> PendingMutation | None:
        tracked = self._tracked.get(local_id)
        return None if tracked is None else tracked.mutation

    def pending(self) -> list[PendingMutation]:
        return [t.mutation for t in self._tracked.values()]

    def on_failure(self, listener: FailureListener) -> Callable[[], None]:
        self._failure_listeners.append(listener)
        return lambda: self._failure_listeners.remove(listener)

    def on_outcome(self, listener: OutcomeListener) -> Callable[[], None]:
        self._outcome_listeners.append(listener)
        return lambda: self._outcome_listeners.remove(listener)

    def match_event(self, event: ChangeEvent) -> list[UndoToken]:
        """Confirm in-flight mutations whose effect `event` carries.

        Returns the optimistic patches the caller must drop together with
        applying the event, so the entity is never shown twice.
        """
        tokens: list[UndoToken] = []
        for local_id, tracked in list(self._tracked.items()):
            if not _confirms(tracked.mutation, event):
                continue
            del self._tracked[local_id]
            if tracked.timer is not None:
                tracked.timer.cancel()
            tokens.extend(tracked.tokens)
            self._settle(
                dataclasses.replace(
                    tracked.mutation, state=MutationState.CONFIRMED, entity_id=event.entity_id
                )
            )
        return tokens

    async def aclose(self) -> None:
        for tracked in self._tracked.values():
            if tracked.timer is not None:
                tracked.timer.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- write lifecycle ----------------------------------------------------

    async def _write(self, tracked: _Tracked) -> None:
        m = tracked.mutation
        try:
            if m.target_id is None:
                entity_id = await asyncio.wait_for(
                    self._writer.insert(m.entity_kind, tracked.write_payload),
                    timeout=self.write_timeout_seconds,
                )
            else:
                await asyncio.wait_for(
                    self._writer.update(m.entity_kind, m.target_id, tracked.write_payload),
                    timeout=self.write_timeout_seconds,
                )
                entity_id = m.target_id
        except TimeoutError:
            self._fail(tracked, ErrorCode.WRITE_TIMEOUT, "write timed out")
            return
        except WriteError as e:
            code = ErrorCode.WRITE_TIMEOUT if e.timed_out else ErrorCode.WRITE_REJECTED
            self._fail(tracked, code, str(e))
            return
        except TransportError as e:
            self._fail(tracked, ErrorCode.TRANSPORT_UNAVAILABLE, str(e))
            return
        except Exception as e:
            logger.exception("writer raised unexpectedly local_id=%s", m.local_id)
            self._fail(tracked, ErrorCode.WRITE_REJECTED, f"{type(e).__name__}: {e}")
            return
        self._acknowledged(tracked, str(entity_id))

    def _acknowledged(self, tracked: _Tracked, entity_id: str) -> None:
        local_id = tracked.mutation.local_id
        if self._tracked.get(local_id) is not tracked:
            return  # already confirmed by its change event
        tracked.mutation = dataclasses.replace(tracked.mutation, entity_id=entity_id)
        tracked.timer = asyncio.get_running_loop().call_later(
            self.confirm_timeout_seconds, self._confirm_by_timeout, local_id
        )

    def _confirm_by_timeout(self, local_id: str) -> None:
        tracked = self._tracked.pop(local_id, None)
        if tracked is None:
            return
        m = tracked.mutation
        with self._store.batch():
            for token in tracked.tokens:
                self._store.promote(token, entity_id=m.entity_id)
        logger.info(
            "%s local_id=%s entity_id=%s", WarningCode.RECONCILED_BY_TIMEOUT, local_id, m.entity_id
        )
        self._settle(
            dataclasses.replace(m, state=MutationState.CONFIRMED, reconciled_by_timeout=True)
        )

    def _fail(self, tracked: _Tracked, code: ErrorCode, message: str) -> None:
        local_id = tracked.mutation.local_id
        if self._tracked.get(local_id) is not tracked:
            return
        del self._tracked[local_id]
        with self._store.batch():
            for token in tracked.tokens:
                self._store.revert(token)
        logger.warning("write failed local_id=%s code=%s: %s", local_id, code, message)
        failed = dataclasses.replace(tracked.mutation, state=MutationState.FAILED)
        failure = MutationFailure(
            local_id=local_id, entity_kind=failed.entity_kind, code=str(code), message=message
        )
        for listener in list(self._failure_listeners):
            listener(failure)
        self._settle(failed)

    def _settle(self, mutation: PendingMutation) -> None:
        for listener in list(self._outcome_listeners):
            listener(mutation)

    # -- helpers ------------------------------------------------------------

    def _provisional(
        self,
        entity_kind: EntityKind,
        payload: Mapping[str, Any],
        local_id: str,
        user: Identity,
    ) -> dict[str, Any]:
        row = {**payload, "id": local_id, "client_message_id": local_id, "pending": True}
        if entity_kind is EntityKind.MESSAGE:
            row["sender_id"] = user.id
            if user.name:
                row["sender_name"] = user.name
        return row

    def _topic_for(self, entity_kind: EntityKind, payload: Mapping[str, Any]) -> Topic:
        if entity_kind is EntityKind.MESSAGE:
            room_id = payload.get("room_id")
            if not room_id:
                raise ValueError("message payload requires room_id")
            return Topic.room(str(room_id))
        user_id = payload.get("user_id")
        if not user_id:
            raise ValueError("notification payload requires user_id")
        return Topic.user(str(user_id))

    def _keys_holding(self, entity_kind: EntityKind, entity_id: str) -> list[CacheKey]:
        return [
            key
            for key in self._store.keys()
            if key.entity_kind is entity_kind and self._store.read(key).find(entity_id) is not None
        ]


def _confirms(mutation: PendingMutation, event: ChangeEvent) -> bool:
    if mutation.entity_kind is not event.entity_kind:
        return False
    if mutation.operation is Operation.INSERT:
        if event.operation is Operation.DELETE:
            return False
        return (
            mutation.entity_id is not None and event.entity_id == mutation.entity_id
        ) or event.payload.get("client_message_id") == mutation.local_id
    return (
        event.operation is Operation.UPDATE
        and event.entity_id == mutation.target_id
        and all(event.payload.get(k) == v for k, v in mutation.intended_payload.items())
    )
