"""Composition root: one `LiveClient` per signed-in session.

UI consumers open views (`open_room`, `open_notifications`), read the current
entry from them, subscribe to changes and close them when unmounted. Views on
the same topic share one push subscription.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from classroom_live.cache import CacheStore
from classroom_live.collaborators import (
    IdentityCollaborator,
    PushCollaborator,
    QueryCollaborator,
    WriteCollaborator,
)
from classroom_live.common import LiveSettings
from classroom_live.models import (
    CacheEntry,
    CacheKey,
    EntityKind,
    EntryStatus,
    Message,
    MutationFailure,
    Notification,
)
from classroom_live.mutations import OptimisticMutationQueue
from classroom_live.reconciler import Reconciler
from classroom_live.schemas import MessageInput, validate_input
from classroom_live.session import SessionContext
from classroom_live.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class LiveClient:
    def __init__(
        self,
        *,
        query: QueryCollaborator,
        writer: WriteCollaborator,
        push: PushCollaborator,
        identity: IdentityCollaborator,
        settings: LiveSettings | None = None,
    ) -> None:
        self.settings = settings or LiveSettings.from_env()
        s = self.settings
        self.session = SessionContext(identity)
        self.store = CacheStore(max_update_retries=s.max_update_retries)
        self.mutations = OptimisticMutationQueue(
            self.store,
            writer,
            self.session,
            confirm_timeout_seconds=s.confirm_timeout_seconds,
            write_timeout_seconds=s.write_timeout_seconds,
        )
        self.reconciler = Reconciler(
            self.store,
            query,
            mutations=self.mutations,
            gap_timeout_seconds=s.gap_timeout_seconds,
            resync_initial_seconds=s.resync_initial_seconds,
            resync_max_seconds=s.resync_max_seconds,
            resync_attempts=s.resync_attempts,
        )
        self.subscriptions = SubscriptionManager(
            push,
            grace_seconds=s.grace_seconds,
            on_open=self.reconciler.start,
            on_close=self.reconciler.stop,
        )

    def open_room(self, room_id: str) -> RoomView:
        return RoomView(self, str(room_id))

    def open_notifications(self, *, limit: int | None = None) -> NotificationFeed:
        user = self.session.require_user()
        return NotificationFeed(self, user.id, limit or self.settings.notification_limit)

    def on_mutation_failed(self, listener: Callable[[MutationFailure], None]) -> Callable[[], None]:
        return self.mutations.on_failure(listener)

    async def aclose(self) -> None:
        self.subscriptions.close_all()
        await self.mutations.aclose()
        await self.reconciler.aclose()

    async def __aenter__(self) -> LiveClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()


class _View:
    def __init__(self, client: LiveClient, key: CacheKey) -> None:
        topic = key.topic
        if topic is None:
            raise ValueError(f"{key} does not map to a change topic")
        self._client = client
        self.key = key
        self._token = client.subscriptions.attach(topic)
        self._load = client.reconciler.track(key)
        self._unsubscribes: list[Callable[[], None]] = []
        self.closed = False

    @property
    def entry(self) -> CacheEntry:
        return self._client.store.read(self.key)

    @property
    def status(self) -> EntryStatus:
        return self.entry.status

    async def ready(self) -> CacheEntry:
        """Wait for the initial load (a no-op when the entry was already cached)."""
        if self._load is not None and not self._load.done():
            await asyncio.shield(self._load)
        return self.entry

    def subscribe(self, callback: Callable[[CacheEntry], None]) -> Callable[[], None]:
        unsubscribe = self._client.store.subscribe(self.key, callback)
        self._unsubscribes.append(unsubscribe)
        return unsubscribe

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        self._client.subscriptions.detach(self._token)

    def __enter__(self) -> _View:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class RoomView(_View):
    """Chat room read model: messages oldest first, plus `send()`."""

    def __init__(self, client: LiveClient, room_id: str) -> None:
        self.room_id = room_id
        super().__init__(client, CacheKey.room_messages(room_id))

    def __enter__(self) -> RoomView:
        return self

    @property
    def messages(self) -> list[Message]:
        user = self._client.session.user
        viewer_id = user.id if user is not None else None
        return [Message.from_entity(item, viewer_id=viewer_id) for item in self.entry.items]

    def send(self, content: str) -> str:
        """Post a message optimistically; returns the mutation's local id."""
        payload = validate_input(MessageInput, {"room_id": self.room_id, "content": content})
        return self._client.mutations.submit(EntityKind.MESSAGE, payload)


class NotificationFeed(_View):
    """The signed-in user's newest notifications."""

    def __init__(self, client: LiveClient, user_id: str, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.user_id = user_id
        self.limit = limit
        super().__init__(client, CacheKey.user_notifications(user_id, limit=limit))

    def __enter__(self) -> NotificationFeed:
        return self

    @property
    def notifications(self) -> list[Notification]:
        return [Notification.from_entity(item) for item in self.entry.items[: self.limit]]

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.is_read)

    def mark_read(self, notification_id: str) -> str | None:
        """Mark one notification read; returns None when it already is."""
        item = self.entry.find(str(notification_id))
        if item is None:
            raise KeyError(f"notification {notification_id} is not in this feed")
        if item.get("is_read"):
            return None
        return self._client.mutations.submit(
            EntityKind.NOTIFICATION, {"is_read": True}, target_id=str(notification_id)
        )

    def mark_all_read(self) -> list[str]:
        return [
            local_id
            for n in self.notifications
            if not n.is_read and (local_id := self.mark_read(n.id)) is not None
        ]
