from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from classroom_live.collaborators import IdentityCollaborator
from classroom_live.models import Identity, Topic

logger = logging.getLogger(__name__)


class NotSignedInError(RuntimeError):
    pass


class SessionContext:
    """Read-only snapshot of the signed-in user, shared by the realtime components.

    The identity is read once and cached; `refresh()` is the only point where it
    changes (call it on sign-in and sign-out).
    """

    def __init__(self, identity: IdentityCollaborator) -> None:
        self._identity = identity
        self._user = identity.current_user()
        self._listeners: list[Callable[[Identity | None], None]] = []

    @property
    def user(self) -> Identity | None:
        return self._user

    def require_user(self) -> Identity:
        if self._user is None:
            raise NotSignedInError("no signed-in user")
        return self._user

    def refresh(self) -> Identity | None:
        previous, self._user = self._user, self._identity.current_user()
        if previous != self._user:
            logger.info(
                "session changed from %s to %s",
                previous.id if previous else None,
                self._user.id if self._user else None,
            )
            for listener in list(self._listeners):
                listener(self._user)
        return self._user

    def on_change(self, listener: Callable[[Identity | None], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def notification_topic(self) -> Topic:
        return Topic.user(self.require_user().id)

    def is_own(self, item: Mapping[str, Any]) -> bool:
        return self._user is not None and str(item.get("sender_id")) == self._user.id
