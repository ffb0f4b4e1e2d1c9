from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass

from classroom_live.collaborators import PushCollaborator
from classroom_live.feed import ChangeFeedClient
from classroom_live.models import Topic

logger = logging.getLogger(__name__)

OnOpen = Callable[[Topic, ChangeFeedClient], None]
OnClose = Callable[[Topic], None]


@dataclass(frozen=True, slots=True)
class SubscriptionToken:
    """Opaque handle given to a UI consumer; pass it back to `detach()`."""

    topic: Topic
    token_id: int


@dataclass(slots=True)
class _Handle:
    topic: Topic
    client: ChangeFeedClient
    ref_count: int = 0
    close_timer: asyncio.TimerHandle | None = None


class SubscriptionManager:
    """Owns one ChangeFeedClient per topic, shared by every attached consumer.

    All methods run on the event loop thread, so attach/detach on a topic are
    linearized without locks. The last detach closes the client only after
    `grace_seconds`, and an attach inside that window reuses it.
    """

    def __init__(
        self,
        push: PushCollaborator,
        *,
        grace_seconds: float = 1.5,
        on_open: OnOpen | None = None,
        on_close: OnClose | None = None,
    ) -> None:
        if grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        self._push = push
        self.grace_seconds = grace_seconds
        self._on_open = on_open
        self._on_close = on_close
        self._handles: dict[Topic, _Handle] = {}
        self._live_tokens: set[int] = set()
        self._token_ids = itertools.count(1)

    def attach(self, topic: Topic) -> SubscriptionToken:
        handle = self._handles.get(topic)
        opened = handle is None
        if handle is None:
            client = ChangeFeedClient(self._push).open(topic)
            handle = _Handle(topic=topic, client=client)
            self._handles[topic] = handle
        if handle.close_timer is not None:
            handle.close_timer.cancel()
            handle.close_timer = None
            logger.debug("reusing feed inside grace window topic=%s", topic)
        handle.ref_count += 1

        token = SubscriptionToken(topic=topic, token_id=next(self._token_ids))
        self._live_tokens.add(token.token_id)
        if opened and self._on_open is not None:
            self._on_open(topic, handle.client)
        return token

    def detach(self, token: SubscriptionToken) -> None:
        """Release a consumer's interest. Detaching the same token twice is a no-op."""
        if token.token_id not in self._live_tokens:
            return
        self._live_tokens.discard(token.token_id)
        handle = self._handles.get(token.topic)
        if handle is None:  # pragma: no cover
            return
        handle.ref_count -= 1
        if handle.ref_count > 0:
            return
        if self.grace_seconds == 0:
            self._expire(token.topic)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._expire(token.topic)
            return
        handle.close_timer = loop.call_later(self.grace_seconds, self._expire, token.topic)

    def _expire(self, topic: Topic) -> None:
        handle = self._handles.get(topic)
        if handle is None or handle.ref_count > 0:
            return
        del self._handles[topic]
        handle.client.close()
        logger.debug("feed released topic=%s", topic)
        if self._on_close is not None:
            self._on_close(topic)

    def ref_count(self, topic: Topic) -> int:
        handle = self._handles.get(topic)
        return 0 if handle is None else handle.ref_count

    def is_open(self, topic: Topic) -> bool:
        return topic in self._handles

    def client(self, topic: Topic) -> ChangeFeedClient | None:
        handle = self._handles.get(topic)
        return None if handle is None else handle.client

    def topics(self) -> list[Topic]:
        return list(self._handles)

    def close_all(self) -> None:
        self._live_tokens.clear()
        for topic, handle in list(self._handles.items()):
            if handle.close_timer is not None:
                handle.close_timer.cancel()
            handle.ref_count = 0
            self._expire(topic)
