"""Push-channel adapter: one subscription to one topic, exposed as an async iterator."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from classroom_live.collaborators import PushCollaborator, TransportError, Unsubscribe
from classroom_live.common import WarningCode
from classroom_live.models import ChangeEvent, FeedStatus, Topic
from classroom_live.schemas import parse_change_event

logger = logging.getLogger(__name__)

_CLOSED = object()

FeedItem = ChangeEvent | FeedStatus


class ChangeFeedClient:
    """Wraps one push subscription.

    Iterating the client yields normalized `ChangeEvent`s, plus `FeedStatus`
    values when the provider reports connectivity changes. The stream is lazy,
    unbounded and cannot be restarted; `close()` ends it.
    """

    def __init__(self, push: PushCollaborator) -> None:
        self._push = push
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._unsubscribe: Unsubscribe | None = None
        self.topic: Topic | None = None
        self.status = FeedStatus.DISCONNECTED
        self.dropped = 0
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self, topic: Topic) -> ChangeFeedClient:
        if self.topic is not None:
            raise RuntimeError("feed client already opened; create a new one")
        self.topic = topic
        try:
            self._unsubscribe = self._push.subscribe(topic, self._on_event)
        except TransportError as e:
            # Reconnection belongs to the provider; readers see a stale entry meanwhile.
            logger.warning("%s topic=%s: %s", WarningCode.FEED_DISCONNECTED, topic, e)
            self._queue.put_nowait(FeedStatus.DISCONNECTED)
            return self
        self.status = FeedStatus.CONNECTED
        logger.debug("feed opened topic=%s", topic)
        return self

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except TransportError as e:
                logger.warning("feed unsubscribe failed topic=%s: %s", self.topic, e)
        self.status = FeedStatus.DISCONNECTED
        self._queue.put_nowait(_CLOSED)
        logger.debug("feed closed topic=%s", self.topic)

    def _on_event(self, raw: ChangeEvent | FeedStatus | Mapping[str, Any]) -> None:
        if self._closed:
            return
        if isinstance(raw, FeedStatus):
            self.status = raw
            self._queue.put_nowait(raw)
            return
        try:
            event = parse_change_event(raw)
        except ValueError as e:
            self.dropped += 1
            logger.warning("%s topic=%s: %s", WarningCode.MALFORMED_EVENT, self.topic, e)
            return
        if event.topic != self.topic:
            self.dropped += 1
            logger.warning(
                "%s topic=%s: event for foreign topic %s",
                WarningCode.MALFORMED_EVENT,
                self.topic,
                event.topic,
            )
            return
        self._queue.put_nowait(event)

    def __aiter__(self) -> ChangeFeedClient:
        return self

    async def __anext__(self) -> FeedItem:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item
