"""FastAPI preview of the live read models (JSON plus server-sent events).

The caller identifies itself with the `X-User-Id` header. One LiveClient is
kept per user, so repeated requests share cached entries and push feeds.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse

from classroom_live.collaborators import StaticIdentity
from classroom_live.common import LiveSettings
from classroom_live.live import LiveClient, NotificationFeed, RoomView
from classroom_live.schemas import (
    MessageCreate,
    MessageOut,
    MutationOutput,
    NotificationOut,
    NotificationsOutput,
    RoomOutput,
)
from classroom_live.store import LocalStore, RoomNotFoundError, UserNotFoundError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    await close_clients()


app = FastAPI(title="classroom-live", docs_url=None, redoc_url=None, lifespan=lifespan)

# Global store (initialized by run_server or tests)
_db: LocalStore | None = None
_clients: dict[str, LiveClient] = {}
_settings: LiveSettings | None = None


def get_db() -> LocalStore:
    if _db is None:
        raise RuntimeError("Database not initialized")
    return _db


def init_db(db_path: str | None = None, *, settings: LiveSettings | None = None) -> None:
    global _db, _settings
    _db = LocalStore(path=db_path)
    _settings = settings
    _clients.clear()


def live_for(user_id: str) -> LiveClient:
    """The LiveClient of `user_id`, created on first use."""
    client = _clients.get(user_id)
    if client is not None:
        return client
    db = get_db()
    try:
        user = db.get_profile(user_id=user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=401, detail="Unknown user") from None
    client = LiveClient(
        query=db,
        writer=db,
        push=db,
        identity=StaticIdentity(user),
        settings=_settings or LiveSettings.from_env(),
    )
    client.on_mutation_failed(
        lambda f: logger.warning("mutation %s failed for %s: %s", f.local_id, user_id, f.message)
    )
    _clients[user_id] = client
    return client


async def close_clients() -> None:
    clients = list(_clients.values())
    _clients.clear()
    for client in clients:
        await client.aclose()
    if _db is not None:
        await _db.aclose()


def _room_output(room: RoomView, viewer_id: str) -> RoomOutput:
    entry = room.entry
    return RoomOutput(
        room_id=room.room_id,
        viewer_id=viewer_id,
        status=entry.status.value,
        last_synced_seq=entry.last_synced_seq,
        messages=[MessageOut.model_validate(dataclasses.asdict(m)) for m in room.messages],
    )


def _feed_output(feed: NotificationFeed) -> NotificationsOutput:
    entry = feed.entry
    return NotificationsOutput(
        user_id=feed.user_id,
        status=entry.status.value,
        last_synced_seq=entry.last_synced_seq,
        unread_count=feed.unread_count,
        notifications=[
            NotificationOut.model_validate(dataclasses.asdict(n)) for n in feed.notifications
        ],
    )


def _require_room(room_id: str) -> None:
    try:
        get_db().get_room(room_id=room_id)
    except RoomNotFoundError:
        raise HTTPException(status_code=404, detail="Room not found") from None


@app.get("/api/rooms/{room_id}")
async def room_detail(room_id: str, x_user_id: str = Header()) -> RoomOutput:
    """Messages of a room, oldest first."""
    _require_room(room_id)
    live = live_for(x_user_id)
    with live.open_room(room_id) as room:
        await room.ready()
        return _room_output(room, x_user_id)


@app.post("/api/rooms/{room_id}/messages", status_code=202)
async def room_post(room_id: str, body: MessageCreate, x_user_id: str = Header()) -> MutationOutput:
    """Send a message; it is visible at once and confirmed by the change feed."""
    _require_room(room_id)
    live = live_for(x_user_id)
    with live.open_room(room_id) as room:
        await room.ready()
        try:
            local_id = room.send(body.content)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
    return MutationOutput(local_id=local_id, state="in_flight")


@app.get("/api/rooms/{room_id}/events")
async def room_events(room_id: str, x_user_id: str = Header()) -> StreamingResponse:
    """Server-sent events: the room read model, re-sent whenever it changes."""
    _require_room(room_id)
    live = live_for(x_user_id)

    async def _stream() -> AsyncIterator[str]:
        with live.open_room(room_id) as room:
            changed = asyncio.Event()
            room.subscribe(lambda _entry: changed.set())
            await room.ready()
            while True:
                changed.clear()
                yield f"data: {_room_output(room, x_user_id).model_dump_json()}\n\n"
                await changed.wait()

    return StreamingResponse(_stream(), media_type="text/event-stream")


@app.get("/api/notifications")
async def notifications_list(x_user_id: str = Header(), limit: int | None = None) -> NotificationsOutput:
    """The caller's newest notifications with the unread count."""
    if limit is not None and limit <= 0:
        raise HTTPException(status_code=422, detail="limit must be > 0")
    live = live_for(x_user_id)
    with live.open_notifications(limit=limit) as feed:
        await feed.ready()
        return _feed_output(feed)


@app.post("/api/notifications/{notification_id}/read", status_code=202)
async def notification_read(notification_id: str, x_user_id: str = Header()) -> MutationOutput:
    live = live_for(x_user_id)
    with live.open_notifications(limit=1000) as feed:
        await feed.ready()
        try:
            local_id = feed.mark_read(notification_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Notification not found") from None
    if local_id is None:
        return MutationOutput(local_id=None, state="noop")
    return MutationOutput(local_id=local_id, state="in_flight")


def run_server(host: str = "127.0.0.1", port: int = 8080, db_path: str | None = None) -> None:
    """Run the web server."""
    import uvicorn

    init_db(db_path)
    uvicorn.run(app, host=host, port=port)

