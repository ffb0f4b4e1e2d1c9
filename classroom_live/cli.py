from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import click

from classroom_live.collaborators import StaticIdentity
from classroom_live.common import LiveSettings
from classroom_live.live import LiveClient, NotificationFeed, RoomView
from classroom_live.models import (
    ChatRoom,
    Identity,
    Message,
    MutationFailure,
    MutationState,
    PendingMutation,
    Role,
)
from classroom_live.render import render_message, render_notifications, render_status
from classroom_live.schemas import NotificationInput, validate_input
from classroom_live.store import (
    ROOM_TYPES,
    LocalStore,
    RoomNotFoundError,
    UserNotFoundError,
)

T = TypeVar("T")


@click.group()
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $CLASSROOM_LIVE_DB or ~/.classroom_live/classroom_live.sqlite).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log realtime activity to stderr.")
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, verbose: bool) -> None:
    """Classroom chat and notifications, kept live from the command line."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )


def _db(ctx: click.Context) -> LocalStore:
    db_path = None
    if ctx.obj:
        db_path = ctx.obj.get("db_path")
    return LocalStore(path=db_path)


def _user(db: LocalStore, user_id: str) -> Identity:
    try:
        return db.get_profile(user_id=user_id)
    except UserNotFoundError:
        raise click.ClickException(f"User not found: {user_id}") from None


def _run(db: LocalStore, user: Identity, body: Callable[[LiveClient], Awaitable[T]]) -> T:
    """Run `body` against a LiveClient for `user`, then release every feed."""

    async def _main() -> T:
        settings = dataclasses.replace(LiveSettings.from_env(), grace_seconds=0)
        live = LiveClient(
            query=db, writer=db, push=db, identity=StaticIdentity(user), settings=settings
        )
        try:
            return await body(live)
        finally:
            await live.aclose()
            await db.aclose()

    return asyncio.run(_main())


@cli.group("db")
def db_group() -> None:
    """Database operations."""


@db_group.command("wipe")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def db_wipe(ctx: click.Context, *, yes: bool) -> None:
    """Delete the local SQLite database file (and WAL/SHM sidecars)."""
    db = _db(ctx)
    if db.path == ":memory:":
        raise click.ClickException("Cannot wipe an in-memory DB.")

    candidates = [Path(db.path), Path(f"{db.path}-wal"), Path(f"{db.path}-shm")]
    click.echo(f"DB path: {candidates[0]}")
    existing = [p for p in candidates if p.exists()]
    if not existing:
        click.echo("Nothing to delete (DB file not found).")
        return

    click.echo("Will delete:")
    for p in existing:
        click.echo(f"- {p}")

    if not yes and not click.confirm("Delete these files?", default=False):
        raise click.ClickException("Canceled.")

    removed = 0
    for p in existing:
        try:
            p.unlink()
        except FileNotFoundError:  # pragma: no cover
            continue
        removed += 1

    click.echo(f"Deleted {removed} file(s).")


# -- users ---------------------------------------------------------------------


@cli.group("users")
def users_group() -> None:
    """Profiles (the identities messages and notifications belong to)."""


@users_group.command("add")
@click.argument("name")
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role], case_sensitive=False),
    default=Role.STUDENT.value,
    show_default=True,
)
@click.option("--email", default=None)
@click.option("--id", "user_id", default=None, help="Explicit user id (default: generated).")
@click.pass_context
def users_add(
    ctx: click.Context, name: str, *, role: str, email: str | None, user_id: str | None
) -> None:
    """Create a profile and print its id."""
    name = name.strip()
    if not name:
        raise click.ClickException("name must not be empty")
    try:
        user = _db(ctx).profile_add(
            name=name, role=Role(role.lower()), email=email, user_id=user_id
        )
    except sqlite3.IntegrityError:
        raise click.ClickException(f"User id already exists: {user_id}") from None
    click.echo(user.id)


@users_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def users_list(ctx: click.Context, *, as_json: bool) -> None:
    """List profiles."""
    users = _db(ctx).profile_list()
    if as_json:
        rows = [{"id": u.id, "name": u.name, "role": str(u.role)} for u in users]
        click.echo(json.dumps({"users": rows}, ensure_ascii=True, sort_keys=True, indent=2))
        return
    for u in users:
        click.echo(f"{u.id} {u.name} ({u.role})")


# -- rooms ---------------------------------------------------------------------


@cli.group("rooms")
def rooms_group() -> None:
    """Chat rooms."""


@rooms_group.command("create")
@click.argument("name")
@click.option(
    "--type", "room_type", type=click.Choice(ROOM_TYPES), default="class", show_default=True
)
@click.option("--class-id", default=None, help="Class this room belongs to.")
@click.pass_context
def rooms_create(ctx: click.Context, name: str, *, room_type: str, class_id: str | None) -> None:
    """Create a chat room and print its id."""
    name = name.strip()
    if not name or len(name) > 100:
        raise click.ClickException("name must be 1 to 100 characters")
    room = _db(ctx).room_create(name=name, room_type=room_type, class_id=class_id)
    click.echo(room.room_id)


@rooms_group.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def rooms_list(ctx: click.Context, *, as_json: bool) -> None:
    """List chat rooms, newest first."""
    db = _db(ctx)
    rooms = db.room_list()

    if as_json:
        rows = [dataclasses.asdict(r) for r in rooms]
        click.echo(json.dumps({"rooms": rows}, ensure_ascii=True, sort_keys=True, indent=2))
        return

    click.echo(f"DB path: {db.path}")
    click.echo(f"Rooms: {len(rooms)}")
    if not rooms:
        return
    width = max(len("room_id"), *(len(r.room_id) for r in rooms))
    click.echo(f"{'room_id'.ljust(width)} type   name")
    for r in rooms:
        click.echo(f"{r.room_id.ljust(width)} {r.type.ljust(6)} {r.name}")


def _room(db: LocalStore, room_id: str) -> ChatRoom:
    try:
        return db.get_room(room_id=room_id)
    except RoomNotFoundError:
        raise click.ClickException(f"Room not found: {room_id}") from None


@rooms_group.command("post")
@click.argument("room_id")
@click.argument("content")
@click.option("--as", "user_id", required=True, help="Sender user id.")
@click.pass_context
def rooms_post(ctx: click.Context, room_id: str, content: str, *, user_id: str) -> None:
    """Send a message and wait until the change feed confirms it."""
    db = _db(ctx)
    _room(db, room_id)
    user = _user(db, user_id)

    async def _post(live: LiveClient) -> tuple[str, MutationState, MutationFailure | None]:
        failures: dict[str, MutationFailure] = {}
        outcomes: dict[str, asyncio.Future[MutationState]] = {}
        loop = asyncio.get_running_loop()

        def _settled(m: PendingMutation) -> None:
            fut = outcomes.get(m.local_id)
            if fut is not None and not fut.done():
                fut.set_result(m.state)

        live.on_mutation_failed(lambda f: failures.__setitem__(f.local_id, f))
        live.mutations.on_outcome(_settled)
        with live.open_room(room_id) as room:
            await room.ready()
            local_id = room.send(content)
            outcomes[local_id] = loop.create_future()
            state = await outcomes[local_id]
        return local_id, state, failures.get(local_id)

    try:
        local_id, state, failure = _run(db, user, _post)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    if failure is not None:
        raise click.ClickException(f"{failure.code}: {failure.message}")
    click.echo(f"{state} {local_id}")


def _print_new(room: RoomView, shown: set[str], *, color: bool) -> None:
    for m in room.messages:
        if m.pending or m.id in shown:
            continue
        shown.add(m.id)
        click.echo(_format_message(m, color=color))


def _format_message(m: Message, *, color: bool) -> str:
    ts = datetime.fromtimestamp(m.created_at).strftime("%H:%M:%S")
    stamp = click.style(ts, dim=True) if color else ts
    return f"{stamp} {render_message(m, color=color)}"


@rooms_group.command("watch")
@click.argument("room_id")
@click.option("--as", "user_id", required=True, help="Viewer user id.")
@click.option(
    "--follow",
    "-f",
    is_flag=True,
    help="Keep printing new messages as the change feed delivers them.",
)
@click.option("--last", "-n", type=int, default=20, show_default=True)
@click.pass_context
def rooms_watch(ctx: click.Context, room_id: str, *, user_id: str, follow: bool, last: int) -> None:
    """Show a room's messages, oldest first."""
    if last < 0:
        raise click.ClickException("last must be >= 0")
    db = _db(ctx)
    room_row = _room(db, room_id)
    user = _user(db, user_id)
    color = follow

    async def _watch(live: LiveClient) -> None:
        with live.open_room(room_id) as room:
            entry = await room.ready()
            shown: set[str] = set()
            history = room.messages
            skipped = history[: max(0, len(history) - last)]
            shown.update(m.id for m in skipped)
            click.echo(click.style(f"Room: {room_row.name} ({room_id})", fg="green", bold=True))
            click.echo(click.style(render_status(entry), dim=True))
            _print_new(room, shown, color=color)
            if not follow:
                return
            click.echo(click.style("--- Waiting for new messages (Ctrl+C to exit) ---", dim=True))
            changed = asyncio.Event()
            room.subscribe(lambda _entry: changed.set())
            while True:
                await changed.wait()
                changed.clear()
                _print_new(room, shown, color=color)

    try:
        _run(db, user, _watch)
    except KeyboardInterrupt:
        click.echo()
        click.echo(click.style("Stopped watching.", dim=True))


# -- notifications -------------------------------------------------------------


@cli.group("notify")
def notify_group() -> None:
    """Notifications."""


@notify_group.command("send")
@click.argument("user_id")
@click.option("--title", required=True)
@click.option("--message", required=True)
@click.option("--type", "notification_type", default="general", show_default=True)
@click.option("--link", default=None)
@click.pass_context
def notify_send(
    ctx: click.Context,
    user_id: str,
    *,
    title: str,
    message: str,
    notification_type: str,
    link: str | None,
) -> None:
    """Send a notification to a user and print its id."""
    db = _db(ctx)
    try:
        fields = validate_input(
            NotificationInput,
            {
                "user_id": user_id,
                "type": notification_type,
                "title": title,
                "message": message,
                "link": link,
            },
        )
        row, _ = db.notification_insert(**fields)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    except UserNotFoundError:
        raise click.ClickException(f"User not found: {user_id}") from None
    click.echo(row["id"])


def _print_feed(feed: NotificationFeed, *, as_json: bool, color: bool) -> None:
    if as_json:
        payload = {
            "unread_count": feed.unread_count,
            "notifications": [dataclasses.asdict(n) for n in feed.notifications],
        }
        click.echo(json.dumps(payload, ensure_ascii=True, sort_keys=True, indent=2))
        return
    click.echo(
        render_notifications(feed.notifications, unread_count=feed.unread_count, color=color),
        nl=False,
    )


@notify_group.command("list")
@click.option("--as", "user_id", required=True, help="Recipient user id.")
@click.option("--limit", type=int, default=None, help="Defaults to $CLASSROOM_LIVE_NOTIFICATION_LIMIT.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def notify_list(ctx: click.Context, *, user_id: str, limit: int | None, as_json: bool) -> None:
    """Show the newest notifications with the unread count."""
    if limit is not None and limit <= 0:
        raise click.ClickException("limit must be > 0")
    db = _db(ctx)
    user = _user(db, user_id)

    async def _list(live: LiveClient) -> None:
        with live.open_notifications(limit=limit) as feed:
            await feed.ready()
            _print_feed(feed, as_json=as_json, color=False)

    _run(db, user, _list)


@notify_group.command("read")
@click.argument("notification_id")
@click.option("--as", "user_id", required=True, help="Recipient user id.")
@click.pass_context
def notify_read(ctx: click.Context, notification_id: str, *, user_id: str) -> None:
    """Mark a notification as read."""
    db = _db(ctx)
    user = _user(db, user_id)

    async def _read(live: LiveClient) -> str:
        done: asyncio.Future[MutationState] = asyncio.get_running_loop().create_future()
        live.mutations.on_outcome(lambda m: done.done() or done.set_result(m.state))
        with live.open_notifications(limit=1000) as feed:
            await feed.ready()
            try:
                local_id = feed.mark_read(notification_id)
            except KeyError:
                raise click.ClickException(f"Notification not found: {notification_id}") from None
            if local_id is None:
                return "already read"
            return str(await done)

    click.echo(_run(db, user, _read))


@notify_group.command("watch")
@click.option("--as", "user_id", required=True, help="Recipient user id.")
@click.option("--limit", type=int, default=None)
@click.option("--follow", "-f", is_flag=True, help="Reprint the feed whenever it changes.")
@click.pass_context
def notify_watch(ctx: click.Context, *, user_id: str, limit: int | None, follow: bool) -> None:
    """Show the notification feed, optionally following changes."""
    db = _db(ctx)
    user = _user(db, user_id)

    async def _watch(live: LiveClient) -> None:
        with live.open_notifications(limit=limit) as feed:
            await feed.ready()
            _print_feed(feed, as_json=False, color=follow)
            if not follow:
                return
            changed = asyncio.Event()
            feed.subscribe(lambda _entry: changed.set())
            while True:
                await changed.wait()
                changed.clear()
                click.echo()
                _print_feed(feed, as_json=False, color=True)

    try:
        _run(db, user, _watch)
    except KeyboardInterrupt:
        click.echo()
        click.echo(click.style("Stopped watching.", dim=True))
