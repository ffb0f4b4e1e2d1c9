"""SQLite reference backend: query, write and push collaborators over one file.

Every write allocates the next per-topic `seq` and appends the resulting row
to the `changes` log inside the same transaction, so a snapshot and the
change feed always agree on ordering. Push subscriptions poll that log.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Literal, cast

from classroom_live.collaborators import (
    OnEvent,
    Snapshot,
    TransportError,
    Unsubscribe,
    WriteError,
)
from classroom_live.common import env_int, env_str, json_dumps, json_loads, now
from classroom_live.models import ChatRoom, EntityKind, Identity, Role, SortOrder, Topic

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

ROOM_TYPES = ("class", "direct", "group")

# Columns a client may change through `update`.
_UPDATABLE: dict[EntityKind, frozenset[str]] = {
    EntityKind.MESSAGE: frozenset({"content"}),
    EntityKind.NOTIFICATION: frozenset({"is_read", "title", "message", "link", "type"}),
}


class DBBusyError(RuntimeError):
    pass


class SchemaMismatchError(RuntimeError):
    pass


class RoomNotFoundError(RuntimeError):
    pass


class UserNotFoundError(RuntimeError):
    pass


class EntityNotFoundError(RuntimeError):
    pass


def _default_db_path() -> str:
    return str(Path("~/.classroom_live/classroom_live.sqlite").expanduser())


def _ensure_parent_dir(path: str) -> None:
    p = Path(path)
    if p.name == ":memory:":
        return
    p.parent.mkdir(parents=True, exist_ok=True)


def new_id(*, length: int = 10) -> str:
    return uuid.uuid4().hex[:length]


def _direction(order_by: str) -> SortOrder:
    parts = order_by.split()
    if len(parts) == 2 and parts[0] == "created_at" and parts[1] in ("asc", "desc"):
        return cast(SortOrder, parts[1])
    if parts == ["created_at"]:
        return "asc"
    raise ValueError(f"unsupported order_by: {order_by!r}")


class LocalStore:
    def __init__(
        self,
        *,
        path: str | None = None,
        poll_initial_seconds: float | None = None,
        poll_max_seconds: float | None = None,
    ) -> None:
        raw_path = path or env_str("CLASSROOM_LIVE_DB", default=_default_db_path())
        if raw_path != ":memory:":
            raw_path = str(Path(raw_path).expanduser())
        self.path = raw_path
        if poll_initial_seconds is None:
            poll_initial_seconds = (
                env_int("CLASSROOM_LIVE_POLL_INITIAL_MS", default=100, min_value=1) / 1000.0
            )
        if poll_max_seconds is None:
            poll_max_seconds = (
                env_int("CLASSROOM_LIVE_POLL_MAX_MS", default=1000, min_value=1) / 1000.0
            )
        self.poll_initial_seconds = poll_initial_seconds
        self.poll_max_seconds = max(poll_max_seconds, poll_initial_seconds)
        self._pollers: set[asyncio.Task[None]] = set()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(self.path, timeout=2.0)
        except sqlite3.OperationalError as e:  # pragma: no cover
            msg = str(e).lower()
            if "locked" in msg or "busy" in msg:
                raise DBBusyError(str(e)) from e
            raise
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=2000;")
        self._ensure_schema(conn)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            cast(str, r["name"])
            for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        if "meta" not in tables:
            if tables:
                raise SchemaMismatchError(
                    "Database was not created by classroom-live. "
                    "Wipe it with `classroom-live db wipe --yes` or point $CLASSROOM_LIVE_DB elsewhere."
                )
            conn.executescript(
                f"""
                CREATE TABLE meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                INSERT INTO meta(key, value)
                VALUES ('schema_version', '{SCHEMA_VERSION}');
                """
            )
        else:
            row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
            if row is None or cast(str, row["value"]) != SCHEMA_VERSION:
                raise SchemaMismatchError(
                    "Database schema version mismatch. "
                    "Wipe it with `classroom-live db wipe --yes` or delete the file at $CLASSROOM_LIVE_DB."
                )

        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
              user_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              email TEXT NULL,
              role TEXT NOT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_rooms (
              room_id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              type TEXT NOT NULL,
              class_id TEXT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS topic_seq (
              topic TEXT PRIMARY KEY,
              next_seq INTEGER NOT NULL,
              updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
              message_id TEXT PRIMARY KEY,
              room_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              sender_id TEXT NOT NULL,
              content TEXT NOT NULL,
              client_message_id TEXT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS notifications (
              notification_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              type TEXT NOT NULL,
              title TEXT NOT NULL,
              message TEXT NOT NULL,
              link TEXT NULL,
              is_read INTEGER NOT NULL DEFAULT 0,
              client_message_id TEXT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS changes (
              topic TEXT NOT NULL,
              seq INTEGER NOT NULL,
              operation TEXT NOT NULL,
              entity_kind TEXT NOT NULL,
              entity_id TEXT NOT NULL,
              payload_json TEXT NULL,
              created_at REAL NOT NULL,
              PRIMARY KEY(topic, seq)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_room_created_at
              ON messages(room_id, created_at);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_room_sender_client_id_unique
              ON messages(room_id, sender_id, client_message_id)
              WHERE client_message_id IS NOT NULL;

            CREATE INDEX IF NOT EXISTS idx_notifications_user_created_at
              ON notifications(user_id, created_at);
            """
        )

    # -- profiles and rooms -------------------------------------------------

    def profile_add(
        self,
        *,
        name: str,
        role: Role,
        email: str | None = None,
        user_id: str | None = None,
    ) -> Identity:
        user_id = user_id or new_id()
        with self.connect() as conn, conn:
            conn.execute(
                """
                INSERT INTO profiles(user_id, name, email, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, name, email, str(role), now()),
            )
        return Identity(id=user_id, role=Role(role), name=name)

    def get_profile(self, *, user_id: str) -> Identity:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT user_id, name, role FROM profiles WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            raise UserNotFoundError(user_id)
        return _identity_from_row(row)

    def profile_list(self) -> list[Identity]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT user_id, name, role FROM profiles ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        return [_identity_from_row(r) for r in rows]

    def room_create(
        self,
        *,
        name: str,
        room_type: str = "class",
        class_id: str | None = None,
    ) -> ChatRoom:
        if room_type not in ROOM_TYPES:
            raise ValueError(f"room type must be one of {', '.join(ROOM_TYPES)}")
        room = ChatRoom(
            room_id=new_id(), name=name, type=room_type, created_at=now(), class_id=class_id
        )
        with self.connect() as conn, conn:
            conn.execute(
                """
                INSERT INTO chat_rooms(room_id, name, type, class_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (room.room_id, room.name, room.type, room.class_id, room.created_at),
            )
        return room

    def get_room(self, *, room_id: str) -> ChatRoom:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT room_id, name, type, class_id, created_at FROM chat_rooms WHERE room_id = ?",
                (room_id,),
            ).fetchone()
        if row is None:
            raise RoomNotFoundError(room_id)
        return _room_from_row(row)

    def room_list(self) -> list[ChatRoom]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT room_id, name, type, class_id, created_at
                FROM chat_rooms
                ORDER BY created_at DESC
                """
            ).fetchall()
        return [_room_from_row(r) for r in rows]

    # -- entity writes --------------------------------------------------------

    def message_insert(
        self,
        *,
        room_id: str,
        sender_id: str,
        content: str,
        client_message_id: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """Insert a chat message. Returns (row, is_duplicate).

        A retried insert with the same `client_message_id` returns the
        original row and writes nothing.
        """
        topic = Topic.room(room_id)
        created_at = now()
        with self.connect() as conn, conn:
            if conn.execute("SELECT 1 FROM chat_rooms WHERE room_id = ?", (room_id,)).fetchone() is None:
                raise RoomNotFoundError(room_id)
            if conn.execute("SELECT 1 FROM profiles WHERE user_id = ?", (sender_id,)).fetchone() is None:
                raise UserNotFoundError(sender_id)
            if client_message_id is not None:
                existing = self._message_by_client_id(conn, room_id, sender_id, client_message_id)
                if existing is not None:
                    return existing, True

            message_id = new_id()
            seq = self._next_seq(conn, topic)
            conn.execute(
                """
                INSERT INTO messages(
                  message_id, room_id, seq, sender_id, content, client_message_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, room_id, seq, sender_id, content, client_message_id, created_at),
            )
            row = self._message_row(conn, message_id)
            self._log_change(conn, topic, seq, "INSERT", EntityKind.MESSAGE, message_id, row)
        logger.debug("message inserted room=%s id=%s seq=%s", room_id, message_id, seq)
        return row, False

    def notification_insert(
        self,
        *,
        user_id: str,
        title: str,
        message: str,
        type: str = "general",
        link: str | None = None,
        client_message_id: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        topic = Topic.user(user_id)
        created_at = now()
        with self.connect() as conn, conn:
            if conn.execute("SELECT 1 FROM profiles WHERE user_id = ?", (user_id,)).fetchone() is None:
                raise UserNotFoundError(user_id)
            if client_message_id is not None:
                existing = conn.execute(
                    "SELECT notification_id FROM notifications WHERE user_id = ? AND client_message_id = ?",
                    (user_id, client_message_id),
                ).fetchone()
                if existing is not None:
                    return self._notification_row(conn, existing["notification_id"]), True

            notification_id = new_id()
            seq = self._next_seq(conn, topic)
            conn.execute(
                """
                INSERT INTO notifications(
                  notification_id, user_id, seq, type, title, message, link,
                  is_read, client_message_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    notification_id,
                    user_id,
                    seq,
                    type,
                    title,
                    message,
                    link,
                    client_message_id,
                    created_at,
                ),
            )
            row = self._notification_row(conn, notification_id)
            self._log_change(conn, topic, seq, "INSERT", EntityKind.NOTIFICATION, notification_id, row)
        return row, False

    def entity_update(
        self, *, entity_kind: EntityKind, entity_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        allowed = _UPDATABLE[entity_kind]
        unknown = set(patch) - allowed
        if unknown or not patch:
            raise ValueError(
                f"{entity_kind} updates may only set: {', '.join(sorted(allowed))}"
            )
        table, pk, topic_col = _table(entity_kind)
        with self.connect() as conn, conn:
            current = conn.execute(
                f"SELECT {topic_col} FROM {table} WHERE {pk} = ?", (entity_id,)
            ).fetchone()
            if current is None:
                raise EntityNotFoundError(f"{entity_kind} {entity_id}")
            topic = _topic(entity_kind, current[topic_col])
            seq = self._next_seq(conn, topic)
            values = {k: (int(bool(v)) if k == "is_read" else v) for k, v in patch.items()}
            assignments = ", ".join(f"{col} = ?" for col in values)
            conn.execute(
                f"UPDATE {table} SET {assignments}, seq = ? WHERE {pk} = ?",
                (*values.values(), seq, entity_id),
            )
            row = self._row(conn, entity_kind, entity_id)
            self._log_change(conn, topic, seq, "UPDATE", entity_kind, entity_id, row)
        return row

    def entity_delete(self, *, entity_kind: EntityKind, entity_id: str) -> bool:
        table, pk, topic_col = _table(entity_kind)
        with self.connect() as conn, conn:
            current = conn.execute(
                f"SELECT {topic_col} FROM {table} WHERE {pk} = ?", (entity_id,)
            ).fetchone()
            if current is None:
                return False
            topic = _topic(entity_kind, current[topic_col])
            seq = self._next_seq(conn, topic)
            conn.execute(f"DELETE FROM {table} WHERE {pk} = ?", (entity_id,))
            self._log_change(conn, topic, seq, "DELETE", entity_kind, entity_id, None)
        return True

    # -- reads ------------------------------------------------------------------

    def list_entities(
        self,
        *,
        entity_kind: EntityKind,
        filters: Mapping[str, Any],
        order: SortOrder = "asc",
        limit: int | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Rows matching `filters` plus the topic head seq they reflect."""
        table, pk, topic_col = _table(entity_kind)
        owner = filters.get(topic_col)
        if owner is None or set(filters) - {topic_col}:
            raise ValueError(f"{entity_kind} queries filter on {topic_col} only")
        direction = "DESC" if order == "desc" else "ASC"
        limit_sql = "" if limit is None else f"LIMIT {int(limit)}"
        with self.connect() as conn:
            ids = conn.execute(
                f"""
                SELECT {pk} FROM {table}
                WHERE {topic_col} = ?
                ORDER BY created_at {direction}, seq {direction}
                {limit_sql}
                """,
                (str(owner),),
            ).fetchall()
            rows = [self._row(conn, entity_kind, r[pk]) for r in ids]
            head = self._head(conn, _topic(entity_kind, str(owner)))
        return rows, head

    def topic_head(self, *, topic: Topic) -> int:
        with self.connect() as conn:
            return self._head(conn, topic)

    def changes_since(self, *, topic: Topic, after_seq: int, limit: int = 100) -> list[dict[str, Any]]:
        """Raw change events of `topic` with seq > `after_seq`, oldest first."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT topic, seq, operation, entity_kind, entity_id, payload_json
                FROM changes
                WHERE topic = ? AND seq > ?
                ORDER BY seq ASC
                LIMIT ?
                """,
                (str(topic), after_seq, limit),
            ).fetchall()
        return [
            {
                "topic": r["topic"],
                "server_seq": cast(int, r["seq"]),
                "operation": r["operation"],
                "entity_kind": r["entity_kind"],
                "entity_id": r["entity_id"],
                "payload": {} if r["payload_json"] is None else json_loads(r["payload_json"]),
            }
            for r in rows
        ]

    # -- collaborator API ---------------------------------------------------

    async def fetch(
        self,
        resource_kind: EntityKind,
        filter_params: Mapping[str, Any],
        order_by: str,
        limit: int | None = None,
    ) -> Snapshot:
        try:
            rows, head = self.list_entities(
                entity_kind=resource_kind,
                filters=filter_params,
                order=_direction(order_by),
                limit=limit,
            )
        except (DBBusyError, sqlite3.OperationalError) as e:
            raise TransportError(str(e)) from e
        return Snapshot(items=tuple(rows), seq=head)

    async def insert(self, resource_kind: EntityKind, payload: Mapping[str, Any]) -> str:
        try:
            if resource_kind is EntityKind.MESSAGE:
                row, _ = self.message_insert(
                    room_id=str(payload["room_id"]),
                    sender_id=str(payload["sender_id"]),
                    content=str(payload["content"]),
                    client_message_id=payload.get("client_message_id"),
                )
            else:
                row, _ = self.notification_insert(
                    user_id=str(payload["user_id"]),
                    title=str(payload["title"]),
                    message=str(payload["message"]),
                    type=str(payload.get("type") or "general"),
                    link=payload.get("link"),
                    client_message_id=payload.get("client_message_id"),
                )
        except KeyError as e:
            raise WriteError(f"missing field {e.args[0]!r}") from e
        except (RoomNotFoundError, UserNotFoundError) as e:
            raise WriteError(f"{type(e).__name__}: {e}") from e
        except (DBBusyError, sqlite3.OperationalError, sqlite3.IntegrityError) as e:
            raise WriteError(str(e)) from e
        return str(row["id"])

    async def update(
        self, resource_kind: EntityKind, entity_id: str, patch: Mapping[str, Any]
    ) -> None:
        try:
            self.entity_update(entity_kind=resource_kind, entity_id=entity_id, patch=patch)
        except (EntityNotFoundError, ValueError) as e:
            raise WriteError(str(e)) from e
        except (DBBusyError, sqlite3.OperationalError, sqlite3.IntegrityError) as e:
            raise WriteError(str(e)) from e

    def subscribe(self, topic: Topic, on_event: OnEvent) -> Unsubscribe:
        """Poll the change log of `topic` from its current head.

        Must be called with a running event loop; the poller backs off
        exponentially while the log is idle.
        """
        try:
            start = self.topic_head(topic=topic)
        except (DBBusyError, sqlite3.OperationalError) as e:
            raise TransportError(str(e)) from e
        task = asyncio.get_running_loop().create_task(
            self._poll(topic, start, on_event), name=f"poll-{topic}"
        )
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)
        return task.cancel

    async def _poll(self, topic: Topic, after_seq: int, on_event: OnEvent) -> None:
        delay = self.poll_initial_seconds
        while True:
            try:
                events = self.changes_since(topic=topic, after_seq=after_seq)
            except (DBBusyError, sqlite3.OperationalError) as e:
                logger.warning("change log poll failed topic=%s: %s", topic, e)
                events = []
            for raw in events:
                after_seq = raw["server_seq"]
                on_event(raw)
            if events:
                delay = self.poll_initial_seconds
                continue
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.poll_max_seconds)

    async def aclose(self) -> None:
        pollers = list(self._pollers)
        for task in pollers:
            task.cancel()
        if pollers:
            await asyncio.gather(*pollers, return_exceptions=True)

    # -- internals ----------------------------------------------------------

    def _next_seq(self, conn: sqlite3.Connection, topic: Topic) -> int:
        updated_at = now()
        conn.execute(
            "INSERT OR IGNORE INTO topic_seq(topic, next_seq, updated_at) VALUES (?, 1, ?)",
            (str(topic), updated_at),
        )
        row = conn.execute("SELECT next_seq FROM topic_seq WHERE topic = ?", (str(topic),)).fetchone()
        assert row is not None
        seq = cast(int, row["next_seq"])
        conn.execute(
            "UPDATE topic_seq SET next_seq = ?, updated_at = ? WHERE topic = ?",
            (seq + 1, updated_at, str(topic)),
        )
        return seq

    def _head(self, conn: sqlite3.Connection, topic: Topic) -> int:
        row = conn.execute("SELECT next_seq FROM topic_seq WHERE topic = ?", (str(topic),)).fetchone()
        return 0 if row is None else cast(int, row["next_seq"]) - 1

    def _log_change(
        self,
        conn: sqlite3.Connection,
        topic: Topic,
        seq: int,
        operation: Literal["INSERT", "UPDATE", "DELETE"],
        entity_kind: EntityKind,
        entity_id: str,
        row: dict[str, Any] | None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO changes(topic, seq, operation, entity_kind, entity_id, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(topic),
                seq,
                operation,
                str(entity_kind),
                entity_id,
                None if row is None else json_dumps(row),
                now(),
            ),
        )

    def _row(self, conn: sqlite3.Connection, entity_kind: EntityKind, entity_id: str) -> dict[str, Any]:
        if entity_kind is EntityKind.MESSAGE:
            return self._message_row(conn, entity_id)
        return self._notification_row(conn, entity_id)

    def _message_row(self, conn: sqlite3.Connection, message_id: str) -> dict[str, Any]:
        row = conn.execute(
            """
            SELECT
              m.message_id, m.room_id, m.seq, m.sender_id, m.content,
              m.client_message_id, m.created_at, p.name AS sender_name
            FROM messages m
            LEFT JOIN profiles p ON p.user_id = m.sender_id
            WHERE m.message_id = ?
            """,
            (message_id,),
        ).fetchone()
        if row is None:
            raise EntityNotFoundError(f"message {message_id}")
        return _message_from_row(row)

    def _message_by_client_id(
        self, conn: sqlite3.Connection, room_id: str, sender_id: str, client_message_id: str
    ) -> dict[str, Any] | None:
        row = conn.execute(
            """
            SELECT message_id FROM messages
            WHERE room_id = ? AND sender_id = ? AND client_message_id = ?
            """,
            (room_id, sender_id, client_message_id),
        ).fetchone()
        return None if row is None else self._message_row(conn, row["message_id"])

    def _notification_row(self, conn: sqlite3.Connection, notification_id: str) -> dict[str, Any]:
        row = conn.execute(
            """
            SELECT
              notification_id, user_id, seq, type, title, message, link,
              is_read, client_message_id, created_at
            FROM notifications
            WHERE notification_id = ?
            """,
            (notification_id,),
        ).fetchone()
        if row is None:
            raise EntityNotFoundError(f"notification {notification_id}")
        return _notification_from_row(row)


def _table(entity_kind: EntityKind) -> tuple[str, str, str]:
    if entity_kind is EntityKind.MESSAGE:
        return "messages", "message_id", "room_id"
    return "notifications", "notification_id", "user_id"


def _topic(entity_kind: EntityKind, owner: str) -> Topic:
    return Topic.room(owner) if entity_kind is EntityKind.MESSAGE else Topic.user(owner)


def _identity_from_row(row: sqlite3.Row) -> Identity:
    return Identity(id=row["user_id"], role=Role(row["role"]), name=row["name"])


def _room_from_row(row: sqlite3.Row) -> ChatRoom:
    return ChatRoom(
        room_id=row["room_id"],
        name=row["name"],
        type=row["type"],
        created_at=row["created_at"],
        class_id=row["class_id"],
    )


def _message_from_row(row: sqlite3.Row) -> dict[str, Any]:
    out = {
        "id": row["message_id"],
        "room_id": row["room_id"],
        "seq": cast(int, row["seq"]),
        "sender_id": row["sender_id"],
        "sender_name": row["sender_name"],
        "content": row["content"],
        "created_at": row["created_at"],
    }
    if row["client_message_id"] is not None:
        out["client_message_id"] = row["client_message_id"]
    return out


def _notification_from_row(row: sqlite3.Row) -> dict[str, Any]:
    out = {
        "id": row["notification_id"],
        "user_id": row["user_id"],
        "seq": cast(int, row["seq"]),
        "type": row["type"],
        "title": row["title"],
        "message": row["message"],
        "link": row["link"],
        "is_read": bool(row["is_read"]),
        "created_at": row["created_at"],
    }
    if row["client_message_id"] is not None:
        out["client_message_id"] = row["client_message_id"]
    return out
