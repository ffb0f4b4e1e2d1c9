from __future__ import annotations

from collections.abc import Iterable

import click

from classroom_live.common import now
from classroom_live.models import CacheEntry, Message, Notification

# Badge colours of the notification center; unknown types use "general".
TYPE_COLORS: dict[str, str] = {
    "announcement": "blue",
    "grade": "green",
    "deadline": "red",
    "attendance": "yellow",
    "general": "bright_black",
}


def type_color(notification_type: str) -> str:
    return TYPE_COLORS.get(notification_type, TYPE_COLORS["general"])


def relative_age(created_at: float, *, at: float | None = None) -> str:
    seconds = max(0, int((now() if at is None else at) - created_at))
    if seconds < 45:
        return "less than a minute ago"
    minutes = round(seconds / 60)
    if minutes < 60:
        return "1 minute ago" if minutes == 1 else f"{minutes} minutes ago"
    hours = round(seconds / 3600)
    if hours < 24:
        return "about 1 hour ago" if hours == 1 else f"about {hours} hours ago"
    days = round(seconds / 86400)
    return "1 day ago" if days == 1 else f"{days} days ago"


def render_message(message: Message, *, color: bool = False) -> str:
    sender = "You" if message.is_own else (message.sender_name or message.sender_id)
    suffix = " (sending...)" if message.pending else ""
    line = f"[{sender}] {message.content}{suffix}"
    if color and message.is_own:
        return click.style(line, fg="cyan")
    return line


def render_messages(messages: Iterable[Message], *, color: bool = False) -> str:
    lines = [render_message(m, color=color) for m in messages]
    if not lines:
        return "No messages yet.\n"
    return "\n".join(lines) + "\n"


def render_notification(
    notification: Notification, *, color: bool = False, at: float | None = None
) -> str:
    badge = f"[{notification.type}]"
    if color:
        badge = click.style(badge, fg=type_color(notification.type))
    unread = "* " if not notification.is_read else "  "
    lines = [f"{unread}{badge} {notification.title}"]
    lines.append(f"    {notification.message}")
    if notification.link:
        lines.append(f"    {notification.link}")
    lines.append(f"    {relative_age(notification.created_at, at=at)}")
    return "\n".join(lines)


def render_notifications(
    notifications: list[Notification],
    *,
    unread_count: int,
    color: bool = False,
    at: float | None = None,
) -> str:
    if not notifications:
        return "No notifications\n"
    lines = [f"Notifications ({unread_count} unread)"]
    lines.extend(render_notification(n, color=color, at=at) for n in notifications)
    return "\n".join(lines) + "\n"


def render_status(entry: CacheEntry) -> str:
    return f"{entry.status} @ seq {entry.last_synced_seq}"
