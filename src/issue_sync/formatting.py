"""GitHub markdown rendering for mirrored Discord messages."""

from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Sequence

from .models import SyncedMessage
from .utils import format_timestamp, parse_timestamp

_MONTHS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)
_RELAY_FOOTER = "*This message was automatically synced from Discord*"
_ISSUE_CREATED_PREFIX = "📝 Created GitHub issue:"
_LOG_ICON = "💬"


def format_relative_time(timestamp: str, now: datetime | None = None) -> str:
    """Describe how long ago ``timestamp`` happened, relative to ``now``."""

    moment = parse_timestamp(timestamp)
    if moment is None:
        return timestamp
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)

    minutes = int((current - moment).total_seconds() // 60)
    if minutes <= 0:
        return "just now"
    if minutes < 60:
        return _plural(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _plural(hours, "hour")
    days = hours // 24
    if days == 1:
        return "yesterday"
    if days < 7:
        return _plural(days, "day")
    moment = moment.astimezone(timezone.utc)
    return f"{_MONTHS[moment.month - 1]} {moment.day}"


def _plural(count: int, unit: str) -> str:
    suffix = "" if count == 1 else "s"
    return f"{count} {unit}{suffix} ago"


def render_message_log(
    messages: Sequence[SyncedMessage], now: datetime | None = None
) -> str:
    """Render the full conversation as collapsible blocks, oldest first."""

    count = len(messages)
    noun = "message" if count == 1 else "messages"
    blocks = [f"## {_LOG_ICON} Discord conversation ({count} {noun})"]
    for message in messages:
        blocks.append(_render_message_block(message, now))
    return "\n\n".join(blocks)


def _render_message_block(message: SyncedMessage, now: datetime | None) -> str:
    author = f"<b>{html.escape(message.author or 'Unknown')}</b>"
    if message.message_url:
        author = f'<a href="{html.escape(message.message_url)}">{author}</a>'
    when = html.escape(format_relative_time(message.timestamp, now))
    content = message.content.strip()
    return "\n".join(
        [
            "<details>",
            f"<summary>{author} · {when}</summary>",
            "",
            content,
            "",
            "</details>",
        ]
    )


def render_sync_footer(thread_url: str, now: datetime | None = None) -> str:
    synced_at = format_timestamp(now or datetime.now(timezone.utc))
    return f"---\n[View thread on Discord]({thread_url}) · Last synced: {synced_at}"


def format_relayed_message(message: SyncedMessage) -> str:
    """Format a single Discord message as its own GitHub comment."""

    moment = parse_timestamp(message.timestamp)
    when = format_timestamp(moment) if moment is not None else message.timestamp
    lines = [
        f"**Discord Message** from @{message.author} at {when}",
        "",
        message.content,
        "",
    ]
    if message.message_url:
        lines.extend([f"[View in Discord]({message.message_url})", ""])
    lines.extend(["---", _RELAY_FOOTER])
    return "\n".join(lines)


def is_relay_echo(content: str) -> bool:
    """Return True for content this service itself posts to Discord or GitHub."""

    stripped = content.strip()
    if stripped.startswith(_ISSUE_CREATED_PREFIX):
        return True
    return _RELAY_FOOTER in stripped
