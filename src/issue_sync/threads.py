"""Discord thread references embedded in GitHub issues."""

from __future__ import annotations

import re

_THREAD_URL_RE = re.compile(r"https://discord\.com/channels/\d+/(\d+)")
_DISCORD_BASE = "https://discord.com/channels"


def extract_thread_id(body: str | None) -> str | None:
    """Return the first Discord thread id linked from ``body``.

    Both the badge markdown and a plain URL are matched since only the
    ``/channels/<guild>/<thread>`` part is inspected.
    """

    if not body:
        return None
    match = _THREAD_URL_RE.search(body)
    return match.group(1) if match else None


def build_thread_url(guild_id: str | None, thread_id: str) -> str:
    return f"{_DISCORD_BASE}/{guild_id or '@me'}/{thread_id}"


def build_message_url(guild_id: str | None, channel_id: str, message_id: str) -> str:
    return f"{build_thread_url(guild_id, channel_id)}/{message_id}"
