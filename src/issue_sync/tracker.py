"""Sync state embedded in the GitHub sync comment.

The state lives in an HTML comment at the top of the comment body::

    <!-- DISCORD_SYNC: {"version": 2, "lastMessageId": "...", ...} -->

Two older layouts are still read: version 1 JSON without a ``messages`` log
and the original ``last_message_id=<id>, last_timestamp=<ts>`` marker. Both
are normalized to :class:`SyncTrackerData` with an empty log, so nothing past
this module needs to know which layout was stored.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from .formatting import render_message_log, render_sync_footer
from .models import SyncedMessage, SyncTrackerData
from .utils import format_timestamp, snowflake_sort_key

SYNC_MARKER = "<!-- DISCORD_SYNC:"
CURRENT_VERSION = 2

_CLOSE_MARKER = "-->"
_LEGACY_RE = re.compile(r"last_message_id=(\S+),\s*last_timestamp=(\S+)")

logger = logging.getLogger(__name__)


def has_sync_marker(body: str | None) -> bool:
    """True when the body is a sync comment, i.e. it opens with the marker."""
    return body is not None and body.lstrip().startswith(SYNC_MARKER)


def parse_sync_tracker(body: str | None) -> SyncTrackerData | None:
    """Extract the sync state from a comment body, or ``None`` if unusable."""

    if not has_sync_marker(body):
        return None
    text = (body or "").lstrip()
    start = len(SYNC_MARKER)
    end = text.find(_CLOSE_MARKER, start)
    if end < 0:
        return None
    raw = text[start:end].strip()

    if raw.startswith("{"):
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            logger.debug("Sync tracker JSON is malformed: %s", exc)
            return None
        if not isinstance(payload, Mapping):
            return None
        return _from_json(payload)

    legacy = _LEGACY_RE.fullmatch(raw)
    if legacy:
        return SyncTrackerData(
            version=1,
            last_message_id=legacy.group(1),
            last_timestamp=legacy.group(2),
        )
    return None


def _from_json(payload: Mapping[str, Any]) -> SyncTrackerData:
    raw_messages = payload.get("messages")
    messages: tuple[SyncedMessage, ...] = ()
    if isinstance(raw_messages, list):
        version = CURRENT_VERSION
        messages = tuple(
            SyncedMessage.from_payload(entry)
            for entry in raw_messages
            if isinstance(entry, Mapping) and entry.get("id")
        )
    else:
        version = 1

    last_id = payload.get("lastMessageId")
    last_ts = payload.get("lastTimestamp")
    flag = payload.get("lastAuthorIsTeamMember")
    return SyncTrackerData(
        version=version,
        last_message_id=str(last_id) if last_id else None,
        last_timestamp=str(last_ts) if last_ts else None,
        last_author_is_team_member=flag if isinstance(flag, bool) else None,
        messages=messages,
    )


def build_tracker_data(
    messages: Sequence[SyncedMessage],
    last_author_is_team_member: bool | None,
    now: datetime,
    last_message_id: str | None = None,
) -> SyncTrackerData:
    """Build current-format state; ``last_message_id`` may push the cursor past the log."""

    last = messages[-1] if messages else None
    cursor = last.id if last else None
    if last_message_id and (
        cursor is None or snowflake_sort_key(last_message_id) > snowflake_sort_key(cursor)
    ):
        cursor = last_message_id
    return SyncTrackerData(
        version=CURRENT_VERSION,
        last_message_id=cursor,
        last_timestamp=last.timestamp if last else format_timestamp(now),
        last_author_is_team_member=last_author_is_team_member,
        messages=tuple(messages),
    )


def encode_tracker(data: SyncTrackerData) -> str:
    """Serialize ``data`` into the marker line."""

    payload = json.dumps(data.to_payload(), ensure_ascii=False, separators=(",", ":"))
    # ">" only occurs inside JSON strings, so the escape keeps "-->" out of the blob.
    payload = payload.replace(">", "\\u003e")
    return f"{SYNC_MARKER} {payload} {_CLOSE_MARKER}"


def render_sync_comment(
    thread_url: str,
    messages: Sequence[SyncedMessage],
    last_author_is_team_member: bool | None = None,
    *,
    now: datetime | None = None,
    include_log: bool = True,
) -> str:
    """Build the full sync comment body in the current format."""

    moment = now or datetime.now(timezone.utc)
    data = build_tracker_data(messages, last_author_is_team_member, moment)
    return render_tracker(thread_url, data, moment, include_log=include_log)


def render_tracker(
    thread_url: str,
    data: SyncTrackerData,
    now: datetime,
    *,
    include_log: bool = True,
) -> str:
    parts = [encode_tracker(data)]
    if include_log:
        parts.append(render_message_log(data.messages, now))
    parts.append(render_sync_footer(thread_url, now))
    return "\n\n".join(parts)
