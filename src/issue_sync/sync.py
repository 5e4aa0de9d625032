"""Mirror Discord thread messages into the GitHub issue they belong to."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Sequence

from .discord import DiscordAPIProtocol
from .formatting import format_relayed_message, is_relay_echo
from .github import GitHubAPIProtocol
from .membership import TeamMembershipPolicy
from .models import (
    DiscordMessage,
    GitHubComment,
    GitHubIssue,
    IssueSyncResult,
    SyncedMessage,
    SyncOptions,
    ThreadInfo,
)
from .state_store import SyncStateStore, TrackerLookup
from .threads import build_thread_url, extract_thread_id
from .tracker import build_tracker_data
from .utils import (
    format_timestamp,
    parse_timestamp,
    snowflake_from_datetime,
    snowflake_sort_key,
)

logger = logging.getLogger(__name__)

MODE_DIGEST = "digest"
MODE_RELAY = "relay"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class IssueSynchronizer:
    """Per-issue sync step.

    ``sync_issue`` never raises for a failing issue: every error is logged and
    returned in :attr:`IssueSyncResult.error` so sibling issues keep going.
    """

    def __init__(
        self,
        discord: DiscordAPIProtocol,
        github: GitHubAPIProtocol,
        store: SyncStateStore,
        membership: TeamMembershipPolicy,
        options: SyncOptions,
    ) -> None:
        self._discord = discord
        self._github = github
        self._store = store
        self._membership = membership
        self._options = options

    async def sync_issue(
        self,
        issue: GitHubIssue,
        comments: Sequence[GitHubComment] | None = None,
    ) -> IssueSyncResult:
        thread_id = extract_thread_id(issue.body)
        if not thread_id:
            logger.debug("Issue #%d: no Discord thread URL found in body", issue.number)
            return IssueSyncResult(issue_number=issue.number, has_thread=False)

        logger.info("Issue #%d: found Discord thread %s", issue.number, thread_id)
        try:
            return await self._sync_thread(issue, thread_id, comments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Error syncing Discord messages for issue #%d", issue.number)
            return IssueSyncResult(
                issue_number=issue.number,
                has_thread=True,
                thread_id=thread_id,
                error=str(exc) or type(exc).__name__,
            )

    async def _sync_thread(
        self,
        issue: GitHubIssue,
        thread_id: str,
        comments: Sequence[GitHubComment] | None,
    ) -> IssueSyncResult:
        thread = await self._discord.fetch_channel_info(thread_id)
        if thread is None or not thread.is_thread:
            message = f"Channel {thread_id} is not a thread"
            logger.error("Issue #%d: %s", issue.number, message)
            return IssueSyncResult(
                issue_number=issue.number,
                has_thread=True,
                thread_id=thread_id,
                error=message,
            )

        lookup = await self._store.load(issue, comments)
        previous = lookup.data
        existing = list(previous.messages) if previous else []
        team_flag = previous.last_author_is_team_member if previous else None
        cursor = self._resolve_cursor(issue, lookup)

        fetched = await self._discord.fetch_messages_after(
            thread_id,
            cursor,
            page_size=self._options.page_size,
            max_pages=self._options.max_pages,
            guild_id=thread.guild_id,
        )
        fresh = self._select_new(fetched, cursor, existing)
        # Skipped bot and blank messages still move the stored cursor forward.
        seen = [message.id for message in fetched] + ([cursor] if cursor else [])
        scanned_to = max(seen, key=snowflake_sort_key, default=None)
        if fresh:
            logger.info("Issue #%d: syncing %d new Discord messages", issue.number, len(fresh))
        else:
            logger.info("Issue #%d: no new Discord messages to sync", issue.number)

        latest = fresh[-1] if fresh else await self._latest_thread_message(thread)
        if latest is not None and thread.guild_id:
            team_flag = await self._check_author(issue, thread.guild_id, latest, team_flag)

        new_entries = [_to_synced(message) for message in fresh]
        thread_url = build_thread_url(thread.guild_id, thread_id)

        if self._options.mode == MODE_RELAY:
            await self._relay(issue, existing, new_entries, team_flag, thread_url, scanned_to)
        elif existing or new_entries:
            await self._persist(
                issue, existing + new_entries, team_flag, thread_url, scanned_to=scanned_to
            )
        else:
            logger.debug("Issue #%d: no messages to sync, skipping comment update", issue.number)

        logger.info(
            "Issue #%d: successfully synced %d Discord messages", issue.number, len(fresh)
        )
        return IssueSyncResult(
            issue_number=issue.number,
            has_thread=True,
            thread_id=thread_id,
            messages_synced=len(fresh),
            last_author_is_team_member=team_flag,
        )

    def _resolve_cursor(self, issue: GitHubIssue, lookup: TrackerLookup) -> str | None:
        data = lookup.data
        if data is not None:
            if data.last_message_id:
                return data.last_message_id
            if data.messages:
                return data.messages[-1].id
            marker = snowflake_from_datetime(parse_timestamp(data.last_timestamp))
            return str(marker) if marker else None
        if lookup.malformed:
            marker = snowflake_from_datetime(parse_timestamp(issue.updated_at))
            logger.info(
                "Issue #%d: falling back to issue update time %s as sync cursor",
                issue.number,
                issue.updated_at,
            )
            return str(marker) if marker else None
        return None

    def _select_new(
        self,
        fetched: Iterable[DiscordMessage],
        cursor: str | None,
        existing: Sequence[SyncedMessage],
    ) -> list[DiscordMessage]:
        known = {message.id for message in existing}
        cursor_key = snowflake_sort_key(cursor) if cursor else None
        relay = self._options.mode == MODE_RELAY
        selected: dict[str, DiscordMessage] = {}
        for message in fetched:
            if not _is_eligible(message) or message.id in known:
                continue
            if cursor_key is not None and snowflake_sort_key(message.id) <= cursor_key:
                continue
            if relay and is_relay_echo(message.content):
                continue
            selected.setdefault(message.id, message)
        return sorted(selected.values(), key=_creation_order)

    async def _latest_thread_message(self, thread: ThreadInfo) -> DiscordMessage | None:
        recent = await self._discord.fetch_messages(
            thread.id, limit=self._options.page_size, guild_id=thread.guild_id
        )
        eligible = [message for message in recent if _is_eligible(message)]
        if not eligible:
            return None
        return max(eligible, key=_creation_order)

    async def _check_author(
        self,
        issue: GitHubIssue,
        guild_id: str,
        message: DiscordMessage,
        previous: bool | None,
    ) -> bool | None:
        try:
            member = await self._discord.fetch_member(guild_id, message.author_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Error checking Discord member roles for issue #%d", issue.number
            )
            return previous
        is_team = self._membership.is_team_member(member)
        logger.debug(
            "Issue #%d: last message author %s is team member: %s",
            issue.number,
            message.author_name,
            is_team,
        )
        return is_team

    async def _persist(
        self,
        issue: GitHubIssue,
        messages: Sequence[SyncedMessage],
        team_flag: bool | None,
        thread_url: str,
        *,
        include_log: bool = True,
        scanned_to: str | None = None,
    ) -> None:
        data = build_tracker_data(
            messages, team_flag, datetime.now(timezone.utc), last_message_id=scanned_to
        )
        await self._store.put(issue, data, thread_url=thread_url, include_log=include_log)

    async def _relay(
        self,
        issue: GitHubIssue,
        existing: list[SyncedMessage],
        new_entries: Sequence[SyncedMessage],
        team_flag: bool | None,
        thread_url: str,
        scanned_to: str | None,
    ) -> None:
        relayed: list[SyncedMessage] = []
        try:
            for entry in new_entries:
                await self._github.create_comment(
                    self._options.owner,
                    self._options.repo,
                    issue.number,
                    format_relayed_message(entry),
                )
                relayed.append(entry)
                logger.debug("Issue #%d: posted Discord message from %s", issue.number, entry.author)
        except Exception:
            # Keep the cursor on the last message that was actually posted.
            if relayed:
                await self._persist(
                    issue, existing + relayed, team_flag, thread_url, include_log=False
                )
            raise
        merged = existing + relayed
        if merged:
            await self._persist(
                issue, merged, team_flag, thread_url, include_log=False, scanned_to=scanned_to
            )


def _is_eligible(message: DiscordMessage) -> bool:
    return bool(message.content.strip()) and not message.author_is_bot


def _creation_order(message: DiscordMessage) -> tuple[datetime, tuple[int, str]]:
    return (parse_timestamp(message.timestamp) or _EPOCH, snowflake_sort_key(message.id))


def _to_synced(message: DiscordMessage) -> SyncedMessage:
    moment = parse_timestamp(message.timestamp)
    return SyncedMessage(
        id=message.id,
        author=message.author_name,
        content=message.content,
        timestamp=format_timestamp(moment) if moment is not None else (message.timestamp or ""),
        message_url=message.url,
    )
