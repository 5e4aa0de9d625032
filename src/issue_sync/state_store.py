"""Storage of per-issue sync state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence

from .github import GitHubAPIProtocol
from .models import GitHubComment, GitHubIssue, SyncTrackerData
from .tracker import has_sync_marker, parse_sync_tracker, render_tracker
from .utils import parse_timestamp

logger = logging.getLogger(__name__)

GITHUB_COMMENT_LIMIT = 65536


@dataclass(slots=True)
class TrackerLookup:
    """Result of looking up the stored state of one issue."""

    data: SyncTrackerData | None
    present: bool

    @property
    def malformed(self) -> bool:
        return self.present and self.data is None


class SyncStateStore(Protocol):
    async def get(
        self, issue: GitHubIssue, comments: Sequence[GitHubComment] | None = None
    ) -> SyncTrackerData | None: ...

    async def load(
        self, issue: GitHubIssue, comments: Sequence[GitHubComment] | None = None
    ) -> TrackerLookup: ...

    async def put(
        self,
        issue: GitHubIssue,
        data: SyncTrackerData,
        *,
        thread_url: str,
        include_log: bool = True,
    ) -> None: ...


class CommentSyncStateStore:
    """Keep the sync state inside a marker comment on the issue itself."""

    def __init__(
        self,
        github: GitHubAPIProtocol,
        owner: str,
        repo: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._github = github
        self._owner = owner
        self._repo = repo
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._comment_ids: dict[int, int] = {}

    async def get(
        self, issue: GitHubIssue, comments: Sequence[GitHubComment] | None = None
    ) -> SyncTrackerData | None:
        return (await self.load(issue, comments)).data

    async def load(
        self, issue: GitHubIssue, comments: Sequence[GitHubComment] | None = None
    ) -> TrackerLookup:
        if comments is None:
            comments = await self._github.list_comments(self._owner, self._repo, issue.number)
        comment = select_tracker_comment(comments, issue.number)
        if comment is None:
            self._comment_ids.pop(issue.number, None)
            return TrackerLookup(data=None, present=False)
        self._comment_ids[issue.number] = comment.id
        data = parse_sync_tracker(comment.body)
        if data is None:
            logger.warning(
                "Issue #%d: sync comment %d is unreadable and will be rewritten",
                issue.number,
                comment.id,
            )
        return TrackerLookup(data=data, present=True)

    async def put(
        self,
        issue: GitHubIssue,
        data: SyncTrackerData,
        *,
        thread_url: str,
        include_log: bool = True,
    ) -> None:
        now = self._clock()
        body = render_tracker(thread_url, data, now, include_log=include_log)
        if include_log and len(body) > GITHUB_COMMENT_LIMIT:
            logger.warning(
                "Issue #%d: sync comment would be %d characters, over the GitHub limit "
                "of %d, writing it without the readable log",
                issue.number,
                len(body),
                GITHUB_COMMENT_LIMIT,
            )
            body = render_tracker(thread_url, data, now, include_log=False)
        if len(body) > GITHUB_COMMENT_LIMIT:
            logger.error(
                "Issue #%d: sync state of %d messages is %d characters and exceeds the "
                "GitHub comment limit of %d, the update will be rejected",
                issue.number,
                len(data.messages),
                len(body),
                GITHUB_COMMENT_LIMIT,
            )
        comment_id = self._comment_ids.get(issue.number)
        if comment_id is not None:
            await self._github.update_comment(self._owner, self._repo, comment_id, body)
            logger.debug(
                "Issue #%d: updated sync comment %d with %d messages",
                issue.number,
                comment_id,
                len(data.messages),
            )
            return
        created = await self._github.create_comment(
            self._owner, self._repo, issue.number, body
        )
        self._comment_ids[issue.number] = created.id
        logger.debug(
            "Issue #%d: created sync comment %d with %d messages",
            issue.number,
            created.id,
            len(data.messages),
        )


def select_tracker_comment(
    comments: Sequence[GitHubComment], issue_number: int | None = None
) -> GitHubComment | None:
    """Pick the canonical sync comment: the newest comment that opens with the marker."""

    candidates = [comment for comment in comments if has_sync_marker(comment.body)]
    if not candidates:
        return None
    if len(candidates) > 1:
        logger.warning(
            "Issue #%s has %d sync comments, using the newest one",
            issue_number if issue_number is not None else "?",
            len(candidates),
        )

    epoch = datetime.min.replace(tzinfo=timezone.utc)

    def recency(comment: GitHubComment) -> tuple[datetime, int]:
        return (parse_timestamp(comment.created_at) or epoch, comment.id)

    return max(candidates, key=recency)
