"""Decide whether an issue waiting on its author needs a teammate again."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from .formatting import is_relay_echo
from .github import GitHubAPIProtocol
from .membership import TeamRoster
from .models import FollowUpReason, FollowUpResult, GitHubComment, GitHubIssue
from .tracker import has_sync_marker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FollowUpDecision:
    """Signals evaluated for one issue."""

    github_comment: bool
    sync_tracker: bool
    last_comment_author: str | None = None

    @property
    def needs_follow_up(self) -> bool:
        return self.github_comment or self.sync_tracker

    @property
    def reason(self) -> FollowUpReason:
        if self.github_comment and self.sync_tracker:
            return FollowUpReason.BOTH
        if self.github_comment:
            return FollowUpReason.GITHUB_COMMENT
        if self.sync_tracker:
            return FollowUpReason.SYNC_TRACKER
        return FollowUpReason.NONE


def last_human_comment(comments: Sequence[GitHubComment]) -> GitHubComment | None:
    """Return the newest comment written by a person rather than automation."""

    for comment in reversed(comments):
        if comment.is_bot or not comment.user_login:
            continue
        if has_sync_marker(comment.body) or is_relay_echo(comment.body):
            continue
        return comment
    return None


def decide_follow_up(
    comments: Sequence[GitHubComment],
    roster: TeamRoster,
    tracker_flag: bool | None,
) -> FollowUpDecision:
    last = last_human_comment(comments)
    author = last.user_login if last is not None else None
    github_signal = author is not None and not roster.is_known_login(author)
    return FollowUpDecision(
        github_comment=github_signal,
        sync_tracker=tracker_flag is False,
        last_comment_author=author,
    )


class FollowUpStep:
    """Apply the follow-up label when either signal fires."""

    def __init__(
        self,
        github: GitHubAPIProtocol,
        roster: TeamRoster,
        *,
        owner: str,
        repo: str,
        label: str,
    ) -> None:
        self._github = github
        self._roster = roster
        self._owner = owner
        self._repo = repo
        self._label = label

    async def apply(
        self,
        issue: GitHubIssue,
        comments: Sequence[GitHubComment],
        tracker_flag: bool | None,
    ) -> FollowUpResult:
        decision = decide_follow_up(comments, self._roster, tracker_flag)
        logger.debug(
            "Issue #%d: last comment from %s, Discord team flag %s, reason %s",
            issue.number,
            decision.last_comment_author,
            tracker_flag,
            decision.reason.value,
        )
        result = FollowUpResult(
            issue_number=issue.number,
            needs_follow_up=decision.needs_follow_up,
            label_added=False,
            label_reason=decision.reason,
            last_comment_author=decision.last_comment_author,
        )
        if not decision.needs_follow_up:
            return result
        if self._label in issue.labels:
            logger.debug("Issue #%d: already labelled %r", issue.number, self._label)
            return result

        try:
            await self._github.add_labels(self._owner, self._repo, issue.number, [self._label])
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Error adding label to issue #%d", issue.number)
            result.error = str(exc) or type(exc).__name__
            return result

        logger.info(
            'Issue #%d: added "%s" label (%s)',
            issue.number,
            self._label,
            decision.reason.value,
        )
        result.label_added = True
        return result
