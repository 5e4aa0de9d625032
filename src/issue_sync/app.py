"""Batch driver tying together GitHub, Discord and the per-issue steps."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Callable

from .discord import DiscordAPIProtocol
from .followup import FollowUpStep
from .github import GitHubAPIProtocol
from .membership import (
    RoleIdMembership,
    RoleNameMembership,
    TeamMembershipPolicy,
    TeamRoster,
)
from .models import BatchSummary, GitHubIssue, IssueOutcome, IssueSyncResult, SyncOptions
from .state_store import CommentSyncStateStore, SyncStateStore
from .sync import IssueSynchronizer
from .threads import extract_thread_id
from .utils import IssueProcessingGuard

logger = logging.getLogger(__name__)


def build_membership_policy(options: SyncOptions) -> TeamMembershipPolicy:
    if options.team_role_ids:
        return RoleIdMembership(options.team_role_ids)
    return RoleNameMembership(options.team_role_names)


def summarize(outcomes: Sequence[IssueOutcome]) -> BatchSummary:
    summary = BatchSummary(issues_processed=len(outcomes), outcomes=tuple(outcomes))
    for outcome in outcomes:
        sync = outcome.sync
        if sync is not None:
            if sync.has_thread:
                summary.issues_with_threads += 1
            else:
                summary.issues_skipped += 1
            summary.messages_synced += sync.messages_synced
        if outcome.follow_up is not None and outcome.follow_up.label_added:
            summary.labels_added += 1
        if outcome.failed:
            summary.errors += 1
    return summary


class IssueSyncApp:
    """High level coordinator of one sync run over the working set of issues."""

    def __init__(
        self,
        *,
        github: GitHubAPIProtocol,
        discord: DiscordAPIProtocol,
        roster: TeamRoster,
        options: SyncOptions,
        membership: TeamMembershipPolicy | None = None,
        store: SyncStateStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._github = github
        self._options = options
        self._store = store or CommentSyncStateStore(
            github, options.owner, options.repo, clock=clock
        )
        self._synchronizer = IssueSynchronizer(
            discord,
            github,
            self._store,
            membership or build_membership_policy(options),
            options,
        )
        self._follow_up = FollowUpStep(
            github,
            roster,
            owner=options.owner,
            repo=options.repo,
            label=options.follow_up_label,
        )
        self._guard = IssueProcessingGuard()

    async def fetch_working_set(self) -> list[GitHubIssue]:
        """Open issues carrying any of the status labels, one entry per issue."""
        unique: dict[int, GitHubIssue] = {}
        for label in self._options.status_labels:
            issues = await self._github.list_issues(
                self._options.owner, self._options.repo, labels=label, state="open"
            )
            for issue in issues:
                unique.setdefault(issue.number, issue)
        logger.info(
            "Found %d issues with target labels (%s)",
            len(unique),
            ", ".join(self._options.status_labels),
        )
        return list(unique.values())

    async def run_once(self) -> BatchSummary:
        issues = await self.fetch_working_set()
        return await self.process_issues(issues)

    async def run_issues(self, numbers: Iterable[int]) -> BatchSummary:
        issues = [
            await self._github.get_issue(self._options.owner, self._options.repo, number)
            for number in numbers
        ]
        return await self.process_issues(issues)

    async def process_issues(self, issues: Sequence[GitHubIssue]) -> BatchSummary:
        semaphore = asyncio.Semaphore(max(1, self._options.concurrency))

        async def bounded(issue: GitHubIssue) -> IssueOutcome:
            async with semaphore:
                return await self.process_issue(issue)

        outcomes = await asyncio.gather(*(bounded(issue) for issue in issues))
        summary = summarize(outcomes)
        logger.info(
            "Sync run finished: %d issues, %d with threads, %d messages synced, "
            "%d skipped, %d labels added, %d errors",
            summary.issues_processed,
            summary.issues_with_threads,
            summary.messages_synced,
            summary.issues_skipped,
            summary.labels_added,
            summary.errors,
        )
        return summary

    async def process_issue(self, issue: GitHubIssue) -> IssueOutcome:
        timeout = self._options.issue_timeout
        async with self._guard.lock(issue.number):
            try:
                if timeout > 0:
                    return await asyncio.wait_for(self._process_issue_inner(issue), timeout)
                return await self._process_issue_inner(issue)
            except asyncio.TimeoutError:
                logger.error("Issue #%d: processing exceeded %gs", issue.number, timeout)
                return _failed_outcome(issue, f"Timed out after {timeout:g}s")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected error while processing issue #%d", issue.number)
                return _failed_outcome(issue, str(exc) or type(exc).__name__)

    async def _process_issue_inner(self, issue: GitHubIssue) -> IssueOutcome:
        try:
            comments = await self._github.list_comments(
                self._options.owner, self._options.repo, issue.number
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Error fetching comments for issue #%d", issue.number)
            return _failed_outcome(issue, str(exc) or type(exc).__name__)

        sync = await self._synchronizer.sync_issue(issue, comments)
        # A failed sync carries no trustworthy Discord fact.
        tracker_flag = sync.last_author_is_team_member if sync.success else None
        follow_up = await self._follow_up.apply(issue, comments, tracker_flag)
        return IssueOutcome(issue_number=issue.number, sync=sync, follow_up=follow_up)

    async def run_forever(self, interval: float) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("Sync loop stopped")
                raise
            except Exception:
                logger.exception("Sync run failed, retrying in %.0fs", interval)
            await asyncio.sleep(interval)


def _failed_outcome(issue: GitHubIssue, error: str) -> IssueOutcome:
    thread_id = extract_thread_id(issue.body)
    return IssueOutcome(
        issue_number=issue.number,
        sync=IssueSyncResult(
            issue_number=issue.number,
            has_thread=thread_id is not None,
            thread_id=thread_id,
            error=error,
        ),
        error=error,
    )
