from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fakes import (
    GUILD_ID,
    FakeDiscord,
    FakeGitHub,
    make_comment,
    make_issue,
    make_message,
    team_member,
)

from issue_sync.app import IssueSyncApp, build_membership_policy, summarize
from issue_sync.membership import RoleIdMembership, RoleNameMembership, RosterMember, TeamRoster
from issue_sync.models import (
    FollowUpReason,
    IssueOutcome,
    IssueSyncResult,
    SyncOptions,
    ThreadInfo,
)
from issue_sync.tracker import parse_sync_tracker, render_sync_comment

WAITING = "status: waiting for author"
REPRO = "status: needs reproduction"
FOLLOW_UP = "status: needs follow up"


def build_app(
    github: FakeGitHub,
    discord: FakeDiscord,
    roster: TeamRoster | None = None,
    **overrides: object,
) -> IssueSyncApp:
    return IssueSyncApp(
        github=github,
        discord=discord,
        roster=roster or TeamRoster([RosterMember(login="maintainer")]),
        options=SyncOptions(**overrides),  # type: ignore[arg-type]
        clock=lambda: datetime(2025, 1, 2, tzinfo=timezone.utc),
    )


def test_working_set_is_deduplicated() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        shared = make_issue(1, labels=(WAITING, REPRO))
        github.add_issue(shared)
        github.add_issue(make_issue(2, with_thread=False, labels=(REPRO,)))

        app = build_app(github, FakeDiscord())
        issues = await app.fetch_working_set()
        assert [issue.number for issue in issues] == [1, 2]

        summary = await app.run_once()
        assert summary.issues_processed == 2
        assert summary.issues_with_threads == 1
        assert summary.issues_skipped == 1

    asyncio.run(runner())


def test_end_to_end_issue_42() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.add_issue(make_issue(42))
        discord = FakeDiscord(
            [
                make_message(0, "first"),
                make_message(1, "second"),
                make_message(2, "third"),
            ]
        )
        app = build_app(github, discord)

        first = await app.run_once()
        assert first.success
        assert first.messages_synced == 3
        assert len(github.created) == 1
        comment_id = github.comments[42][0].id

        discord.messages.append(make_message(10, "fourth"))
        second = await app.run_once()
        assert second.messages_synced == 1
        assert len(github.created) == 1
        assert github.updated[-1][0] == comment_id

        data = parse_sync_tracker(github.comments[42][0].body)
        assert data is not None
        assert [m.content for m in data.messages] == ["first", "second", "third", "fourth"]

    asyncio.run(runner())


def test_one_failing_issue_does_not_stop_the_batch() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        for number in (1, 2, 3):
            github.add_issue(make_issue(number))
        github.fail_comments_for.add(2)
        discord = FakeDiscord([make_message(0, "hello")])

        summary = await build_app(github, discord).run_once()

        assert summary.issues_processed == 3
        assert summary.errors == 1
        assert not summary.success
        failed = [outcome for outcome in summary.outcomes if outcome.failed]
        assert [outcome.issue_number for outcome in failed] == [2]
        assert "bad gateway" in (failed[0].error or "")
        assert {number for number, _ in github.created} == {1, 3}

    asyncio.run(runner())


def test_concurrency_is_bounded() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.comment_delay = 0.01
        for number in range(1, 13):
            github.add_issue(make_issue(number, with_thread=False))

        summary = await build_app(github, FakeDiscord(), concurrency=3).run_once()

        assert summary.issues_processed == 12
        assert 1 < github.max_in_flight <= 3

    asyncio.run(runner())


def test_slow_issue_times_out() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.comment_delay = 0.5
        github.add_issue(make_issue(5))

        summary = await build_app(github, FakeDiscord(), issue_timeout=0.05).run_once()

        assert summary.errors == 1
        outcome = summary.outcomes[0]
        assert outcome.error is not None and outcome.error.startswith("Timed out")
        assert outcome.sync is not None and outcome.sync.has_thread

    asyncio.run(runner())


def test_discord_reply_from_outsider_adds_follow_up_label() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.add_issue(make_issue(6))
        github.comments[6] = [make_comment(1, "Can you share a repro?", login="maintainer")]
        discord = FakeDiscord([make_message(0, "here is my repro", author_id="501")])

        summary = await build_app(github, discord).run_once()

        assert summary.labels_added == 1
        assert github.labels_added == [(6, [FOLLOW_UP])]
        follow_up = summary.outcomes[0].follow_up
        assert follow_up is not None
        assert follow_up.label_reason is FollowUpReason.SYNC_TRACKER

    asyncio.run(runner())


def test_team_reply_everywhere_adds_no_label() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.add_issue(make_issue(7))
        github.comments[7] = [make_comment(1, "Looking into it", login="Maintainer")]
        discord = FakeDiscord(
            [make_message(0, "we are on it", author_id="900")],
            members={"900": team_member("900")},
        )

        summary = await build_app(github, discord).run_once()

        assert summary.labels_added == 0
        assert github.labels_added == []

    asyncio.run(runner())


def test_failed_sync_still_runs_github_signal() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.add_issue(make_issue(8))
        github.comments[8] = [make_comment(1, "any news?", login="reporter")]
        discord = FakeDiscord(channel_type=0)

        summary = await build_app(github, discord).run_once()

        outcome = summary.outcomes[0]
        assert outcome.sync is not None and outcome.sync.error
        assert outcome.follow_up is not None
        assert outcome.follow_up.label_reason is FollowUpReason.GITHUB_COMMENT
        assert github.labels_added == [(8, [FOLLOW_UP])]
        assert summary.errors == 1

    asyncio.run(runner())


def test_discord_failure_in_batch_ignores_stored_team_flag() -> None:
    async def runner() -> None:
        broken_thread = "333"
        broken_url = f"https://discord.com/channels/{GUILD_ID}/{broken_thread}"
        github = FakeGitHub()
        for number in (1, 2, 3):
            body = f"Thread: {broken_url}" if number == 2 else None
            github.add_issue(make_issue(number, body=body))
        # Issue 2 was last answered by an outsider on Discord.
        github.comments[2] = [
            make_comment(
                50,
                render_sync_comment(
                    broken_url, [], False, now=datetime(2025, 1, 1, tzinfo=timezone.utc)
                ),
                login="sync-bot",
                user_type="Bot",
            )
        ]
        discord = FakeDiscord(
            [make_message(0, "we are on it", author_id="900")],
            members={"900": team_member("900")},
        )
        discord.threads[broken_thread] = ThreadInfo(id=broken_thread, type=11, guild_id=GUILD_ID)
        discord.fail_threads.add(broken_thread)

        summary = await build_app(github, discord).run_once()

        assert len(summary.outcomes) == 3
        assert summary.errors == 1
        broken = next(outcome for outcome in summary.outcomes if outcome.issue_number == 2)
        assert broken.sync is not None
        assert broken.sync.error == "Discord unavailable for 333"
        assert broken.follow_up is not None
        assert broken.follow_up.label_reason is FollowUpReason.NONE
        assert not broken.follow_up.needs_follow_up
        assert all(number != 2 for number, _ in github.labels_added)
        healthy = [outcome for outcome in summary.outcomes if outcome.issue_number != 2]
        assert all(outcome.sync is not None and outcome.sync.success for outcome in healthy)

    asyncio.run(runner())


def test_run_issues_processes_requested_numbers() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.add_issue(make_issue(30, with_thread=False), "other")
        summary = await build_app(github, FakeDiscord()).run_issues([30])
        assert summary.issues_processed == 1
        assert summary.issues_skipped == 1

    asyncio.run(runner())


def test_run_forever_survives_failed_run() -> None:
    async def runner() -> None:
        calls = 0

        class FlakyApp(IssueSyncApp):
            async def run_once(self):  # type: ignore[no-untyped-def]
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise RuntimeError("GitHub is down")
                return summarize([])

        app = FlakyApp(
            github=FakeGitHub(),
            discord=FakeDiscord(),
            roster=TeamRoster(),
            options=SyncOptions(),
        )
        task = asyncio.create_task(app.run_forever(0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        assert calls >= 2

    asyncio.run(runner())


def test_summarize_counts_outcomes() -> None:
    outcomes = [
        IssueOutcome(1, sync=IssueSyncResult(1, has_thread=True, messages_synced=2)),
        IssueOutcome(2, sync=IssueSyncResult(2, has_thread=False)),
        IssueOutcome(3, sync=IssueSyncResult(3, has_thread=True, error="boom")),
    ]
    summary = summarize(outcomes)
    assert summary.issues_processed == 3
    assert summary.issues_with_threads == 2
    assert summary.issues_skipped == 1
    assert summary.messages_synced == 2
    assert summary.errors == 1


def test_membership_policy_prefers_role_ids() -> None:
    assert isinstance(build_membership_policy(SyncOptions()), RoleNameMembership)
    policy = build_membership_policy(SyncOptions(team_role_ids=("123",)))
    assert isinstance(policy, RoleIdMembership)
