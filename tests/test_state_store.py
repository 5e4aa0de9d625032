from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fakes import FakeGitHub, make_comment, make_issue

from issue_sync.models import SyncedMessage
from issue_sync.state_store import (
    GITHUB_COMMENT_LIMIT,
    CommentSyncStateStore,
    select_tracker_comment,
)
from issue_sync.tracker import build_tracker_data, parse_sync_tracker, render_sync_comment

NOW = datetime(2025, 1, 3, tzinfo=timezone.utc)
THREAD_URL = "https://discord.com/channels/111/222"


def tracker_body(message_id: str) -> str:
    message = SyncedMessage(
        id=message_id,
        author="alice",
        content=f"message {message_id}",
        timestamp="2025-01-01T00:00:00.000Z",
        message_url=f"{THREAD_URL}/{message_id}",
    )
    return render_sync_comment(THREAD_URL, [message], now=NOW)


def test_newest_marker_comment_wins() -> None:
    comments = [
        make_comment(1, tracker_body("10"), created_at="2025-01-01T00:00:00Z"),
        make_comment(2, "a normal reply", created_at="2025-01-05T00:00:00Z"),
        make_comment(3, tracker_body("20"), created_at="2025-01-04T00:00:00Z"),
        make_comment(4, tracker_body("15"), created_at="2025-01-02T00:00:00Z"),
    ]
    chosen = select_tracker_comment(comments, 1)
    assert chosen is not None and chosen.id == 3


def test_equal_creation_time_prefers_larger_id() -> None:
    comments = [
        make_comment(8, tracker_body("1"), created_at="2025-01-01T00:00:00Z"),
        make_comment(5, tracker_body("2"), created_at="2025-01-01T00:00:00Z"),
    ]
    chosen = select_tracker_comment(comments)
    assert chosen is not None and chosen.id == 8


def test_comment_quoting_the_marker_is_not_a_sync_comment() -> None:
    comments = [
        make_comment(4, tracker_body("10"), login="sync-bot", user_type="Bot"),
        make_comment(
            5,
            "See <!-- DISCORD_SYNC: in the bot comment, is it broken?",
            created_at="2025-01-06T00:00:00Z",
        ),
    ]
    chosen = select_tracker_comment(comments, 1)
    assert chosen is not None and chosen.id == 4


def test_put_leaves_quoting_comment_untouched() -> None:
    async def runner() -> None:
        quote = "See <!-- DISCORD_SYNC: in the bot comment, is it broken?"
        github = FakeGitHub()
        github.comments[6] = [
            make_comment(4, tracker_body("10"), login="sync-bot", user_type="Bot"),
            make_comment(5, quote, created_at="2025-01-06T00:00:00Z"),
        ]
        store = CommentSyncStateStore(github, "o", "r", clock=lambda: NOW)
        issue = make_issue(6)

        lookup = await store.load(issue)
        assert lookup.data is not None and not lookup.malformed
        await store.put(issue, lookup.data, thread_url=THREAD_URL)

        assert [comment_id for comment_id, _ in github.updated] == [4]
        assert github.comments[6][1].body == quote

    asyncio.run(runner())


def test_oversized_comment_drops_the_readable_log() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        store = CommentSyncStateStore(github, "o", "r", clock=lambda: NOW)
        issue = make_issue(7)
        messages = [
            SyncedMessage(
                id=str(1000 + index),
                author="alice",
                content="x" * 2000,
                timestamp="2025-01-01T00:00:00.000Z",
                message_url=f"{THREAD_URL}/{1000 + index}",
            )
            for index in range(20)
        ]
        await store.load(issue)
        await store.put(issue, build_tracker_data(messages, None, NOW), thread_url=THREAD_URL)

        body = github.created[0][1]
        assert len(body) <= GITHUB_COMMENT_LIMIT
        assert "Discord conversation" not in body
        parsed = parse_sync_tracker(body)
        assert parsed is not None and len(parsed.messages) == 20

    asyncio.run(runner())


def test_no_marker_comment() -> None:
    assert select_tracker_comment([make_comment(1, "hi")]) is None


def test_load_reports_missing_and_malformed_state() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        store = CommentSyncStateStore(github, "o", "r", clock=lambda: NOW)

        missing = await store.load(make_issue(1))
        assert missing.data is None and not missing.present and not missing.malformed

        github.comments[2] = [make_comment(5, "<!-- DISCORD_SYNC: ??? -->")]
        broken = await store.load(make_issue(2))
        assert broken.malformed

        github.comments[3] = [make_comment(6, tracker_body("77"))]
        data = await store.get(make_issue(3))
        assert data is not None and data.last_message_id == "77"

    asyncio.run(runner())


def test_put_creates_once_then_updates() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        store = CommentSyncStateStore(github, "o", "r", clock=lambda: NOW)
        issue = make_issue(4)
        await store.load(issue)

        data = build_tracker_data([], None, NOW)
        await store.put(issue, data, thread_url=THREAD_URL)
        await store.put(issue, data, thread_url=THREAD_URL)

        assert len(github.created) == 1
        assert len(github.updated) == 1
        assert github.updated[0][1] == github.created[0][1]

    asyncio.run(runner())


def test_malformed_comment_is_overwritten_in_place() -> None:
    async def runner() -> None:
        github = FakeGitHub()
        github.comments[5] = [make_comment(9, "<!-- DISCORD_SYNC: {oops -->")]
        store = CommentSyncStateStore(github, "o", "r", clock=lambda: NOW)
        issue = make_issue(5)

        await store.load(issue)
        await store.put(issue, build_tracker_data([], True, NOW), thread_url=THREAD_URL)

        assert github.created == []
        assert github.updated[0][0] == 9
        parsed = parse_sync_tracker(github.comments[5][0].body)
        assert parsed is not None and parsed.last_author_is_team_member is True

    asyncio.run(runner())
