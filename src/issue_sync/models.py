"""Data models used across the sync service."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

_THREAD_CHANNEL_TYPES = frozenset({10, 11, 12})


@dataclass(slots=True)
class SyncOptions:
    """Tunable behaviour of a sync run."""

    owner: str = "mastra-ai"
    repo: str = "mastra"
    status_labels: tuple[str, ...] = (
        "status: waiting for author",
        "status: needs reproduction",
    )
    follow_up_label: str = "status: needs follow up"
    concurrency: int = 10
    issue_timeout: float = 120.0
    mode: str = "digest"
    page_size: int = 100
    max_pages: int = 10
    team_role_names: tuple[str, ...] = ("Admin", "Mastra Team")
    team_role_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class SyncedMessage:
    """Snapshot of a Discord message that has been mirrored to GitHub."""

    id: str
    author: str
    content: str
    timestamp: str
    message_url: str

    def to_payload(self) -> dict[str, str]:
        return {
            "id": self.id,
            "author": self.author,
            "content": self.content,
            "timestamp": self.timestamp,
            "messageUrl": self.message_url,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SyncedMessage":
        return cls(
            id=str(payload.get("id") or ""),
            author=str(payload.get("author") or ""),
            content=str(payload.get("content") or ""),
            timestamp=str(payload.get("timestamp") or ""),
            message_url=str(payload.get("messageUrl") or ""),
        )


@dataclass(slots=True)
class SyncTrackerData:
    """Synchronization state persisted inside the sync comment."""

    version: int
    last_message_id: str | None
    last_timestamp: str | None
    last_author_is_team_member: bool | None = None
    messages: tuple[SyncedMessage, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "lastMessageId": self.last_message_id,
            "lastTimestamp": self.last_timestamp,
        }
        if self.last_author_is_team_member is not None:
            payload["lastAuthorIsTeamMember"] = self.last_author_is_team_member
        payload["messages"] = [message.to_payload() for message in self.messages]
        return payload


@dataclass(slots=True)
class GitHubIssue:
    """Subset of the GitHub issue payload used by the sync."""

    number: int
    title: str
    body: str | None
    updated_at: str
    html_url: str
    labels: tuple[str, ...] = ()


@dataclass(slots=True)
class GitHubComment:
    """Subset of the GitHub issue comment payload."""

    id: int
    body: str
    user_login: str | None
    user_type: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_bot(self) -> bool:
        return self.user_type == "Bot"


@dataclass(slots=True)
class DiscordMessage:
    """Subset of the Discord message payload used by the sync."""

    id: str
    channel_id: str
    guild_id: str | None
    author_id: str
    author_name: str
    content: str
    author_is_bot: bool = False
    timestamp: str | None = None
    url: str = ""


@dataclass(slots=True)
class ThreadInfo:
    """Basic channel metadata from the Discord API."""

    id: str
    type: int
    guild_id: str | None = None
    name: str | None = None
    parent_id: str | None = None

    @property
    def is_thread(self) -> bool:
        return self.type in _THREAD_CHANNEL_TYPES


@dataclass(slots=True)
class GuildMember:
    """Guild member with resolved role names."""

    user_id: str
    username: str
    role_ids: frozenset[str] = frozenset()
    role_names: frozenset[str] = frozenset()


@dataclass(slots=True)
class IssueSyncResult:
    """Outcome of mirroring one issue's Discord thread."""

    issue_number: int
    has_thread: bool
    thread_id: str | None = None
    messages_synced: int = 0
    last_author_is_team_member: bool | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class FollowUpReason(str, Enum):
    """Which signal caused the follow-up label."""

    GITHUB_COMMENT = "github_comment"
    SYNC_TRACKER = "sync_tracker"
    BOTH = "both"
    NONE = "none"


@dataclass(slots=True)
class FollowUpResult:
    """Outcome of the follow-up decision for one issue."""

    issue_number: int
    needs_follow_up: bool
    label_added: bool
    label_reason: FollowUpReason = FollowUpReason.NONE
    last_comment_author: str | None = None
    error: str | None = None


@dataclass(slots=True)
class IssueOutcome:
    """Everything that happened to one issue during a run."""

    issue_number: int
    sync: IssueSyncResult | None = None
    follow_up: FollowUpResult | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        if self.error is not None:
            return True
        if self.sync is not None and self.sync.error is not None:
            return True
        return self.follow_up is not None and self.follow_up.error is not None


@dataclass(slots=True)
class BatchSummary:
    """Aggregate counters of a batch run."""

    issues_processed: int = 0
    issues_with_threads: int = 0
    messages_synced: int = 0
    issues_skipped: int = 0
    labels_added: int = 0
    errors: int = 0
    outcomes: Sequence[IssueOutcome] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return self.errors == 0
