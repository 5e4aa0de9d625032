"""Team membership checks for Discord members and GitHub logins."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

from .models import GuildMember
from .utils import normalize_login

logger = logging.getLogger(__name__)


class TeamMembershipPolicy(Protocol):
    def is_team_member(self, member: GuildMember | None) -> bool: ...


class RoleNameMembership:
    """Team members are recognized by the display name of one of their roles."""

    def __init__(self, role_names: Iterable[str]) -> None:
        self._role_names = frozenset(name for name in role_names if name)

    def is_team_member(self, member: GuildMember | None) -> bool:
        if member is None:
            return False
        return not self._role_names.isdisjoint(member.role_names)


class RoleIdMembership:
    """Team members are recognized by a stable role id."""

    def __init__(self, role_ids: Iterable[str]) -> None:
        self._role_ids = frozenset(str(role_id) for role_id in role_ids if role_id)

    def is_team_member(self, member: GuildMember | None) -> bool:
        if member is None:
            return False
        return not self._role_ids.isdisjoint(member.role_ids)


@dataclass(slots=True)
class RosterMember:
    """Organization member as listed in the roster export."""

    login: str
    name: str | None = None
    role: str | None = None


class TeamRoster:
    """Static lookup of GitHub logins that belong to the team."""

    def __init__(self, members: Iterable[RosterMember] = ()) -> None:
        self._members: dict[str, RosterMember] = {}
        for member in members:
            key = normalize_login(member.login)
            if key:
                self._members[key] = member

    @classmethod
    def from_payload(cls, payload: Iterable[Mapping[str, Any]]) -> "TeamRoster":
        members: list[RosterMember] = []
        for entry in payload:
            if not isinstance(entry, Mapping):
                continue
            login = str(entry.get("login") or "").strip()
            if not login:
                continue
            members.append(
                RosterMember(
                    login=login,
                    name=str(entry["name"]) if entry.get("name") else None,
                    role=str(entry["role"]) if entry.get("role") else None,
                )
            )
        return cls(members)

    @classmethod
    def from_file(cls, path: Path) -> "TeamRoster":
        with path.open(encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, list):
            raise ValueError(f"Roster {path} must contain a JSON list of members")
        roster = cls.from_payload(payload)
        logger.info("Loaded %d team members from %s", len(roster), path)
        return roster

    def __len__(self) -> int:
        return len(self._members)

    def get(self, login: str | None) -> RosterMember | None:
        key = normalize_login(login)
        if key is None:
            return None
        return self._members.get(key)

    def is_known_login(self, login: str | None) -> bool:
        return self.get(login) is not None
