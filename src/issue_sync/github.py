"""GitHub REST API client."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Protocol

import aiohttp

from .models import GitHubComment, GitHubIssue

_API_BASE = "https://api.github.com"
_API_VERSION = "2022-11-28"
_PER_PAGE = 100
_MAX_PAGES = 50

logger = logging.getLogger(__name__)


class GitHubAPIError(Exception):
    """GitHub answered with an unexpected HTTP status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"GitHub API error {status}: {message}")
        self.status = status


class GitHubAPIProtocol(Protocol):
    async def list_issues(
        self, owner: str, repo: str, *, labels: str, state: str = "open"
    ) -> list[GitHubIssue]: ...

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> GitHubIssue: ...

    async def list_comments(
        self, owner: str, repo: str, issue_number: int
    ) -> list[GitHubComment]: ...

    async def create_comment(
        self, owner: str, repo: str, issue_number: int, body: str
    ) -> GitHubComment: ...

    async def update_comment(
        self, owner: str, repo: str, comment_id: int, body: str
    ) -> GitHubComment: ...

    async def add_labels(
        self, owner: str, repo: str, issue_number: int, labels: Iterable[str]
    ) -> None: ...


class GitHubClient:
    """Lightweight GitHub REST API wrapper."""

    def __init__(self, token: str, session: aiohttp.ClientSession):
        self._token = token.strip()
        self._session = session

    async def list_issues(
        self, owner: str, repo: str, *, labels: str, state: str = "open"
    ) -> list[GitHubIssue]:
        params = {
            "labels": labels,
            "state": state,
            "sort": "updated",
            "direction": "desc",
        }
        payloads = await self._paginate(f"/repos/{owner}/{repo}/issues", params)
        # The issues endpoint also returns pull requests.
        return [
            _parse_issue(payload)
            for payload in payloads
            if "pull_request" not in payload
        ]

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> GitHubIssue:
        payload = await self._request("GET", f"/repos/{owner}/{repo}/issues/{issue_number}")
        return _parse_issue(payload)

    async def list_comments(
        self, owner: str, repo: str, issue_number: int
    ) -> list[GitHubComment]:
        payloads = await self._paginate(
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments", {}
        )
        return [_parse_comment(payload) for payload in payloads]

    async def create_comment(
        self, owner: str, repo: str, issue_number: int, body: str
    ) -> GitHubComment:
        payload = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json={"body": body},
        )
        return _parse_comment(payload)

    async def update_comment(
        self, owner: str, repo: str, comment_id: int, body: str
    ) -> GitHubComment:
        payload = await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/issues/comments/{comment_id}",
            json={"body": body},
        )
        return _parse_comment(payload)

    async def add_labels(
        self, owner: str, repo: str, issue_number: int, labels: Iterable[str]
    ) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/labels",
            json={"labels": list(labels)},
        )

    async def _paginate(
        self, path: str, params: Mapping[str, str]
    ) -> list[Mapping[str, Any]]:
        collected: list[Mapping[str, Any]] = []
        for page in range(1, _MAX_PAGES + 1):
            query = {**params, "per_page": str(_PER_PAGE), "page": str(page)}
            data = await self._request("GET", path, params=query)
            if not isinstance(data, list):
                break
            collected.extend(item for item in data if isinstance(item, Mapping))
            logger.debug("Fetched page %d of %s, %d items so far", page, path, len(collected))
            if len(data) < _PER_PAGE:
                break
        return collected

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Mapping[str, Any] | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": _API_VERSION,
        }
        timeout_cfg = aiohttp.ClientTimeout(total=20)
        async with self._session.request(
            method,
            f"{_API_BASE}{path}",
            headers=headers,
            params=params,
            json=json,
            timeout=timeout_cfg,
        ) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise GitHubAPIError(resp.status, text[:200] or path)
            if resp.status == 204:
                return None
            return await resp.json()


def _parse_issue(payload: Mapping[str, Any]) -> GitHubIssue:
    labels: list[str] = []
    for label in payload.get("labels") or []:
        if isinstance(label, str):
            labels.append(label)
        elif isinstance(label, Mapping) and label.get("name"):
            labels.append(str(label["name"]))
    body = payload.get("body")
    return GitHubIssue(
        number=int(payload.get("number") or 0),
        title=str(payload.get("title") or ""),
        body=str(body) if body is not None else None,
        updated_at=str(payload.get("updated_at") or ""),
        html_url=str(payload.get("html_url") or ""),
        labels=tuple(labels),
    )


def _parse_comment(payload: Mapping[str, Any]) -> GitHubComment:
    user = payload.get("user") or {}
    return GitHubComment(
        id=int(payload.get("id") or 0),
        body=str(payload.get("body") or ""),
        user_login=str(user.get("login")) if user.get("login") else None,
        user_type=str(user.get("type")) if user.get("type") else None,
        created_at=payload.get("created_at"),
        updated_at=payload.get("updated_at"),
    )
