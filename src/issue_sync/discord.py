"""Discord API client."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Protocol, Sequence

import aiohttp

from .models import DiscordMessage, GuildMember, ThreadInfo
from .threads import build_message_url
from .utils import RateLimiter, snowflake_sort_key

_API_BASE = "https://discord.com/api/v10"
_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_ROLE_CACHE_TTL = 3600.0
_MAX_RATE_LIMIT_WAIT = 10.0


logger = logging.getLogger(__name__)


class DiscordAPIError(Exception):
    """Discord answered with an unexpected HTTP status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"Discord API error {status}: {message}")
        self.status = status


class DiscordAPIProtocol(Protocol):
    async def fetch_channel_info(self, channel_id: str) -> ThreadInfo | None: ...

    async def fetch_messages(
        self,
        channel_id: str,
        *,
        limit: int = 100,
        after: str | None = None,
        before: str | None = None,
        guild_id: str | None = None,
    ) -> Sequence[DiscordMessage]: ...

    async def fetch_messages_after(
        self,
        channel_id: str,
        after: str | None,
        *,
        page_size: int = 100,
        max_pages: int = 10,
        guild_id: str | None = None,
    ) -> Sequence[DiscordMessage]: ...

    async def fetch_member(self, guild_id: str, user_id: str) -> GuildMember | None: ...


class DiscordClient:
    """Thin asynchronous wrapper around the Discord REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str | None = None,
        *,
        rate_per_second: float = 20.0,
        user_agent: str | None = None,
    ):
        self._session = session
        self._token: str | None = None
        self._user_agent = user_agent or _DEFAULT_USER_AGENT
        self._rate = RateLimiter(rate_per_second)
        self._role_cache: dict[str, tuple[float, dict[str, str]]] = {}
        self.set_token(token)

    def set_token(self, token: str | None) -> None:
        candidate = token.strip() if token else ""
        if not candidate:
            self._token = None
            return
        lowered = candidate.lower()
        if lowered.startswith("bot ") or lowered.startswith("bearer "):
            self._token = candidate
        else:
            self._token = f"Bot {candidate}"

    async def fetch_channel_info(self, channel_id: str) -> ThreadInfo | None:
        """Fetch channel metadata including type and guild_id."""
        data = await self._get_json(f"/channels/{channel_id}", allow_missing=True)
        if not isinstance(data, Mapping):
            return None

        channel_type_raw = data.get("type")
        try:
            channel_type = int(str(channel_type_raw))
        except (TypeError, ValueError):
            channel_type = 0

        return ThreadInfo(
            id=str(data.get("id") or channel_id),
            type=channel_type,
            guild_id=str(data.get("guild_id")) if data.get("guild_id") else None,
            name=str(data.get("name")) if data.get("name") else None,
            parent_id=str(data.get("parent_id")) if data.get("parent_id") else None,
        )

    async def fetch_messages(
        self,
        channel_id: str,
        *,
        limit: int = 100,
        after: str | None = None,
        before: str | None = None,
        guild_id: str | None = None,
    ) -> Sequence[DiscordMessage]:
        params = {"limit": str(max(1, min(limit, 100)))}
        if after:
            params["after"] = after
        if before:
            params["before"] = before

        data = await self._get_json(f"/channels/{channel_id}/messages", params=params)
        if not isinstance(data, list):
            return ()
        return tuple(
            _parse_message(payload, channel_id, guild_id)
            for payload in data
            if isinstance(payload, Mapping)
        )

    async def fetch_messages_after(
        self,
        channel_id: str,
        after: str | None,
        *,
        page_size: int = 100,
        max_pages: int = 10,
        guild_id: str | None = None,
    ) -> Sequence[DiscordMessage]:
        """Collect messages strictly newer than ``after``, oldest pages first."""
        cursor = after or "0"
        collected: dict[str, DiscordMessage] = {}
        for _ in range(max(1, max_pages)):
            batch = await self.fetch_messages(
                channel_id, limit=page_size, after=cursor, guild_id=guild_id
            )
            if not batch:
                break
            for message in batch:
                collected.setdefault(message.id, message)
            newest = max(batch, key=lambda msg: snowflake_sort_key(msg.id))
            if snowflake_sort_key(newest.id) <= snowflake_sort_key(cursor):
                break
            cursor = newest.id
            if len(batch) < page_size:
                break
        else:
            logger.info(
                "Stopped paging thread %s after %d pages, the rest follows next run",
                channel_id,
                max_pages,
            )
        return tuple(collected.values())

    async def fetch_member(self, guild_id: str, user_id: str) -> GuildMember | None:
        data = await self._get_json(
            f"/guilds/{guild_id}/members/{user_id}", allow_missing=True
        )
        if not isinstance(data, Mapping):
            return None
        user = data.get("user") or {}
        role_ids = frozenset(
            str(role_id) for role_id in data.get("roles") or [] if str(role_id)
        )
        role_names = await self._resolve_role_names(guild_id, set(role_ids))
        username = (
            str(data.get("nick") or "")
            or str(user.get("global_name") or "")
            or str(user.get("username") or "")
            or user_id
        )
        return GuildMember(
            user_id=str(user.get("id") or user_id),
            username=username,
            role_ids=role_ids,
            role_names=frozenset(role_names.values()),
        )

    async def _resolve_role_names(
        self, guild_id: str, role_ids: set[str]
    ) -> dict[str, str]:
        if not guild_id or not role_ids:
            return {}

        cached = self._role_cache.get(guild_id)
        now = time.monotonic()
        cache_data = cached[1] if cached else {}
        needs_refresh = cached is None or cached[0] <= now
        missing = {role_id for role_id in role_ids if role_id not in cache_data}

        if needs_refresh or missing:
            fetched = await self._fetch_roles(guild_id)
            if fetched:
                cache_data = {**cache_data, **fetched}
                self._role_cache[guild_id] = (time.monotonic() + _ROLE_CACHE_TTL, cache_data)
            elif cached and cached[0] <= now:
                self._role_cache[guild_id] = (time.monotonic() + 300.0, cache_data)

        return {
            role_id: cache_data[role_id] for role_id in role_ids if role_id in cache_data
        }

    async def _fetch_roles(self, guild_id: str) -> dict[str, str]:
        try:
            payload = await self._get_json(f"/guilds/{guild_id}/roles")
        except DiscordAPIError as exc:
            logger.debug("Could not fetch roles of guild %s: %s", guild_id, exc)
            return {}

        roles: dict[str, str] = {}
        if isinstance(payload, Sequence):
            for item in payload:
                if not isinstance(item, Mapping):
                    continue
                role_id = str(item.get("id") or "")
                name = str(item.get("name") or "").strip()
                if role_id and name:
                    roles[role_id] = name
        return roles

    async def _get_json(
        self,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        allow_missing: bool = False,
    ) -> Any:
        if not self._token:
            raise DiscordAPIError(401, "Discord token is not configured")

        headers = {
            "Authorization": self._token,
            "User-Agent": self._user_agent,
            "Accept": "application/json",
        }
        url = f"{_API_BASE}{path}"
        timeout_cfg = aiohttp.ClientTimeout(total=15)

        for attempt in range(2):
            await self._rate.wait()
            async with self._session.get(
                url,
                headers=headers,
                params=params,
                timeout=timeout_cfg,
            ) as resp:
                if resp.status == 200:
                    return await resp.json()
                if resp.status == 404 and allow_missing:
                    await resp.read()
                    return None
                if resp.status == 429 and attempt == 0:
                    payload = await resp.json(content_type=None)
                    retry_after = _retry_after(payload)
                    logger.warning(
                        "Discord rate limited %s, retrying in %.1fs", path, retry_after
                    )
                    await asyncio.sleep(retry_after)
                    continue
                text = await resp.text()
                raise DiscordAPIError(resp.status, text[:200] or path)
        raise DiscordAPIError(429, f"rate limited on {path}")


def _retry_after(payload: Any) -> float:
    value = payload.get("retry_after") if isinstance(payload, Mapping) else None
    try:
        delay = float(value)
    except (TypeError, ValueError):
        delay = 1.0
    return max(0.0, min(delay, _MAX_RATE_LIMIT_WAIT))


def _parse_message(
    payload: Mapping[str, Any], channel_id: str, guild_id: str | None
) -> DiscordMessage:
    message_id = str(payload.get("id") or "0")
    author = payload.get("author") or {}
    author_id = str(author.get("id") or "0")
    author_name = (
        str(author.get("username") or "") or str(author.get("global_name") or "") or "Unknown"
    )
    resolved_channel = str(payload.get("channel_id") or channel_id)
    resolved_guild = str(payload.get("guild_id")) if payload.get("guild_id") else guild_id
    return DiscordMessage(
        id=message_id,
        channel_id=resolved_channel,
        guild_id=resolved_guild,
        author_id=author_id,
        author_name=author_name,
        content=str(payload.get("content") or ""),
        author_is_bot=bool(author.get("bot")),
        timestamp=payload.get("timestamp"),
        url=build_message_url(resolved_guild, resolved_channel, message_id),
    )
