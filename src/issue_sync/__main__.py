"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import aiohttp

from .app import IssueSyncApp
from .discord import DiscordClient
from .github import GitHubClient
from .membership import TeamRoster
from .models import BatchSummary, SyncOptions
from .sync import MODE_DIGEST, MODE_RELAY
from .utils import parse_bool, parse_float

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    defaults = SyncOptions()
    parser = argparse.ArgumentParser(
        prog="issue_sync",
        description="Mirror Discord thread conversations into GitHub issues",
    )
    parser.add_argument("--owner", default=defaults.owner, help="Repository owner")
    parser.add_argument("--repo", default=defaults.repo, help="Repository name")
    parser.add_argument(
        "--github-token",
        help="GitHub token. Can be passed via GITHUB_TOKEN or GITHUB_PERSONAL_ACCESS_TOKEN",
    )
    parser.add_argument(
        "--discord-token", help="Discord bot token. Can be passed via DISCORD_BOT_TOKEN"
    )
    parser.add_argument(
        "--roster",
        default=os.getenv("ISSUE_SYNC_ROSTER"),
        help="JSON file listing GitHub team members (env ISSUE_SYNC_ROSTER)",
    )
    parser.add_argument(
        "--team-role",
        action="append",
        dest="team_roles",
        metavar="NAME",
        help="Discord role name marking team members (repeatable)",
    )
    parser.add_argument(
        "--team-role-id",
        action="append",
        dest="team_role_ids",
        metavar="ID",
        help="Discord role id marking team members (repeatable, overrides --team-role)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(parse_float(os.getenv("ISSUE_SYNC_CONCURRENCY"), defaults.concurrency)),
        help="Issues processed at the same time",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=parse_float(os.getenv("ISSUE_SYNC_TIMEOUT"), defaults.issue_timeout),
        help="Time budget per issue in seconds (0 disables it)",
    )
    parser.add_argument(
        "--mode",
        choices=(MODE_DIGEST, MODE_RELAY),
        default=MODE_RELAY if parse_bool(os.getenv("ISSUE_SYNC_RELAY")) else MODE_DIGEST,
        help="digest keeps one rolling comment, relay posts one comment per message",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=parse_float(os.getenv("ISSUE_SYNC_INTERVAL"), 0.0),
        help="Seconds between runs, 0 runs once and exits",
    )
    parser.add_argument(
        "--issue",
        action="append",
        type=int,
        dest="issues",
        metavar="NUMBER",
        help="Only process these issue numbers (repeatable)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser


def options_from_args(args: argparse.Namespace) -> SyncOptions:
    defaults = SyncOptions()
    return SyncOptions(
        owner=args.owner,
        repo=args.repo,
        concurrency=max(1, args.concurrency),
        issue_timeout=max(0.0, args.timeout),
        mode=args.mode,
        team_role_names=tuple(args.team_roles or defaults.team_role_names),
        team_role_ids=tuple(args.team_role_ids or ()),
    )


async def run(
    args: argparse.Namespace, *, github_token: str, discord_token: str
) -> BatchSummary | None:
    options = options_from_args(args)
    roster = TeamRoster.from_file(Path(args.roster)) if args.roster else TeamRoster()
    if not args.roster:
        logger.warning("No team roster configured, every GitHub commenter counts as external")

    async with aiohttp.ClientSession() as session:
        app = IssueSyncApp(
            github=GitHubClient(github_token, session),
            discord=DiscordClient(session, discord_token),
            roster=roster,
            options=options,
        )
        if args.issues:
            return await app.run_issues(args.issues)
        if args.interval > 0:
            await app.run_forever(args.interval)
            return None
        return await app.run_once()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    github_token = (
        args.github_token
        or os.getenv("GITHUB_TOKEN")
        or os.getenv("GITHUB_PERSONAL_ACCESS_TOKEN")
    )
    if not github_token:
        parser.error("Pass --github-token or set GITHUB_TOKEN")
    discord_token = args.discord_token or os.getenv("DISCORD_BOT_TOKEN")
    if not discord_token:
        parser.error("Pass --discord-token or set DISCORD_BOT_TOKEN")

    try:
        summary = asyncio.run(
            run(args, github_token=github_token, discord_token=discord_token)
        )
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0
    if summary is None:
        return 0
    return 0 if summary.success else 1


if __name__ == "__main__":
    sys.exit(main())
