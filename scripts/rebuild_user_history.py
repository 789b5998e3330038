#!/usr/bin/env python3
"""Rebuild ``user_tournament_history`` documents from the record collections.

Record deletions never reach the history triggers, so a deleted record keeps
showing up in an athlete's history until something else rewrites it. Run this
to recompute histories on demand. By default it performs no writes (dry-run).
Pass ``--execute`` once you are satisfied with the planned changes.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import sys

import boto3
from botocore.exceptions import BotoCoreError, ClientError

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - simple environment setup
    sys.path.insert(0, str(ROOT_DIR))

from tournament_sync.history import HistoryAggregator
from tournament_sync.models import User
from tournament_sync.storage import TournamentStorage

log = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--table",
        required=True,
        help="DynamoDB table name that stores tournament documents",
    )
    parser.add_argument(
        "--region",
        help="AWS region (defaults to boto3's resolution order)",
    )
    parser.add_argument(
        "--profile",
        help="Optional AWS profile to use",
    )
    parser.add_argument(
        "--global-id",
        action="append",
        dest="global_ids",
        default=[],
        help="Athlete global id to rebuild (repeat for multiple)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        dest="all_users",
        help="Rebuild every user that has a global id",
    )
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Write the rebuilt histories instead of only reporting them",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args(argv)
    if not args.global_ids and not args.all_users:
        parser.error("Provide --global-id at least once or pass --all")
    return args


def build_table(table_name: str, region: str | None, profile: str | None):
    session = boto3.Session(profile_name=profile, region_name=region)
    return session.resource("dynamodb").Table(table_name)


async def collect_global_ids(
    storage: TournamentStorage, explicit: list[str], all_users: bool
) -> list[str]:
    ids = [gid.strip() for gid in explicit if gid.strip()]
    if all_users:
        for document in await storage.query(User.COLLECTION):
            global_id = document.data.get("global_id")
            if isinstance(global_id, str) and global_id.strip():
                ids.append(global_id.strip())
    return list(dict.fromkeys(ids))


async def run(args: argparse.Namespace, storage: TournamentStorage) -> int:
    dry_run = not args.execute
    global_ids = await collect_global_ids(storage, args.global_ids, args.all_users)
    if not global_ids:
        log.info("No athletes to rebuild")
        return 0

    aggregator = HistoryAggregator(storage)
    histories = await aggregator.rebuild_many(global_ids, write=not dry_run)
    rebuilt = 0
    for global_id, history in histories.items():
        if history is None:
            log.info("Skipped %s (no user or no readable records)", global_id)
            continue
        rebuilt += 1
        log.info(
            "%s history for %s: %s tournaments, %s records",
            "Would write" if dry_run else "Wrote",
            global_id,
            history.tournament_count,
            history.record_count,
        )
    if dry_run:
        log.info("Dry-run complete. Re-run with --execute to apply %s rebuilds.", rebuilt)
    else:
        log.info("Rebuilt %s of %s histories", rebuilt, len(global_ids))
    return rebuilt


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO), format="%(message)s"
    )


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    storage = TournamentStorage(build_table(args.table, args.region, args.profile))
    try:
        asyncio.run(run(args, storage))
    except (BotoCoreError, ClientError) as exc:
        raise SystemExit(f"DynamoDB request failed: {exc}") from exc


if __name__ == "__main__":
    main()
