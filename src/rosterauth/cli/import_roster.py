"""Load the student roster CSV into the authorization store.

Usage:
    rosterauth-import-roster                          # default: skip existing entries
    rosterauth-import-roster --update-changed         # only update entries whose fields changed
    rosterauth-import-roster --upsert                 # create or overwrite
    rosterauth-import-roster --dry-run --update-changed
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

from rosterauth.main.config import get_settings
from rosterauth.main.logging import get_logger
from rosterauth.redis.connection import create_redis_client
from rosterauth.roster.roster_import import (
    DEFAULT_BATCH_SIZE,
    ImportAction,
    ImportPolicy,
    ImportReport,
    RosterImporter,
    read_roster_csv,
)
from rosterauth.roster.roster_repo import InMemoryRosterRepository, RedisRosterRepository

logger = get_logger(__name__)

DEFAULT_CSV_PATH = "students_roster.csv"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Import a name,role,grade,email roster CSV.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--update-changed",
        action="store_true",
        help="Update existing entries only when name, role, grade or email changed.",
    )
    mode.add_argument(
        "--upsert",
        action="store_true",
        help="Create new entries and overwrite existing ones.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report intended changes without writing.",
    )
    parser.add_argument("--csv", default=DEFAULT_CSV_PATH, help="Roster CSV path.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help="Entries written per batch.",
    )
    return parser


def policy_from_args(args: argparse.Namespace) -> ImportPolicy:
    if args.upsert:
        return ImportPolicy.UPSERT
    if args.update_changed:
        return ImportPolicy.UPDATE_CHANGED
    return ImportPolicy.SKIP_EXISTING


def format_report(report: ImportReport) -> str:
    lines = [
        f"Mode: {report.policy.value}{' (dry-run)' if report.dry_run else ''}",
        f"Loaded: {report.loaded}",
    ]
    for change in report.changes:
        if change.action == ImportAction.CREATE:
            lines.append(
                f"  create {change.entry.email}  role={change.entry.role} grade={change.entry.grade}"
            )
        elif change.action == ImportAction.UPDATE:
            diff = ", ".join(
                f"{name}: {before!r} -> {after!r}"
                for name, (before, after) in change.changed_fields.items()
            )
            lines.append(f"  update {change.entry.email}  {diff or 'no field changes'}")
    lines += [
        f"created  : {report.created}",
        f"updated  : {report.updated}",
        f"unchanged: {report.unchanged}",
        f"skipped  : {report.skipped}",
    ]
    return "\n".join(lines)


async def run_import(args: argparse.Namespace, roster_repo=None) -> ImportReport:
    entries = read_roster_csv(args.csv)
    redis_client = None
    if roster_repo is None:
        redis_client = create_redis_client(get_settings())
        if redis_client is not None:
            roster_repo = RedisRosterRepository(redis_client)
        elif args.dry_run:
            roster_repo = InMemoryRosterRepository()
        else:
            raise RuntimeError("REDIS_HOST must be set to import the roster")

    importer = RosterImporter(
        roster_repo,
        policy=policy_from_args(args),
        dry_run=args.dry_run,
        batch_size=args.batch_size,
    )
    try:
        return await importer.run(entries)
    finally:
        if redis_client is not None:
            await redis_client.aclose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if not Path(args.csv).exists():
        print(f"Missing {args.csv}", file=sys.stderr)
        return 1

    try:
        report = asyncio.run(run_import(args))
    except (RuntimeError, ValueError, OSError) as e:
        logger.error("Roster import failed", extra={"error": str(e)})
        print(f"Import failed: {e}", file=sys.stderr)
        return 1

    print(format_report(report))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
