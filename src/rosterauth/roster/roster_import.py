"""Bulk provisioning of the roster from a ``name,role,grade,email`` CSV export."""

import csv
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, TextIO

from pydantic import ValidationError

from rosterauth.identity.identity import normalize_email
from rosterauth.main.config import get_settings
from rosterauth.main.logging import get_logger
from rosterauth.roster.roster import RosterEntry
from rosterauth.roster.roster_repo import InMemoryRosterRepository, RedisRosterRepository

logger = get_logger(__name__)

# Stays under the 500-writes-per-batch limit of document stores
DEFAULT_BATCH_SIZE = 450


class ImportPolicy(str, Enum):
    SKIP_EXISTING = "skip_existing"
    UPDATE_CHANGED = "update_changed"
    UPSERT = "upsert"


class ImportAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"


@dataclass
class RosterChange:
    action: ImportAction
    entry: RosterEntry
    before: Optional[RosterEntry] = None

    @property
    def changed_fields(self) -> dict[str, tuple]:
        if self.before is None:
            return {}
        return self.before.diff(self.entry)


@dataclass
class ImportReport:
    policy: ImportPolicy
    dry_run: bool
    loaded: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    changes: list[RosterChange] = field(default_factory=list)

    def record(self, change: RosterChange) -> None:
        self.changes.append(change)
        if change.action == ImportAction.CREATE:
            self.created += 1
        elif change.action == ImportAction.UPDATE:
            self.updated += 1
        elif change.action == ImportAction.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1


def entry_from_row(row: dict, default_role: Optional[str] = None) -> Optional[RosterEntry]:
    """Normalize one CSV row. Rows without an email are dropped."""
    email = normalize_email(row.get("email"))
    if not email:
        return None
    role = (row.get("role") or "").strip() or default_role or get_settings().default_role
    return RosterEntry(
        email=email,
        name=(row.get("name") or "").strip(),
        role=role,
        grade=(row.get("grade") or "").strip(),
    )


def read_roster(stream: TextIO, default_role: Optional[str] = None) -> list[RosterEntry]:
    entries = []
    for line_number, row in enumerate(csv.DictReader(stream), start=2):
        try:
            entry = entry_from_row(row, default_role)
        except ValidationError as e:
            logger.warning(
                "Skipping invalid roster row",
                extra={"line": line_number, "error": str(e)},
            )
            continue
        if entry is not None:
            entries.append(entry)
    return entries


def read_roster_csv(path: Path | str, default_role: Optional[str] = None) -> list[RosterEntry]:
    with open(path, newline="", encoding="utf-8-sig") as f:
        return read_roster(f, default_role)


def _batches(entries: list[RosterEntry], size: int) -> Iterable[list[RosterEntry]]:
    for start in range(0, len(entries), size):
        yield entries[start : start + size]


class RosterImporter:
    def __init__(
        self,
        roster_repo: InMemoryRosterRepository | RedisRosterRepository,
        *,
        policy: ImportPolicy = ImportPolicy.SKIP_EXISTING,
        dry_run: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.roster_repo = roster_repo
        self.policy = policy
        self.dry_run = dry_run
        self.batch_size = batch_size

    def _decide(self, entry: RosterEntry, existing: Optional[RosterEntry]) -> RosterChange:
        if existing is None:
            return RosterChange(ImportAction.CREATE, entry)
        if self.policy == ImportPolicy.SKIP_EXISTING:
            return RosterChange(ImportAction.SKIP, entry, existing)
        if self.policy == ImportPolicy.UPDATE_CHANGED and not existing.diff(entry):
            return RosterChange(ImportAction.UNCHANGED, entry, existing)
        return RosterChange(ImportAction.UPDATE, entry, existing)

    async def run(self, entries: list[RosterEntry]) -> ImportReport:
        report = ImportReport(policy=self.policy, dry_run=self.dry_run, loaded=len(entries))

        for batch in _batches(entries, self.batch_size):
            existing = await self.roster_repo.get_many([entry.email for entry in batch])
            writes = []
            for entry in batch:
                change = self._decide(entry, existing.get(entry.email))
                report.record(change)
                if change.action in (ImportAction.CREATE, ImportAction.UPDATE):
                    writes.append(entry)
                    logger.debug(
                        f"{change.action.value} {entry.email}",
                        extra={"changed_fields": list(change.changed_fields)},
                    )

            if writes and not self.dry_run:
                await self.roster_repo.upsert_many(writes, merge=True)

        logger.info(
            "Roster import finished",
            extra={
                "policy": self.policy.value,
                "dry_run": self.dry_run,
                "loaded_count": report.loaded,
                "created_count": report.created,
                "updated_count": report.updated,
                "unchanged_count": report.unchanged,
                "skipped_count": report.skipped,
            },
        )
        return report
