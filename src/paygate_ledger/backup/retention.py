"""
Tiered backup retention.

Backups are grouped by the file they were taken of and each group is pruned
independently:

- anything younger than ``daily_retention_days`` is kept
- within ``weekly_retention_weeks``: the earliest Monday-morning (before
  08:00 UTC) backup of each ISO week is kept
- within ``monthly_retention_months`` (30.44-day months): the earliest
  1st-of-month morning backup of each month is kept
- the earliest backup of each calendar year is kept indefinitely
- ``initial`` backups and names that cannot be parsed are never deleted
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ..config import RetentionConfig
from ..errors import RetentionParseError
from .naming import BACKUP_SUFFIX, BackupReason, ParsedBackupName, parse_backup_name, source_name_of

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30.44
MORNING_CUTOFF_HOUR = 8


@dataclass
class RetentionPolicy:
    daily_retention_days: int = 7
    weekly_retention_weeks: int = 4
    monthly_retention_months: int = 12

    @classmethod
    def from_config(cls, config: RetentionConfig) -> "RetentionPolicy":
        return cls(
            daily_retention_days=config.daily_retention_days,
            weekly_retention_weeks=config.weekly_retention_weeks,
            monthly_retention_months=config.monthly_retention_months,
        )


@dataclass
class RetentionPlan:
    """Which backups to keep or delete, with the rule that decided each."""

    keep: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)
    reasons: dict[str, str] = field(default_factory=dict)

    def _add(self, filename: str, keep: bool, reason: str) -> None:
        (self.keep if keep else self.delete).append(filename)
        self.reasons[filename] = reason


@dataclass
class CleanupResult:
    deleted: int = 0
    kept: int = 0
    dry_run: bool = False
    deleted_files: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


def _is_weekly_candidate(created: datetime) -> bool:
    return created.weekday() == 0 and created.hour < MORNING_CUTOFF_HOUR


def _is_monthly_candidate(created: datetime) -> bool:
    return created.day == 1 and created.hour < MORNING_CUTOFF_HOUR


def _plan_group(
    entries: list[tuple[str, ParsedBackupName]],
    now: datetime,
    policy: RetentionPolicy,
    plan: RetentionPlan,
) -> None:
    entries = sorted(entries, key=lambda e: e[1].created_at)

    first_weekly: dict[tuple[int, int], str] = {}
    first_monthly: dict[tuple[int, int], str] = {}
    first_yearly: dict[int, str] = {}
    for filename, parsed in entries:
        created = parsed.created_at
        first_yearly.setdefault(created.year, filename)
        if _is_weekly_candidate(created):
            iso = created.isocalendar()
            first_weekly.setdefault((iso[0], iso[1]), filename)
        if _is_monthly_candidate(created):
            first_monthly.setdefault((created.year, created.month), filename)

    for filename, parsed in entries:
        created = parsed.created_at
        age_days = (now - created).total_seconds() / 86400
        iso = created.isocalendar()

        if parsed.reason == BackupReason.INITIAL.value:
            plan._add(filename, True, "initial")
        elif age_days < policy.daily_retention_days:
            plan._add(filename, True, "daily")
        elif (
            age_days / 7 < policy.weekly_retention_weeks
            and first_weekly.get((iso[0], iso[1])) == filename
        ):
            plan._add(filename, True, "weekly")
        elif (
            age_days / DAYS_PER_MONTH < policy.monthly_retention_months
            and first_monthly.get((created.year, created.month)) == filename
        ):
            plan._add(filename, True, "monthly")
        elif first_yearly.get(created.year) == filename:
            plan._add(filename, True, "yearly")
        else:
            plan._add(filename, False, "expired")


def plan_retention(
    filenames: Iterable[str], now: datetime | None = None, policy: RetentionPolicy | None = None
) -> RetentionPlan:
    """
    Decide which backups survive.

    Pure function over filenames; nothing on disk is touched.
    """
    now = now or datetime.now(timezone.utc)
    policy = policy or RetentionPolicy()
    plan = RetentionPlan()

    groups: dict[str, list[tuple[str, ParsedBackupName]]] = {}
    for filename in filenames:
        try:
            parsed = parse_backup_name(filename)
        except RetentionParseError:
            logger.warning(f"Keeping backup with unparseable name: {filename}")
            plan._add(filename, True, "unparseable")
            continue
        groups.setdefault(source_name_of(filename), []).append((filename, parsed))

    for entries in groups.values():
        _plan_group(entries, now, policy, plan)

    return plan


def run_cleanup(
    directories: Iterable[Path],
    policy: RetentionPolicy | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> CleanupResult:
    """
    Apply the retention policy to every backup directory.

    In dry-run mode the result lists exactly what a real run would delete.
    """
    now = now or datetime.now(timezone.utc)
    result = CleanupResult(dry_run=dry_run)

    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            logger.info(f"Backup directory {directory} does not exist, skipping")
            continue

        filenames = sorted(
            p.name for p in directory.iterdir() if p.is_file() and p.name.endswith(BACKUP_SUFFIX)
        )
        plan = plan_retention(filenames, now, policy)
        result.kept += len(plan.keep)

        for filename in plan.delete:
            path = directory / filename
            if dry_run:
                logger.info(f"[dry run] Would delete {path}")
            else:
                try:
                    path.unlink()
                except OSError as e:
                    logger.error(f"Failed to delete {path}: {e}")
                    result.errors[str(path)] = str(e)
                    continue
                logger.info(f"Deleted {path}")
            result.deleted += 1
            result.deleted_files.append(str(path))

    logger.info(
        f"Backup cleanup {'(dry run) ' if dry_run else ''}"
        f"finished: {result.deleted} deleted, {result.kept} kept"
    )
    return result
