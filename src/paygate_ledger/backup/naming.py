"""
Backup file naming.

    <source name>.<reason>.<YYYY-MM-DDTHH-MM-SS.mmm>Z.bak

e.g. ``merchant_transactions.json.scheduled.2024-03-04T02-00-00.000Z.bak``.
The timestamp is UTC ISO-8601 with ':' replaced by '-' so the name is
portable; retention depends on parsing it back.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from ..errors import RetentionParseError

BACKUP_SUFFIX = ".bak"

_STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"

_NAME_RE = re.compile(
    r"^(?P<source>.+)\.(?P<reason>[a-z][a-z0-9_-]*)\."
    r"(?P<stamp>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})\.(?P<millis>\d{3})Z\.bak$"
)


class BackupReason(str, Enum):
    """Why a backup was taken."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    INITIAL = "initial"
    CORRUPTED = "corrupted"
    EMPTY = "empty"
    MISSING = "missing"
    PRE_RESTORE = "pre-restore"

    @property
    def is_corruption(self) -> bool:
        """Snapshots of broken files go to the corruption directory."""
        return self in (BackupReason.CORRUPTED, BackupReason.EMPTY, BackupReason.MISSING)


@dataclass(frozen=True)
class ParsedBackupName:
    source_name: str
    reason: str
    created_at: datetime


def format_timestamp(when: datetime) -> str:
    """UTC timestamp in filename form, millisecond precision, Z suffix."""
    when = when.astimezone(timezone.utc)
    return f"{when.strftime(_STAMP_FORMAT)}.{when.microsecond // 1000:03d}Z"


def format_backup_name(source_name: str, reason: BackupReason | str, when: datetime) -> str:
    reason_value = reason.value if isinstance(reason, BackupReason) else reason
    return f"{source_name}.{reason_value}.{format_timestamp(when)}{BACKUP_SUFFIX}"


def parse_backup_name(filename: str) -> ParsedBackupName:
    """
    Split a backup filename into source, reason and creation time.

    Raises:
        RetentionParseError: If the name does not follow the backup format
    """
    match = _NAME_RE.match(filename)
    if match is None:
        raise RetentionParseError(f"Not a backup filename: {filename}")
    try:
        created = datetime.strptime(match.group("stamp"), _STAMP_FORMAT)
    except ValueError as e:
        raise RetentionParseError(f"Bad timestamp in {filename}: {e}") from e
    created = created.replace(
        microsecond=int(match.group("millis")) * 1000, tzinfo=timezone.utc
    )
    return ParsedBackupName(
        source_name=match.group("source"),
        reason=match.group("reason"),
        created_at=created,
    )


def source_name_of(filename: str) -> str:
    """Basename a backup belongs to, tolerating unparseable names."""
    try:
        return parse_backup_name(filename).source_name
    except RetentionParseError:
        # Same rule as the parseable case: drop reason, two stamp parts and suffix
        parts = filename.split(".")
        return ".".join(parts[:-4]) if len(parts) > 4 else filename


def next_millisecond(when: datetime) -> datetime:
    return when + timedelta(milliseconds=1)
