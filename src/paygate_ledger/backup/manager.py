"""
Backup manager.

Creates, lists, verifies and restores timestamped copies of the document
files. Backups are write-once: nothing here ever modifies an existing backup
file, and a restore only ever replaces the live file.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import FileAccessError, RetentionParseError
from ..fileio import read_bytes, write_atomic
from ..locking import FileLock
from ..monitor.files import DatabaseFile, FileRegistry
from .naming import (
    BACKUP_SUFFIX,
    BackupReason,
    format_backup_name,
    next_millisecond,
    parse_backup_name,
    source_name_of,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupRecord:
    """A backup file on disk."""

    filename: str
    path: Path
    source_name: str
    reason: str | None
    created_at: datetime | None
    size: int
    kind: str  # "backup" or "corruption"
    verified: bool | None = None
    verify_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "path": str(self.path),
            "sourceName": self.source_name,
            "reason": self.reason,
            "createdAt": (
                self.created_at.isoformat().replace("+00:00", "Z") if self.created_at else None
            ),
            "size": self.size,
            "kind": self.kind,
            "verified": self.verified,
            "verifyError": self.verify_error,
        }


@dataclass
class BackupSet:
    """Result of backing up every registered file."""

    created: dict[str, Path] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class VerifyResult:
    valid: bool
    detail: str
    file: DatabaseFile | None = None


@dataclass
class RestoreResult:
    success: bool
    filename: str
    detail: str
    target: Path | None = None
    pre_restore_backup: Path | None = None


class BackupManager:
    """Backup and restore for the registered document files."""

    def __init__(
        self,
        files: FileRegistry,
        backup_dir: Path,
        corruption_backup_dir: Path,
        lock_timeout: float = 10.0,
        stale_lock_seconds: float = 300.0,
        io_attempts: int = 3,
        io_wait: float = 0.05,
    ):
        self.files = files
        self.backup_dir = Path(backup_dir)
        self.corruption_backup_dir = Path(corruption_backup_dir)
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self.io_attempts = io_attempts
        self.io_wait = io_wait

    @property
    def directories(self) -> list[Path]:
        return [self.backup_dir, self.corruption_backup_dir]

    def _locations(self) -> list[tuple[Path, str]]:
        return [(self.backup_dir, "backup"), (self.corruption_backup_dir, "corruption")]

    def ensure_directories(self) -> None:
        for directory in self.directories:
            directory.mkdir(parents=True, exist_ok=True)

    def _lock(self, file: DatabaseFile) -> FileLock:
        return FileLock(file.path, timeout=self.lock_timeout, stale_after=self.stale_lock_seconds)

    def _directory_for(self, reason: BackupReason) -> Path:
        return self.corruption_backup_dir if reason.is_corruption else self.backup_dir

    def _free_path(self, directory: Path, source_name: str, reason: BackupReason) -> Path:
        now = datetime.now(timezone.utc)
        when = now.replace(microsecond=(now.microsecond // 1000) * 1000)
        path = directory / format_backup_name(source_name, reason, when)
        while path.exists():
            when = next_millisecond(when)
            path = directory / format_backup_name(source_name, reason, when)
        return path

    # Creating

    def backup_file(self, file: DatabaseFile, reason: BackupReason) -> Path | None:
        """
        Copy one live file into the backup area.

        Returns:
            Path of the new backup, or None if the live file does not exist

        Raises:
            FileAccessError: If the file could not be read or the copy written
        """
        with self._lock(file):
            try:
                data = read_bytes(file.path, self.io_attempts, self.io_wait)
            except FileNotFoundError:
                logger.info(f"Not backing up {file.name}: file does not exist")
                return None

            directory = self._directory_for(reason)
            directory.mkdir(parents=True, exist_ok=True)
            destination = self._free_path(directory, file.name, reason)
            write_atomic(destination, data, self.io_attempts, self.io_wait)

        logger.info(f"Backed up {file.name} -> {destination}")
        return destination

    def create_backup(self, reason: BackupReason = BackupReason.MANUAL) -> BackupSet:
        """Back up every registered file that exists."""
        self.ensure_directories()
        result = BackupSet()
        for file in self.files:
            try:
                path = self.backup_file(file, reason)
            except FileAccessError as e:
                logger.error(f"Backup of {file.name} failed: {e}")
                result.errors[file.name] = str(e)
                continue
            if path is None:
                result.skipped.append(file.name)
            else:
                result.created[file.name] = path
        logger.info(
            f"{reason.value} backup: {len(result.created)} created, "
            f"{len(result.skipped)} skipped, {len(result.errors)} failed"
        )
        return result

    # Listing

    def _record_for(self, path: Path, kind: str) -> BackupRecord:
        try:
            parsed = parse_backup_name(path.name)
            source_name, reason, created_at = parsed.source_name, parsed.reason, parsed.created_at
        except RetentionParseError:
            source_name, reason, created_at = source_name_of(path.name), None, None
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return BackupRecord(
            filename=path.name,
            path=path,
            source_name=source_name,
            reason=reason,
            created_at=created_at,
            size=size,
            kind=kind,
        )

    def list_backups(self, verify: bool = False) -> list[BackupRecord]:
        """All backups in both directories, newest first (undated last)."""
        records = []
        for directory, kind in self._locations():
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.is_file() and path.name.endswith(BACKUP_SUFFIX):
                    records.append(self._record_for(path, kind))

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        records.sort(key=lambda r: (r.created_at or epoch, r.filename), reverse=True)

        if verify:
            for record in records:
                result = self._verify_record(record)
                record.verified = result.valid
                record.verify_error = None if result.valid else result.detail
        return records

    def has_initial_backup(self) -> bool:
        if not self.backup_dir.is_dir():
            return False
        marker = f".{BackupReason.INITIAL.value}."
        return any(
            marker in p.name and p.name.endswith(BACKUP_SUFFIX) for p in self.backup_dir.iterdir()
        )

    def find_backup(self, filename: str) -> BackupRecord | None:
        """Look a backup up by bare filename in either directory."""
        if not filename or Path(filename).name != filename:
            return None
        for directory, kind in self._locations():
            path = directory / filename
            if path.is_file():
                return self._record_for(path, kind)
        return None

    # Verifying

    def _verify_record(self, record: BackupRecord) -> VerifyResult:
        file = self.files.get(record.source_name)
        if file is None:
            return VerifyResult(False, f"unknown source file {record.source_name}")
        try:
            data = read_bytes(record.path, self.io_attempts, self.io_wait)
            text = data.decode("utf-8")
        except (OSError, FileAccessError, UnicodeDecodeError) as e:
            return VerifyResult(False, f"cannot read backup: {e}", file)
        result = file.validate_text(text)
        if not result.valid:
            return VerifyResult(False, result.error or "invalid", file)
        return VerifyResult(True, "ok", file)

    def verify_backup(self, filename: str) -> VerifyResult:
        """Check that a backup parses and matches its source file's structure."""
        record = self.find_backup(filename)
        if record is None:
            return VerifyResult(False, f"backup not found: {filename}")
        return self._verify_record(record)

    def latest_valid_backup(self, name: str) -> BackupRecord | None:
        """Newest backup of ``name`` that passes verification."""
        for record in self.list_backups():
            if record.source_name != name:
                continue
            if self._verify_record(record).valid:
                return record
        return None

    # Restoring

    def restore_backup(
        self, filename: str, force: bool = False, pre_restore: bool = True
    ) -> RestoreResult:
        """
        Replace a live file with the content of a backup.

        The backup is validated against its source file's validator unless
        ``force`` is set. With ``pre_restore`` the current live file is
        backed up first. On any failure the live file is left as it was.
        """
        record = self.find_backup(filename)
        if record is None:
            return RestoreResult(False, filename, f"backup not found: {filename}")

        file = self.files.get(record.source_name)
        if file is None:
            return RestoreResult(False, filename, f"unknown source file {record.source_name}")

        try:
            data = read_bytes(record.path, self.io_attempts, self.io_wait)
        except (OSError, FileAccessError) as e:
            return RestoreResult(False, filename, f"cannot read backup: {e}", file.path)

        if not force:
            try:
                check = file.validate_text(data.decode("utf-8"))
            except UnicodeDecodeError as e:
                return RestoreResult(False, filename, f"backup is not UTF-8: {e}", file.path)
            if not check.valid:
                logger.warning(f"Refusing to restore invalid backup {filename}: {check.error}")
                return RestoreResult(
                    False, filename, f"backup failed validation: {check.error}", file.path
                )

        pre_path = None
        try:
            with self._lock(file):
                if pre_restore and file.path.exists():
                    pre_path = self.backup_file(file, BackupReason.PRE_RESTORE)
                write_atomic(file.path, data, self.io_attempts, self.io_wait)
        except FileAccessError as e:
            logger.error(f"Restore of {file.name} from {filename} failed: {e}")
            return RestoreResult(False, filename, f"restore failed: {e}", file.path, pre_path)

        logger.warning(f"Restored {file.name} from backup {filename}")
        return RestoreResult(True, filename, "restored", file.path, pre_path)
