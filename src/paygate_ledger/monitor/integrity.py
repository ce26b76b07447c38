"""
Integrity monitor for the document files.

Inspects every registered file, snapshots broken ones into the corruption
backup directory, reports whether a valid backup exists to recover from and
performs best-effort structural repair when asked to.

check_health() never raises: problems, including the monitor's own
failures, end up in the returned HealthStatus.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..backup.manager import BackupManager
from ..backup.naming import BackupReason
from ..errors import FileAccessError, ParseError
from ..fileio import read_text, text_digest, write_atomic
from ..locking import FileLock
from .files import DatabaseFile, FileRegistry, parse_json, render_json

logger = logging.getLogger(__name__)

MAX_SYNC_FAILURES = 50


class FileState(str, Enum):
    OK = "ok"
    MISSING = "missing"
    EMPTY = "empty"
    CORRUPTED = "corrupted"
    UNREADABLE = "unreadable"


@dataclass
class FileHealth:
    """Inspection result for one file."""

    name: str
    state: FileState
    error: str | None = None
    digest: str | None = None

    @property
    def healthy(self) -> bool:
        return self.state == FileState.OK


@dataclass
class HealthStatus:
    """Overall health of the document files."""

    is_healthy: bool
    corrupted_files: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    recovery_possible: bool = True
    last_checked: str | None = None
    sync_failures: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """camelCase form for the admin layer."""
        return {
            "isHealthy": self.is_healthy,
            "corruptedFiles": list(self.corrupted_files),
            "missingFiles": list(self.missing_files),
            "issues": list(self.issues),
            "errors": dict(self.errors),
            "recoveryPossible": self.recovery_possible,
            "lastChecked": self.last_checked,
            "syncFailures": [dict(f) for f in self.sync_failures],
        }


@dataclass
class RepairReport:
    issues: list[str] = field(default_factory=list)
    fixed_issues: list[str] = field(default_factory=list)
    critical_errors: list[str] = field(default_factory=list)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _repair_value(default: Any, value: Any) -> Any:
    """Keep what fits the default's shape, fill in what is missing."""
    if isinstance(default, list):
        if not isinstance(value, list):
            return list(default)
        return [entry for entry in value if entry and isinstance(entry, dict)]
    if isinstance(default, dict):
        if not isinstance(value, dict):
            return dict(default)
        repaired = dict(value)
        for key, default_value in default.items():
            if key not in repaired:
                repaired[key] = default_value
            elif isinstance(default_value, (dict, list)):
                repaired[key] = _repair_value(default_value, repaired[key])
        return repaired
    return value


class IntegrityMonitor:
    """
    Health checks and repair for the registered document files.

    Health results are cached for ``cache_ttl`` seconds; pass force=True or
    call invalidate() to bypass the cache.
    """

    def __init__(
        self,
        files: FileRegistry,
        backups: BackupManager,
        cache_ttl: float = 60.0,
        lock_timeout: float = 10.0,
        io_attempts: int = 3,
        io_wait: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.files = files
        self.backups = backups
        self.cache_ttl = cache_ttl
        self.lock_timeout = lock_timeout
        self.io_attempts = io_attempts
        self.io_wait = io_wait
        self._clock = clock

        # _lock serialises checks and repairs, which do file IO; _failures_lock
        # only guards the in-memory failure list and is never held across IO
        self._lock = threading.RLock()
        self._cached: HealthStatus | None = None
        self._cached_at = 0.0
        self._cached_generation = -1
        self._last_snapshot: dict[str, str] = {}
        self._failures_lock = threading.Lock()
        self._sync_failures: list[dict[str, str]] = []
        self._failures_generation = 0

    # Inspection

    def _read(self, file: DatabaseFile) -> tuple[FileHealth, str | None]:
        try:
            text = read_text(file.path, self.io_attempts, self.io_wait)
        except FileNotFoundError:
            return FileHealth(file.name, FileState.MISSING, "file does not exist"), None
        except FileAccessError as e:
            return FileHealth(file.name, FileState.UNREADABLE, str(e)), None

        digest = text_digest(text)
        if not text.strip():
            return FileHealth(file.name, FileState.EMPTY, "file is empty", digest), text
        result = file.validate_text(text)
        if not result.valid:
            return FileHealth(file.name, FileState.CORRUPTED, result.error, digest), text
        return FileHealth(file.name, FileState.OK, None, digest), text

    def inspect(self, file: DatabaseFile) -> FileHealth:
        """Classify a single file."""
        health, _ = self._read(file)
        return health

    def _snapshot(self, file: DatabaseFile, health: FileHealth) -> None:
        """Copy a broken file aside unless this content was the last one saved."""
        if health.digest is None or self._last_snapshot.get(file.name) == health.digest:
            return
        reason = BackupReason.EMPTY if health.state == FileState.EMPTY else BackupReason.CORRUPTED
        try:
            path = self.backups.backup_file(file, reason)
        except FileAccessError as e:
            logger.error(f"Could not snapshot broken {file.name}: {e}")
            return
        self._last_snapshot[file.name] = health.digest
        if path is not None:
            logger.warning(f"Saved {health.state.value} {file.name} to {path}")

    # Health

    def check_health(self, force: bool = False) -> HealthStatus:
        """Inspect every file; served from cache within the TTL unless forced."""
        with self._lock:
            now = self._clock()
            if (
                not force
                and self._cached is not None
                and self._cached_generation == self._failures_generation
                and now - self._cached_at < self.cache_ttl
            ):
                return self._cached
            with self._failures_lock:
                generation = self._failures_generation
                failures = [dict(f) for f in self._sync_failures]
            try:
                status = self._check_all(failures)
            except Exception as e:
                logger.error(f"Health check failed: {e}", exc_info=True)
                status = HealthStatus(
                    is_healthy=False,
                    issues=[f"Health check failed: {e}"],
                    errors={"monitor": str(e)},
                    recovery_possible=False,
                    last_checked=_now_iso(),
                )
            self._cached = status
            self._cached_at = now
            self._cached_generation = generation
            return status

    def _check_all(self, failures: list[dict[str, str]]) -> HealthStatus:
        status = HealthStatus(is_healthy=True, last_checked=_now_iso())
        unhealthy: list[DatabaseFile] = []

        for file in self.files:
            health = self.inspect(file)
            if health.state == FileState.OK:
                continue
            if health.state == FileState.MISSING:
                status.missing_files.append(file.name)
                if not file.required:
                    # Listed, but neither unhealthy nor repaired
                    status.issues.append(f"Optional {file.name} is missing")
                    continue
                status.issues.append(f"{file.name} is missing")
            elif health.state == FileState.UNREADABLE:
                status.issues.append(f"{file.name} cannot be read: {health.error}")
            else:
                status.corrupted_files.append(file.name)
                status.issues.append(f"{file.name} is {health.state.value}: {health.error}")
                self._snapshot(file, health)
            status.errors[file.name] = health.error or health.state.value
            unhealthy.append(file)

        status.is_healthy = not unhealthy
        status.recovery_possible = all(
            self.backups.latest_valid_backup(file.name) is not None for file in unhealthy
        )

        status.sync_failures = failures
        for failure in status.sync_failures:
            status.issues.append(f"Sync failure on {failure['file']}: {failure['detail']}")

        if unhealthy:
            logger.warning(
                f"Document health check found {len(unhealthy)} unhealthy files: "
                f"{', '.join(f.name for f in unhealthy)}"
            )
        return status

    def invalidate(self) -> None:
        """Drop the cached health status."""
        with self._lock:
            self._cached = None

    def record_sync_failure(self, name: str, detail: str) -> None:
        """Hook for the sync engine; shows up in the next health status."""
        with self._failures_lock:
            self._sync_failures.append({"file": name, "detail": detail, "at": _now_iso()})
            del self._sync_failures[:-MAX_SYNC_FAILURES]
            self._failures_generation += 1

    def clear_sync_failures(self) -> None:
        with self._failures_lock:
            self._sync_failures.clear()
            self._failures_generation += 1

    # Repair

    def repair_file(self, file: DatabaseFile, content: str | None) -> str:
        """
        Best-effort structural repair of a file's content.

        Array entries that are empty or not objects are dropped and missing
        keys are filled in from the default content. If the result still
        fails validation the default content is returned.
        """
        if content is not None:
            try:
                data = parse_json(content)
            except ParseError:
                data = None
            if data is not None:
                repaired = _repair_value(file.default_content, data)
                if file.validate_data(repaired).valid:
                    return render_json(repaired)
        return file.default_text()

    def _write(self, file: DatabaseFile, text: str) -> None:
        with FileLock(file.path, timeout=self.lock_timeout):
            write_atomic(file.path, text, self.io_attempts, self.io_wait)

    def check_and_repair(self) -> RepairReport:
        """Snapshot and repair (or reset) every broken required file."""
        report = RepairReport()
        with self._lock:
            for file in self.files:
                health, text = self._read(file)
                if health.state == FileState.OK:
                    continue

                if health.state == FileState.MISSING:
                    if not file.required:
                        report.issues.append(f"Optional {file.name} is missing")
                        continue
                    report.issues.append(f"{file.name} is missing")
                    self._apply_repair(file, file.default_text(), "Created", report)
                elif health.state == FileState.UNREADABLE:
                    message = f"{file.name} cannot be read: {health.error}"
                    if file.required:
                        report.critical_errors.append(message)
                    else:
                        report.issues.append(message)
                else:
                    report.issues.append(f"{file.name} is {health.state.value}: {health.error}")
                    self._snapshot(file, health)
                    if not file.required:
                        continue
                    repaired = self.repair_file(file, text)
                    verb = "Reset" if repaired == file.default_text() else "Repaired"
                    self._apply_repair(file, repaired, verb, report)

            self._cached = None
        return report

    def _apply_repair(self, file: DatabaseFile, text: str, verb: str, report: RepairReport) -> None:
        try:
            self._write(file, text)
        except FileAccessError as e:
            logger.critical(f"Could not write repaired {file.name}: {e}")
            report.critical_errors.append(f"Could not write {file.name}: {e}")
            return
        logger.warning(f"{verb} {file.name}")
        report.fixed_issues.append(f"{verb} {file.name}")
