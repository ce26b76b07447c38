"""
In-process backup scheduler.

Deployments normally trigger backups from cron via the CLI; this thread is
for hosts without one. Each run takes a ``scheduled`` backup of every
document and then prunes the backup directories.
"""

import logging
import threading

from ..backup.naming import BackupReason
from .operations import DatabaseOperations

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Background thread running scheduled backups at a fixed interval."""

    def __init__(
        self,
        operations: DatabaseOperations,
        interval_seconds: float,
        cleanup: bool = True,
        run_immediately: bool = False,
    ):
        self.operations = operations
        self.interval_seconds = interval_seconds
        self.cleanup = cleanup
        self.run_immediately = run_immediately
        self.runs = 0

        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> dict:
        """One backup (+ cleanup) pass."""
        result = self.operations.create_backup(BackupReason.SCHEDULED.value)
        if not result["success"]:
            logger.error(f"Scheduled backup failed: {result.get('error') or result.get('errors')}")
        if self.cleanup:
            cleanup = self.operations.run_cleanup()
            result["cleanup"] = cleanup
        self.runs += 1
        return result

    def _loop(self) -> None:
        logger.info(f"Backup scheduler started (every {self.interval_seconds:.0f}s)")
        if self.run_immediately:
            self._safe_run()
        # Event.wait returns True once shutdown is requested
        while not self._shutdown.wait(self.interval_seconds):
            self._safe_run()
        logger.info("Backup scheduler stopped")

    def _safe_run(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            logger.error(f"Error in backup scheduler: {e}", exc_info=True)

    def start(self) -> None:
        if self.is_running:
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._loop, name="backup-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Backup scheduler did not stop within timeout")
            self._thread = None
