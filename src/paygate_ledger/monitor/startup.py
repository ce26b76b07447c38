"""
Startup validation of the document files.

Run once before the gateway starts serving: makes sure the backup
directories exist, takes the one-time ``initial`` backup and repairs any
broken required file. Problems are aggregated into a StartupReport; nothing
is raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from ..backup.manager import BackupManager
from ..backup.naming import BackupReason
from .integrity import IntegrityMonitor

logger = logging.getLogger(__name__)


@dataclass
class StartupReport:
    success: bool = True
    issues: list[str] = field(default_factory=list)
    fixed_issues: list[str] = field(default_factory=list)
    critical_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "issues": list(self.issues),
            "fixedIssues": list(self.fixed_issues),
            "criticalErrors": list(self.critical_errors),
        }


class StartupValidator:
    """Prepares the document files and backup area for a new process."""

    def __init__(self, monitor: IntegrityMonitor, backups: BackupManager):
        self.monitor = monitor
        self.backups = backups

    def _ensure_directories(self, report: StartupReport) -> None:
        for directory in self.backups.directories:
            if directory.is_dir():
                continue
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                report.critical_errors.append(f"Cannot create backup directory {directory}: {e}")
                continue
            report.fixed_issues.append(f"Created missing backup directory: {directory}")

    def _ensure_initial_backup(self, report: StartupReport) -> None:
        if self.backups.has_initial_backup():
            return
        result = self.backups.create_backup(BackupReason.INITIAL)
        if result.created:
            report.fixed_issues.append("Created initial database backup")
        for name, error in result.errors.items():
            report.issues.append(f"Initial backup of {name} failed: {error}")

    def run(self) -> StartupReport:
        """Validate, repair and report."""
        logger.info("Validating document files on startup")
        report = StartupReport()

        try:
            self._ensure_directories(report)
            self._ensure_initial_backup(report)

            repair = self.monitor.check_and_repair()
            report.issues.extend(repair.issues)
            report.fixed_issues.extend(repair.fixed_issues)
            report.critical_errors.extend(repair.critical_errors)
        except Exception as e:
            logger.critical(f"Startup validation failed: {e}", exc_info=True)
            report.critical_errors.append(f"Startup validation failed: {e}")

        report.success = not report.critical_errors
        if report.success:
            logger.info(
                f"Startup validation passed ({len(report.issues)} issues, "
                f"{len(report.fixed_issues)} fixed)"
            )
        else:
            for error in report.critical_errors:
                logger.critical(error)
        return report
