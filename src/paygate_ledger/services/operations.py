"""
Operational surface for admin routes, scripts and the CLI.

Every method returns a plain dict with a ``success`` key (or the health
status dict) and never raises, so callers can serialise the result as-is.
"""

import logging
from contextlib import ExitStack
from datetime import datetime
from typing import Any

from ..backup.manager import BackupManager
from ..backup.naming import BackupReason
from ..backup.retention import RetentionPolicy, run_cleanup
from ..errors import FileAccessError, SyncConflict
from ..monitor.integrity import IntegrityMonitor
from ..sync.engine import PROJECTED_KINDS, SyncEngine

logger = logging.getLogger(__name__)


class DatabaseOperations:
    """Health, backup, restore and cleanup operations."""

    def __init__(
        self,
        monitor: IntegrityMonitor,
        backups: BackupManager,
        engine: SyncEngine,
        policy: RetentionPolicy | None = None,
        dry_run_default: bool = False,
    ):
        self.monitor = monitor
        self.backups = backups
        self.engine = engine
        self.policy = policy or RetentionPolicy()
        self.dry_run_default = dry_run_default

    def get_database_status(self, force: bool = False) -> dict[str, Any]:
        """Health status dict (camelCase)."""
        return self.monitor.check_health(force=force).to_dict()

    def create_backup(self, reason: str = BackupReason.MANUAL.value) -> dict[str, Any]:
        try:
            backup_reason = BackupReason(reason)
        except ValueError:
            return {"success": False, "error": f"Unknown backup reason: {reason}"}

        try:
            result = self.backups.create_backup(backup_reason)
        except Exception as e:
            logger.error(f"Backup failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

        return {
            "success": result.success and bool(result.created),
            "reason": backup_reason.value,
            "backups": {name: str(path) for name, path in result.created.items()},
            "skipped": list(result.skipped),
            "errors": dict(result.errors),
        }

    def list_backups(self, verify: bool = False) -> dict[str, Any]:
        try:
            records = self.backups.list_backups(verify=verify)
        except OSError as e:
            logger.error(f"Listing backups failed: {e}")
            return {"success": False, "error": str(e), "backups": []}
        return {"success": True, "backups": [r.to_dict() for r in records]}

    def verify_backup(self, filename: str) -> dict[str, Any]:
        try:
            result = self.backups.verify_backup(filename)
        except Exception as e:
            logger.error(f"Verifying {filename} failed: {e}", exc_info=True)
            return {"success": False, "filename": filename, "valid": False, "detail": str(e)}
        return {
            "success": True,
            "filename": filename,
            "valid": result.valid,
            "detail": result.detail,
            "sourceName": result.file.name if result.file else None,
        }

    def restore_backup(
        self, filename: str, force: bool = False, pre_restore: bool = True
    ) -> dict[str, Any]:
        """
        Restore a live file from a backup.

        A restored projected document is an admin override of the ledger,
        so it is ingested into the store right away. The sync lock and the
        document's file lock are held from the write through the ingest, so
        no mutation can re-project the old ledger over the restored file.
        """
        record = self.backups.find_backup(filename)
        file = self.backups.files.get(record.source_name) if record is not None else None
        projected = file is not None and file.kind in PROJECTED_KINDS

        try:
            with ExitStack() as held:
                if projected:
                    held.enter_context(self.engine.exclusive())
                    held.enter_context(self.engine.file_lock(file))
                response = self._restore_locked(filename, force, pre_restore, projected)
        except (SyncConflict, FileAccessError) as e:
            logger.error(f"Restore of {filename} could not take the document locks: {e}")
            return {"success": False, "filename": filename, "error": str(e)}
        except Exception as e:
            logger.error(f"Restore of {filename} failed: {e}", exc_info=True)
            return {"success": False, "filename": filename, "error": str(e)}

        if response.get("ingested") is not None and response["success"]:
            self.monitor.clear_sync_failures()
        self.monitor.invalidate()
        return response

    def _restore_locked(
        self, filename: str, force: bool, pre_restore: bool, projected: bool
    ) -> dict[str, Any]:
        result = self.backups.restore_backup(filename, force=force, pre_restore=pre_restore)
        response: dict[str, Any] = {
            "success": result.success,
            "filename": filename,
            "detail": result.detail,
            "preRestoreBackup": (
                str(result.pre_restore_backup) if result.pre_restore_backup else None
            ),
        }
        if not result.success:
            response["error"] = result.detail
            return response

        file = self.backups.files.for_path(result.target) if result.target else None
        if projected and file is not None:
            report = self.engine.ingest_documents_to_store([file.name])
            response["ingested"] = dict(report.ingested)
            if not report.success:
                response["success"] = False
                response["error"] = f"Restored file could not be ingested: {report.errors}"
        return response

    def restore_latest(self, name: str, pre_restore: bool = True) -> dict[str, Any]:
        """Restore ``name`` from its newest backup that passes verification."""
        try:
            record = self.backups.latest_valid_backup(name)
        except Exception as e:
            logger.error(f"Finding a backup of {name} failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}
        if record is None:
            return {"success": False, "error": f"No valid backup of {name}"}
        return self.restore_backup(record.filename, pre_restore=pre_restore)

    def run_cleanup(
        self, dry_run: bool | None = None, now: datetime | None = None
    ) -> dict[str, Any]:
        dry_run = self.dry_run_default if dry_run is None else dry_run
        try:
            result = run_cleanup(self.backups.directories, self.policy, dry_run=dry_run, now=now)
        except Exception as e:
            logger.error(f"Backup cleanup failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}
        return {
            "success": result.success,
            "dryRun": result.dry_run,
            "deleted": result.deleted,
            "kept": result.kept,
            "deletedFiles": list(result.deleted_files),
            "errors": dict(result.errors),
        }

    def repair(self) -> dict[str, Any]:
        """Repair broken files, then re-project the ledger documents from the store."""
        try:
            report = self.monitor.check_and_repair()
        except Exception as e:
            logger.error(f"Repair failed: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

        response = {
            "success": not report.critical_errors,
            "issues": list(report.issues),
            "fixedIssues": list(report.fixed_issues),
            "criticalErrors": list(report.critical_errors),
        }
        if report.fixed_issues:
            # Repaired documents are resynced from the authoritative store
            sync = self.engine.project_store_to_documents()
            response["projected"] = list(sync.written)
        return response
