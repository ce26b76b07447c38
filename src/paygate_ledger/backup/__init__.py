"""
Backups of the document files: naming, creation/verification/restore and
tiered retention.
"""

from .manager import BackupManager, BackupRecord, BackupSet, RestoreResult, VerifyResult
from .naming import BackupReason, format_backup_name, parse_backup_name
from .retention import CleanupResult, RetentionPlan, RetentionPolicy, plan_retention, run_cleanup

__all__ = [
    "BackupManager",
    "BackupReason",
    "BackupRecord",
    "BackupSet",
    "CleanupResult",
    "RestoreResult",
    "RetentionPlan",
    "RetentionPolicy",
    "VerifyResult",
    "format_backup_name",
    "parse_backup_name",
    "plan_retention",
    "run_cleanup",
]
