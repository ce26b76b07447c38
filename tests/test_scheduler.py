"""Tests for the in-process backup scheduler."""

import time
from unittest import mock

from paygate_ledger.services.scheduler import BackupScheduler


class TestBackupScheduler:
    def test_run_once(self, operations, backups, seeded_documents):
        scheduler = BackupScheduler(operations, interval_seconds=3600)

        result = scheduler.run_once()

        assert result["success"]
        assert result["reason"] == "scheduled"
        assert result["cleanup"]["success"]
        assert scheduler.runs == 1
        assert len(list(backups.backup_dir.glob("*.scheduled.*.bak"))) == 3

    def test_run_once_without_cleanup(self, operations, seeded_documents):
        scheduler = BackupScheduler(operations, interval_seconds=3600, cleanup=False)
        assert "cleanup" not in scheduler.run_once()

    def test_failed_backup_still_counts(self, operations):
        scheduler = BackupScheduler(operations, interval_seconds=3600, cleanup=False)
        result = scheduler.run_once()
        assert not result["success"]
        assert scheduler.runs == 1

    def test_thread_runs_immediately_and_stops(self, operations, seeded_documents):
        scheduler = BackupScheduler(operations, interval_seconds=3600, run_immediately=True)
        scheduler.start()
        try:
            assert scheduler.is_running
            for _ in range(500):
                if scheduler.runs:
                    break
                time.sleep(0.01)
        finally:
            scheduler.stop()

        assert scheduler.runs == 1
        assert not scheduler.is_running

    def test_loop_survives_errors(self, operations):
        scheduler = BackupScheduler(operations, interval_seconds=3600)
        with mock.patch.object(scheduler, "run_once", side_effect=RuntimeError("boom")):
            scheduler._safe_run()
