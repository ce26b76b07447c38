"""Tests for the integrity monitor."""

import json
import threading
from unittest import mock

from paygate_ledger.backup.naming import BackupReason
from paygate_ledger.errors import FileAccessError
from paygate_ledger.monitor.integrity import FileState, HealthStatus, IntegrityMonitor


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _corruption_backups(backups):
    return sorted(p.name for p in backups.corruption_backup_dir.glob("*.bak"))


class TestInspect:
    def test_states(self, monitor, registry, seeded_documents):
        keys = registry.get("keys.json")
        merchant = registry.get("merchant_transactions.json")
        processor = registry.get("processor_payments.json")
        index_map = registry.get("address_index_map.json")

        merchant.path.write_text("   \n")
        processor.path.write_text('{"payments": [}')

        assert monitor.inspect(keys).state == FileState.OK
        assert monitor.inspect(merchant).state == FileState.EMPTY
        assert monitor.inspect(processor).state == FileState.CORRUPTED
        assert monitor.inspect(index_map).state == FileState.MISSING

    def test_wrong_shape_is_corrupted(self, monitor, registry, seeded_documents):
        keys = registry.get("keys.json")
        keys.path.write_text('{"activeAddresses": {}}')
        health = monitor.inspect(keys)
        assert health.state == FileState.CORRUPTED
        assert "mnemonic" in health.error


class TestCheckHealth:
    def test_healthy(self, monitor, seeded_documents):
        (seeded_documents / "address_index_map.json").write_text("{}")
        status = monitor.check_health()
        assert status.is_healthy
        assert status.issues == []
        assert status.last_checked.endswith("Z")

    def test_missing_optional_file_is_listed_not_repaired(
        self, monitor, seeded_documents, registry
    ):
        index_map = registry.get("address_index_map.json").path
        assert not index_map.exists()

        status = monitor.check_health()

        assert status.is_healthy
        assert status.missing_files == ["address_index_map.json"]
        assert "Optional address_index_map.json is missing" in status.issues
        assert "address_index_map.json" not in status.errors
        assert not index_map.exists()

    def test_missing_required_file(self, monitor, seeded_documents):
        (seeded_documents / "keys.json").unlink()
        status = monitor.check_health()
        assert not status.is_healthy
        assert status.missing_files == ["keys.json", "address_index_map.json"]
        assert status.corrupted_files == []

    def test_corruption_is_detected_and_snapshotted(self, monitor, backups, seeded_documents):
        (seeded_documents / "merchant_transactions.json").write_text("[{ broken")

        status = monitor.check_health()

        assert not status.is_healthy
        assert status.corrupted_files == ["merchant_transactions.json"]
        assert "merchant_transactions.json" in status.errors
        snapshots = _corruption_backups(backups)
        assert len(snapshots) == 1
        assert snapshots[0].startswith("merchant_transactions.json.corrupted.")
        # The live file is never touched by a health check
        assert (seeded_documents / "merchant_transactions.json").read_text() == "[{ broken"

    def test_empty_file_snapshot_reason(self, monitor, backups, seeded_documents):
        (seeded_documents / "keys.json").write_text("")
        monitor.check_health()
        snapshots = _corruption_backups(backups)
        assert len(snapshots) == 1
        assert ".empty." in snapshots[0]

    def test_same_corruption_is_snapshotted_once(self, monitor, backups, seeded_documents):
        path = seeded_documents / "merchant_transactions.json"
        path.write_text("[{ broken")
        monitor.check_health(force=True)
        monitor.check_health(force=True)
        assert len(_corruption_backups(backups)) == 1

        path.write_text("[{ broken differently")
        monitor.check_health(force=True)
        assert len(_corruption_backups(backups)) == 2

    def test_only_last_snapshot_digest_is_remembered(self, monitor, backups, seeded_documents):
        path = seeded_documents / "merchant_transactions.json"
        for content in ("[{ a", "[{ b", "[{ a"):
            path.write_text(content)
            monitor.check_health(force=True)

        # Flipping back to earlier content is a new event
        assert len(_corruption_backups(backups)) == 3
        assert list(monitor._last_snapshot) == ["merchant_transactions.json"]

    def test_recovery_possible_with_valid_backup(self, monitor, backups, seeded_documents):
        backups.create_backup(BackupReason.MANUAL)
        (seeded_documents / "processor_payments.json").write_text("nope")

        status = monitor.check_health()

        assert not status.is_healthy
        assert status.recovery_possible

    def test_recovery_impossible_without_backup(self, monitor, seeded_documents):
        (seeded_documents / "processor_payments.json").write_text("nope")
        status = monitor.check_health()
        # The only backup is the corruption snapshot, which is itself invalid
        assert not status.recovery_possible

    def test_unreadable_file(self, monitor, seeded_documents):
        with mock.patch(
            "paygate_ledger.monitor.integrity.read_text",
            side_effect=FileAccessError("permission denied"),
        ):
            status = monitor.check_health()
        assert not status.is_healthy
        assert any("cannot be read" in issue for issue in status.issues)

    def test_monitor_failure_is_reported_not_raised(self, monitor, seeded_documents):
        with mock.patch.object(monitor, "_check_all", side_effect=RuntimeError("boom")):
            status = monitor.check_health()
        assert not status.is_healthy
        assert status.errors == {"monitor": "boom"}

    def test_to_dict_is_camel_case(self, monitor, seeded_documents):
        data = monitor.check_health().to_dict()
        assert set(data) == {
            "isHealthy",
            "corruptedFiles",
            "missingFiles",
            "issues",
            "errors",
            "recoveryPossible",
            "lastChecked",
            "syncFailures",
        }


class TestCache:
    def test_result_is_cached_within_ttl(self, registry, backups, seeded_documents):
        clock = FakeClock()
        monitor = IntegrityMonitor(registry, backups, cache_ttl=60, clock=clock)

        first = monitor.check_health()
        (seeded_documents / "keys.json").write_text("")
        clock.now += 30
        assert monitor.check_health() is first

        clock.now += 31
        assert not monitor.check_health().is_healthy

    def test_force_and_invalidate_bypass_cache(self, registry, backups, seeded_documents):
        monitor = IntegrityMonitor(registry, backups, cache_ttl=60, clock=FakeClock())
        monitor.check_health()
        (seeded_documents / "keys.json").write_text("")

        assert not monitor.check_health(force=True).is_healthy
        (seeded_documents / "keys.json").write_text(
            json.dumps({"mnemonic": "", "activeAddresses": {}})
        )
        monitor.invalidate()
        assert monitor.check_health().is_healthy


class TestSyncFailures:
    def test_failures_are_listed_without_affecting_health(self, monitor, seeded_documents):
        monitor.record_sync_failure("keys.json", "refusing to overwrite")
        status = monitor.check_health()
        assert status.is_healthy
        assert status.sync_failures[0]["file"] == "keys.json"
        assert any("Sync failure on keys.json" in issue for issue in status.issues)

        monitor.clear_sync_failures()
        assert monitor.check_health().sync_failures == []

    def test_failures_are_capped(self, monitor, seeded_documents):
        for i in range(60):
            monitor.record_sync_failure("keys.json", f"failure {i}")
        failures = monitor.check_health().sync_failures
        assert len(failures) == 50
        assert failures[-1]["detail"] == "failure 59"

    def test_recording_does_not_wait_for_a_running_check(self, monitor, seeded_documents):
        entered = threading.Event()
        release = threading.Event()
        recorded = threading.Event()

        def slow_check(failures):
            entered.set()
            release.wait(5)
            return HealthStatus(is_healthy=True, sync_failures=failures)

        def record():
            monitor.record_sync_failure("keys.json", "refusing to overwrite")
            recorded.set()

        with mock.patch.object(monitor, "_check_all", side_effect=slow_check):
            checker = threading.Thread(target=monitor.check_health, kwargs={"force": True})
            checker.start()
            try:
                assert entered.wait(5)
                threading.Thread(target=record).start()
                assert recorded.wait(1)
            finally:
                release.set()
                checker.join(5)

        # The failure arrived after the running check read the list
        assert monitor.check_health().sync_failures[0]["file"] == "keys.json"


class TestRepairFile:
    def test_merchant_drops_invalid_entries(self, monitor, registry):
        file = registry.get("merchant_transactions.json")
        repaired = json.loads(monitor.repair_file(file, '[{"txId": "a"}, null, {}, "x"]'))
        assert repaired == [{"txId": "a"}]

    def test_keys_missing_fields_are_filled(self, monitor, registry):
        file = registry.get("keys.json")
        repaired = json.loads(monitor.repair_file(file, '{"activeAddresses": {"0xa": {}}}'))
        assert repaired == {"mnemonic": "", "activeAddresses": {"0xa": {}}}

    def test_processor_non_array_payments_reset(self, monitor, registry):
        file = registry.get("processor_payments.json")
        repaired = json.loads(monitor.repair_file(file, '{"payments": 5, "cursor": "c"}'))
        assert repaired == {"payments": [], "cursor": "c"}

    def test_unparseable_content_resets(self, monitor, registry):
        file = registry.get("keys.json")
        assert monitor.repair_file(file, "{ nope") == file.default_text()
        assert monitor.repair_file(file, None) == file.default_text()

    def test_wrong_top_level_type_resets(self, monitor, registry):
        file = registry.get("processor_payments.json")
        assert monitor.repair_file(file, "[]") == file.default_text()


class TestCheckAndRepair:
    def test_missing_required_files_are_created(self, monitor, registry, data_dir):
        report = monitor.check_and_repair()

        for name in ("keys.json", "merchant_transactions.json", "processor_payments.json"):
            assert f"Created {name}" in report.fixed_issues
            file = registry.get(name)
            assert file.path.read_text() == file.default_text()
        assert "Optional address_index_map.json is missing" in report.issues
        assert not registry.get("address_index_map.json").path.exists()
        assert report.critical_errors == []

    def test_corrupted_file_is_repaired(self, monitor, backups, seeded_documents):
        path = seeded_documents / "merchant_transactions.json"
        path.write_text('[{"txId": "a", "type": "payment"}, 7]')

        report = monitor.check_and_repair()

        assert "Repaired merchant_transactions.json" in report.fixed_issues
        assert json.loads(path.read_text()) == [{"txId": "a", "type": "payment"}]
        assert len(_corruption_backups(backups)) == 1
        assert monitor.check_health().is_healthy

    def test_unparseable_file_is_reset(self, monitor, seeded_documents):
        path = seeded_documents / "keys.json"
        path.write_text("{{{")

        report = monitor.check_and_repair()

        assert "Reset keys.json" in report.fixed_issues
        assert json.loads(path.read_text()) == {"mnemonic": "", "activeAddresses": {}}

    def test_optional_corrupted_file_is_snapshotted_not_repaired(
        self, monitor, backups, seeded_documents
    ):
        path = seeded_documents / "address_index_map.json"
        path.write_text("[]")

        report = monitor.check_and_repair()

        assert path.read_text() == "[]"
        assert report.fixed_issues == []
        assert len(_corruption_backups(backups)) == 1

    def test_write_failure_is_critical(self, monitor, data_dir):
        with mock.patch(
            "paygate_ledger.monitor.integrity.write_atomic",
            side_effect=FileAccessError("read-only file system"),
        ):
            report = monitor.check_and_repair()
        assert len(report.critical_errors) == 3
        assert report.fixed_issues == []
