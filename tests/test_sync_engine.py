"""Tests for store <-> document synchronisation."""

import json
import threading
from unittest import mock

import pytest

from paygate_ledger.errors import SyncConflict
from paygate_ledger.fileio import file_digest
from paygate_ledger.locking import lock_path_for
from paygate_ledger.state_store import (
    AddressRecord,
    MerchantRecord,
    TransactionStatus,
    TransactionType,
)
from paygate_ledger.sync.engine import SyncEngine, SyncReport


def _load(path):
    return json.loads(path.read_text())


class TestSyncReport:
    def test_success_and_summary(self):
        report = SyncReport(direction="ingest", ingested={"a.json": 2, "b.json": 3})
        assert report.success
        assert report.summary() == "ingest: 5 records ingested"

        report.errors["a.json"] = "boom"
        assert not report.success
        assert "1 errors" in report.summary()


class TestIngest:
    """Documents -> store."""

    def test_ingest_seeded_documents(self, engine, seeded_documents, repositories, sample_address):
        addresses, merchants, processors = repositories

        report = engine.ingest_documents_to_store()

        assert report.success
        assert report.ingested == {
            "keys.json": 1,
            "merchant_transactions.json": 1,
            "processor_payments.json": 1,
        }
        assert addresses.get_by_key(sample_address).order_id == "order-17"
        assert merchants.get_by_key("tx_1709287200000_abc1234").tx_hash == "0xdeadbeef"
        assert processors.get_by_key("pi_3Oq").amount == 4999

    def test_missing_files_are_skipped(self, engine, data_dir):
        report = engine.ingest_documents_to_store()

        assert report.success
        assert sorted(report.skipped) == [
            "keys.json",
            "merchant_transactions.json",
            "processor_payments.json",
        ]

    def test_address_index_map_is_not_ingested(self, engine, seeded_documents):
        (seeded_documents / "address_index_map.json").write_text('{"0xa": 1}')
        report = engine.ingest_documents_to_store()
        assert "address_index_map.json" not in report.ingested
        assert "address_index_map.json" not in report.skipped

    def test_only_named_files(self, engine, seeded_documents, repositories):
        addresses, merchants, _ = repositories
        report = engine.ingest_documents_to_store(["merchant_transactions.json"])

        assert list(report.ingested) == ["merchant_transactions.json"]
        assert merchants.count() == 1
        assert addresses.count() == 0

    def test_malformed_document_is_reported_not_raised(
        self, engine, seeded_documents, repositories, monitor
    ):
        _, merchants, _ = repositories
        engine.ingest_documents_to_store()
        (seeded_documents / "merchant_transactions.json").write_text("[{ not json")

        report = engine.ingest_documents_to_store()

        assert not report.success
        assert "merchant_transactions.json" in report.errors
        # The table keeps its last good content
        assert merchants.count() == 1
        # The monitor hears about it through the failure hook
        failures = monitor.check_health(force=True).sync_failures
        assert [f["file"] for f in failures] == ["merchant_transactions.json"]

    def test_wrong_shape_is_reported(self, engine, seeded_documents):
        (seeded_documents / "processor_payments.json").write_text('{"payments": "nope"}')
        report = engine.ingest_documents_to_store()
        assert "processor_payments.json" in report.errors
        assert report.ingested["keys.json"] == 1

    def test_unknown_status_is_reported(self, engine, seeded_documents, sample_merchant):
        sample_merchant[0]["status"] = "maybe"
        (seeded_documents / "merchant_transactions.json").write_text(json.dumps(sample_merchant))
        report = engine.ingest_documents_to_store()
        assert "merchant_transactions.json" in report.errors

    def test_ingest_replaces_table(self, engine, seeded_documents, repositories):
        _, merchants, _ = repositories
        merchants.add(MerchantRecord(tx_id="stale", type=TransactionType.RELEASE))

        engine.ingest_documents_to_store()

        assert [r.tx_id for r in merchants.get_all()] == ["tx_1709287200000_abc1234"]

    def test_hook_errors_do_not_escape(self, engine, seeded_documents):
        def broken_hook(name, detail):
            raise RuntimeError("hook failed")

        engine.on_failure = broken_hook
        (seeded_documents / "keys.json").write_text("")
        report = engine.ingest_documents_to_store()
        assert "keys.json" in report.errors


class TestProject:
    """Store -> documents."""

    def test_projection_writes_all_documents(self, engine, repositories, data_dir):
        addresses, _, _ = repositories
        addresses.add(AddressRecord(address="0xabc", index=1))

        report = engine.project_store_to_documents()

        assert report.success
        assert sorted(report.written) == [
            "keys.json",
            "merchant_transactions.json",
            "processor_payments.json",
        ]
        keys = _load(data_dir / "keys.json")
        assert keys["mnemonic"] == ""
        assert keys["activeAddresses"]["0xabc"]["index"] == 1
        assert _load(data_dir / "merchant_transactions.json") == []
        assert _load(data_dir / "processor_payments.json") == {"payments": []}
        assert not (data_dir / "address_index_map.json").exists()

    def test_second_projection_is_unchanged(self, engine, seeded_documents):
        engine.ingest_documents_to_store()
        engine.project_store_to_documents()
        before = {p.name: p.stat().st_mtime_ns for p in seeded_documents.glob("*.json")}

        report = engine.project_store_to_documents()

        assert report.written == []
        assert len(report.unchanged) == 3
        after = {p.name: p.stat().st_mtime_ns for p in seeded_documents.glob("*.json")}
        assert before == after

    def test_round_trip_preserves_records(self, engine, seeded_documents, sample_processor):
        engine.ingest_documents_to_store()
        engine.project_store_to_documents()

        payments = _load(seeded_documents / "processor_payments.json")["payments"]
        assert payments == sample_processor["payments"]

        merchant = _load(seeded_documents / "merchant_transactions.json")[0]
        assert merchant["txHash"] == "0xdeadbeef"
        assert merchant["status"] == "confirmed"

    def test_keys_metadata_is_preserved(self, engine, seeded_documents, repositories):
        keys_path = seeded_documents / "keys.json"
        keys = _load(keys_path)
        keys["encryptionVersion"] = 2
        keys_path.write_text(json.dumps(keys))
        addresses, _, _ = repositories
        addresses.add(AddressRecord(address="0xnew", status=TransactionStatus.EXPIRED))

        engine.project_store_to_documents()

        projected = _load(keys_path)
        assert projected["mnemonic"] == "encrypted:abc123"
        assert projected["encryptionVersion"] == 2
        assert list(projected["activeAddresses"]) == ["0xnew"]

    def test_unparseable_keys_file_is_not_overwritten(self, engine, seeded_documents, monitor):
        keys_path = seeded_documents / "keys.json"
        keys_path.write_text("{ broken")

        report = engine.project_store_to_documents()

        assert "keys.json" in report.errors
        assert keys_path.read_text() == "{ broken"
        # The other documents still project
        assert "merchant_transactions.json" in report.written
        assert monitor.check_health(force=True).sync_failures[0]["file"] == "keys.json"

    def test_failure_hook_runs_after_file_locks_are_released(
        self, engine, seeded_documents, registry
    ):
        keys = registry.get("keys.json")
        seen = []

        def hook(name, detail):
            seen.append(
                (name, lock_path_for(keys.path).exists(), engine.file_lock(keys).is_held)
            )

        engine.on_failure = hook
        keys.path.write_text("{ broken")

        engine.project_store_to_documents()

        assert seen == [("keys.json", False, False)]

    def test_tables_are_read_under_the_file_lock(self, engine, seeded_documents, registry):
        merchant = registry.get("merchant_transactions.json")
        held = []
        real_get_all = engine.merchants.get_all

        def get_all():
            held.append(lock_path_for(merchant.path).exists())
            return real_get_all()

        with mock.patch.object(engine.merchants, "get_all", side_effect=get_all):
            engine.project_store_to_documents()

        assert held == [True]

    def test_non_object_keys_file_is_not_overwritten(self, engine, seeded_documents):
        (seeded_documents / "keys.json").write_text("[]")
        report = engine.project_store_to_documents()
        assert "keys.json" in report.errors

    def test_no_lock_files_left_behind(self, engine, data_dir):
        engine.project_store_to_documents()
        assert list(data_dir.glob("*.lock")) == []
        assert list(data_dir.glob("*.tmp")) == []

    def test_render_documents_matches_projection(self, engine, seeded_documents):
        engine.ingest_documents_to_store()
        engine.project_store_to_documents()
        keys_base = _load(seeded_documents / "keys.json")

        rendered = engine.render_documents(keys_base)

        for name, text in rendered.items():
            assert (seeded_documents / name).read_text() == text


class TestOwnWrites:
    def test_projected_digest_is_own_write(self, engine, data_dir):
        engine.project_store_to_documents()
        path = data_dir / "merchant_transactions.json"
        assert engine.is_own_write(path, file_digest(path))

    def test_external_edit_is_not_own_write(self, engine, data_dir):
        engine.project_store_to_documents()
        path = data_dir / "merchant_transactions.json"
        path.write_text('[{"txId": "external", "type": "payment"}]')
        assert not engine.is_own_write(path, file_digest(path))

    def test_missing_digest_is_never_own_write(self, engine, data_dir):
        assert not engine.is_own_write(data_dir / "keys.json", None)


class TestExclusive:
    def test_exclusive_is_reentrant(self, engine):
        with engine.exclusive():
            with engine.exclusive():
                report = engine.project_store_to_documents()
        assert report.success

    def test_conflict_when_held_by_another_thread(self, engine):
        held = threading.Event()
        release = threading.Event()

        def holder():
            with engine.exclusive():
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert held.wait(5)
            with pytest.raises(SyncConflict):
                with engine.exclusive(timeout=0.05):
                    pass
        finally:
            release.set()
            thread.join(5)

    def test_projection_reports_conflict(self, engine):
        engine.lock_timeout = 0.05
        held = threading.Event()
        release = threading.Event()

        def holder():
            with engine.exclusive(timeout=5):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert held.wait(5)
            report = engine.project_store_to_documents()
        finally:
            release.set()
            thread.join(5)

        assert "sync" in report.errors


class TestRendering:
    def test_render_keys_replaces_only_active_addresses(self):
        base = {"mnemonic": "m", "activeAddresses": {"0xold": {}}, "extra": True}
        document = SyncEngine.render_keys(base, [AddressRecord(address="0xa")])
        assert document["mnemonic"] == "m"
        assert document["extra"] is True
        assert list(document["activeAddresses"]) == ["0xa"]
        # The base is not mutated
        assert list(base["activeAddresses"]) == ["0xold"]

    def test_render_processor_wraps_payments(self):
        assert SyncEngine.render_processor([]) == {"payments": []}
