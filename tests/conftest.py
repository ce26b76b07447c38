"""Test fixtures and utilities."""

import copy
import json
from pathlib import Path

import pytest

from paygate_ledger.backup.manager import BackupManager
from paygate_ledger.config import BackupConfig, Config, IOConfig, WatcherConfig
from paygate_ledger.monitor.files import FileRegistry, default_registry
from paygate_ledger.monitor.integrity import IntegrityMonitor
from paygate_ledger.services.data_manager import DataManager
from paygate_ledger.services.operations import DatabaseOperations
from paygate_ledger.state_store import (
    AddressRepository,
    LedgerStore,
    MerchantTransactionRepository,
    ProcessorTransactionRepository,
)
from paygate_ledger.sync.engine import SyncEngine

SAMPLE_ADDRESS = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"

SAMPLE_KEYS = {
    "mnemonic": "encrypted:abc123",
    "activeAddresses": {
        SAMPLE_ADDRESS: {
            "index": 3,
            "ethAmount": "0.05",
            "expectedAmount": "0.05",
            "cryptoType": "ETH",
            "createdAt": "2024-03-01T10:00:00.000Z",
            "expiresAt": "2024-03-01T10:30:00.000Z",
            "status": "pending",
            "orderId": "order-17",
            "fiatAmount": "150.00",
            "fiatCurrency": "USD",
        }
    },
}

SAMPLE_MERCHANT = [
    {
        "txId": "tx_1709287200000_abc1234",
        "txHash": "0xdeadbeef",
        "address": SAMPLE_ADDRESS,
        "amount": "0.05",
        "timestamp": "2024-03-01T10:05:00.000Z",
        "status": "confirmed",
        "type": "payment",
        "cryptoType": "ETH",
        "amountVerified": True,
    }
]

SAMPLE_PROCESSOR = {
    "payments": [
        {
            "id": "pi_3Oq",
            "orderId": "order-18",
            "amount": 4999,
            "currency": "usd",
            "status": "confirmed",
            "timestamp": "2024-03-02T09:00:00.000Z",
            "paymentMethod": "card",
            "customerEmail": "buyer@example.com",
            "metadata": {"sku": "A-1"},
        }
    ]
}


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))


@pytest.fixture
def sample_address() -> str:
    return SAMPLE_ADDRESS


@pytest.fixture
def sample_keys() -> dict:
    """keys.json with one pending address."""
    return copy.deepcopy(SAMPLE_KEYS)


@pytest.fixture
def sample_merchant() -> list:
    """merchant_transactions.json with one confirmed payment."""
    return copy.deepcopy(SAMPLE_MERCHANT)


@pytest.fixture
def sample_processor() -> dict:
    """processor_payments.json with one card payment."""
    return copy.deepcopy(SAMPLE_PROCESSOR)


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "ledger.db"


@pytest.fixture
def data_dir(tmp_path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def registry(data_dir) -> FileRegistry:
    return default_registry(data_dir)


@pytest.fixture
def seeded_documents(data_dir) -> Path:
    """Data directory holding one record of each kind."""
    _write_json(data_dir / "keys.json", SAMPLE_KEYS)
    _write_json(data_dir / "merchant_transactions.json", SAMPLE_MERCHANT)
    _write_json(data_dir / "processor_payments.json", SAMPLE_PROCESSOR)
    return data_dir


@pytest.fixture
def store(temp_db) -> LedgerStore:
    return LedgerStore(temp_db)


@pytest.fixture
def repositories(store):
    return (
        AddressRepository(store),
        MerchantTransactionRepository(store),
        ProcessorTransactionRepository(store),
    )


@pytest.fixture
def backups(tmp_path, registry) -> BackupManager:
    return BackupManager(
        registry,
        tmp_path / "database_backups",
        tmp_path / "corruption_backups",
        lock_timeout=2.0,
        io_wait=0.001,
    )


@pytest.fixture
def monitor(registry, backups) -> IntegrityMonitor:
    return IntegrityMonitor(registry, backups, cache_ttl=60.0, lock_timeout=2.0, io_wait=0.001)


@pytest.fixture
def engine(repositories, registry, monitor) -> SyncEngine:
    addresses, merchants, processors = repositories
    return SyncEngine(
        addresses,
        merchants,
        processors,
        registry,
        lock_timeout=2.0,
        io_wait=0.001,
        on_failure=monitor.record_sync_failure,
    )


@pytest.fixture
def data_manager(repositories, engine) -> DataManager:
    addresses, merchants, processors = repositories
    return DataManager(addresses, merchants, processors, engine)


@pytest.fixture
def operations(monitor, backups, engine) -> DatabaseOperations:
    return DatabaseOperations(monitor, backups, engine)


@pytest.fixture
def config(tmp_path) -> Config:
    """Config rooted in tmp_path with the watcher and scheduler off."""
    return Config(
        data_dir=tmp_path / "data",
        state_db_path=tmp_path / "data" / "ledger.db",
        backup=BackupConfig(
            backup_dir=tmp_path / "database_backups",
            corruption_backup_dir=tmp_path / "corruption_backups",
        ),
        watcher=WatcherConfig(enabled=False, stability_threshold_ms=50, poll_interval_ms=10),
        io=IOConfig(retry_wait_seconds=0.001, lock_timeout_seconds=2.0),
    )
