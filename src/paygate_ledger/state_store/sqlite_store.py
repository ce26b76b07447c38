"""
SQLite-based ledger store implementation.

Tables:
- transactions: Payment addresses awaiting or having received funds
- merchant_transactions: Merchant ledger entries (payments and releases)
- processor_transactions: Third-party payment processor payments

Each record type knows how to convert itself to and from a database row and
to and from the camelCase dict used in the JSON documents.
"""

import json
import logging
import random
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import SchemaError, StoreError

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TransactionStatus(str, Enum):
    """Status of an address, ledger entry or processor payment."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    WRONG = "wrong"
    EXPIRED = "expired"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @classmethod
    def parse(cls, value: Any, default: "TransactionStatus | None" = None) -> "TransactionStatus":
        """
        Normalise a status from a document or caller.

        Legacy booleans (and their string forms) from older ledger files are
        mapped once here: true -> confirmed, false -> failed.

        Raises:
            SchemaError: If the value is not a known status
        """
        if isinstance(value, cls):
            return value
        if value is None:
            if default is not None:
                return default
            raise SchemaError("Missing status")
        if isinstance(value, bool):
            return cls.CONFIRMED if value else cls.FAILED
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in _LEGACY_STATUS:
                return _LEGACY_STATUS[normalized]
            try:
                return cls(normalized)
            except ValueError:
                pass
        raise SchemaError(f"Unknown status: {value!r}")


_LEGACY_STATUS = {
    "true": TransactionStatus.CONFIRMED,
    "false": TransactionStatus.FAILED,
    "success": TransactionStatus.CONFIRMED,
    "completed": TransactionStatus.CONFIRMED,
}


class TransactionType(str, Enum):
    """Kind of merchant ledger entry."""

    PAYMENT = "payment"
    RELEASE = "release"


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _opt_int(value: Any, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SchemaError(f"{field_name} must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise SchemaError(f"{field_name} must be an integer, got {value!r}")
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise SchemaError(f"{field_name} must be an integer, got {value!r}") from e


def _require_mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise SchemaError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


@dataclass
class AddressRecord:
    """A payment address tracked for incoming funds (keys.json activeAddresses)."""

    address: str
    index: int | None = None
    eth_amount: str | None = None
    expected_amount: str | None = None
    crypto_type: str | None = None
    created_at: str | None = None
    expires_at: str | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    order_id: str | None = None
    fiat_amount: str | None = None
    fiat_currency: str | None = None
    amount: str | None = None
    timestamp: str | None = None
    amount_verified: bool = False

    # Document key -> attribute
    DOCUMENT_FIELDS = {
        "index": "index",
        "ethAmount": "eth_amount",
        "expectedAmount": "expected_amount",
        "cryptoType": "crypto_type",
        "createdAt": "created_at",
        "expiresAt": "expires_at",
        "status": "status",
        "orderId": "order_id",
        "fiatAmount": "fiat_amount",
        "fiatCurrency": "fiat_currency",
        "amount": "amount",
        "timestamp": "timestamp",
        "amountVerified": "amount_verified",
    }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AddressRecord":
        """Create from database row."""
        return cls(
            address=row["address"],
            index=row["addr_index"],
            eth_amount=row["eth_amount"],
            expected_amount=row["expected_amount"],
            crypto_type=row["crypto_type"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            status=TransactionStatus(row["status"]),
            order_id=row["order_id"],
            fiat_amount=row["fiat_amount"],
            fiat_currency=row["fiat_currency"],
            amount=row["amount"],
            timestamp=row["timestamp"],
            amount_verified=bool(row["amount_verified"]),
        )

    def to_row(self) -> tuple:
        """Values in column order of the transactions table."""
        return (
            self.address,
            self.index,
            self.eth_amount,
            self.expected_amount,
            self.crypto_type,
            self.created_at,
            self.expires_at,
            self.status.value,
            self.order_id,
            self.fiat_amount,
            self.fiat_currency,
            self.amount,
            self.timestamp,
            1 if self.amount_verified else 0,
        )

    @classmethod
    def from_document(cls, address: str, data: Any) -> "AddressRecord":
        """Create from an activeAddresses entry."""
        data = _require_mapping(data, f"activeAddresses[{address!r}]")
        return cls(
            address=address,
            index=_opt_int(data.get("index"), "index"),
            eth_amount=_opt_str(data.get("ethAmount")),
            expected_amount=_opt_str(data.get("expectedAmount")),
            crypto_type=_opt_str(data.get("cryptoType")),
            created_at=_opt_str(data.get("createdAt")),
            expires_at=_opt_str(data.get("expiresAt")),
            status=TransactionStatus.parse(data.get("status"), TransactionStatus.PENDING),
            order_id=_opt_str(data.get("orderId")),
            fiat_amount=_opt_str(data.get("fiatAmount")),
            fiat_currency=_opt_str(data.get("fiatCurrency")),
            amount=_opt_str(data.get("amount")),
            timestamp=_opt_str(data.get("timestamp")),
            amount_verified=bool(data.get("amountVerified", False)),
        )

    def to_document(self) -> dict[str, Any]:
        """activeAddresses entry (the address itself is the map key)."""
        return {
            "index": self.index,
            "ethAmount": self.eth_amount,
            "expectedAmount": self.expected_amount,
            "cryptoType": self.crypto_type,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "status": self.status.value,
            "orderId": self.order_id,
            "fiatAmount": self.fiat_amount,
            "fiatCurrency": self.fiat_currency,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "amountVerified": self.amount_verified,
        }


def generate_tx_id() -> str:
    """Ledger id for entries recorded without one."""
    suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=7))
    return f"tx_{int(time.time() * 1000)}_{suffix}"


@dataclass
class MerchantRecord:
    """Merchant ledger entry for a payment or fund release."""

    tx_id: str
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    tx_hash: str | None = None
    address: str | None = None
    amount: str | None = None
    eth_amount: str | None = None
    expected_amount: str | None = None
    timestamp: str | None = None
    crypto_type: str | None = None
    amount_verified: bool = False
    from_address: str | None = None
    to_address: str | None = None
    gas_used: int | None = None
    gas_price: str | None = None
    completed_at: str | None = None
    last_updated: str | None = None
    status_history: list[dict[str, Any]] = field(default_factory=list)

    DOCUMENT_FIELDS = {
        "txId": "tx_id",
        "txHash": "tx_hash",
        "address": "address",
        "amount": "amount",
        "ethAmount": "eth_amount",
        "expectedAmount": "expected_amount",
        "timestamp": "timestamp",
        "status": "status",
        "type": "type",
        "cryptoType": "crypto_type",
        "amountVerified": "amount_verified",
        "from": "from_address",
        "to": "to_address",
        "gasUsed": "gas_used",
        "gasPrice": "gas_price",
        "completedAt": "completed_at",
        "lastUpdated": "last_updated",
        "statusHistory": "status_history",
    }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MerchantRecord":
        """Create from database row."""
        history = row["status_history"] if "status_history" in row.keys() else None
        return cls(
            tx_id=row["tx_id"],
            tx_hash=row["tx_hash"],
            address=row["address"],
            amount=row["amount"],
            eth_amount=row["eth_amount"],
            expected_amount=row["expected_amount"],
            timestamp=row["timestamp"],
            status=TransactionStatus(row["status"]),
            type=TransactionType(row["type"]),
            crypto_type=row["crypto_type"],
            amount_verified=bool(row["amount_verified"]),
            from_address=row["from_address"],
            to_address=row["to_address"],
            gas_used=row["gas_used"],
            gas_price=row["gas_price"],
            completed_at=row["completed_at"],
            last_updated=row["last_updated"],
            status_history=json.loads(history) if history else [],
        )

    def to_row(self) -> tuple:
        """Values in column order of the merchant_transactions table."""
        return (
            self.tx_id,
            self.tx_hash,
            self.address,
            self.amount,
            self.eth_amount,
            self.expected_amount,
            self.timestamp,
            self.status.value,
            self.type.value,
            self.crypto_type,
            1 if self.amount_verified else 0,
            self.from_address,
            self.to_address,
            self.gas_used,
            self.gas_price,
            self.completed_at,
            self.last_updated,
            json.dumps(self.status_history),
        )

    @classmethod
    def from_document(cls, data: Any) -> "MerchantRecord":
        """Create from a merchant_transactions.json entry."""
        data = _require_mapping(data, "merchant transaction")
        tx_id = data.get("txId")
        if not tx_id:
            raise SchemaError("Merchant transaction without txId")
        try:
            tx_type = TransactionType(data.get("type"))
        except ValueError as e:
            raise SchemaError(f"Unknown merchant transaction type: {data.get('type')!r}") from e

        history = data.get("statusHistory") or []
        if not isinstance(history, list):
            raise SchemaError(f"statusHistory of {tx_id} must be a list")
        normalized_history = []
        for entry in history:
            entry = _require_mapping(entry, f"statusHistory entry of {tx_id}")
            normalized_history.append(
                {
                    "status": TransactionStatus.parse(entry.get("status")).value,
                    "timestamp": _opt_str(entry.get("timestamp")),
                }
            )

        return cls(
            tx_id=str(tx_id),
            tx_hash=_opt_str(data.get("txHash")),
            address=_opt_str(data.get("address")),
            amount=_opt_str(data.get("amount")),
            eth_amount=_opt_str(data.get("ethAmount")),
            expected_amount=_opt_str(data.get("expectedAmount")),
            timestamp=_opt_str(data.get("timestamp")),
            status=TransactionStatus.parse(data.get("status"), TransactionStatus.PENDING),
            type=tx_type,
            crypto_type=_opt_str(data.get("cryptoType")),
            amount_verified=bool(data.get("amountVerified", False)),
            from_address=_opt_str(data.get("from")),
            to_address=_opt_str(data.get("to")),
            gas_used=_opt_int(data.get("gasUsed"), "gasUsed"),
            gas_price=_opt_str(data.get("gasPrice")),
            completed_at=_opt_str(data.get("completedAt")),
            last_updated=_opt_str(data.get("lastUpdated")),
            status_history=normalized_history,
        )

    def to_document(self) -> dict[str, Any]:
        """merchant_transactions.json entry."""
        return {
            "txId": self.tx_id,
            "txHash": self.tx_hash,
            "address": self.address,
            "amount": self.amount,
            "ethAmount": self.eth_amount,
            "expectedAmount": self.expected_amount,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "type": self.type.value,
            "cryptoType": self.crypto_type,
            "amountVerified": self.amount_verified,
            "from": self.from_address,
            "to": self.to_address,
            "gasUsed": self.gas_used,
            "gasPrice": self.gas_price,
            "completedAt": self.completed_at,
            "lastUpdated": self.last_updated,
            "statusHistory": list(self.status_history),
        }


@dataclass
class ProcessorRecord:
    """Payment handled by the third-party card processor."""

    id: str
    order_id: str | None = None
    amount: int | None = None  # minor units
    currency: str | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    timestamp: str | None = None
    payment_method: str | None = None
    customer_email: str | None = None
    metadata: dict[str, Any] | None = None

    DOCUMENT_FIELDS = {
        "id": "id",
        "orderId": "order_id",
        "amount": "amount",
        "currency": "currency",
        "status": "status",
        "timestamp": "timestamp",
        "paymentMethod": "payment_method",
        "customerEmail": "customer_email",
        "metadata": "metadata",
    }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProcessorRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            amount=row["amount"],
            currency=row["currency"],
            status=TransactionStatus(row["status"]),
            timestamp=row["timestamp"],
            payment_method=row["payment_method"],
            customer_email=row["customer_email"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    def to_row(self) -> tuple:
        """Values in column order of the processor_transactions table."""
        return (
            self.id,
            self.order_id,
            self.amount,
            self.currency,
            self.status.value,
            self.timestamp,
            self.payment_method,
            self.customer_email,
            json.dumps(self.metadata) if self.metadata is not None else None,
        )

    @classmethod
    def from_document(cls, data: Any) -> "ProcessorRecord":
        """Create from a processor payments entry."""
        data = _require_mapping(data, "processor payment")
        payment_id = data.get("id")
        if not payment_id:
            raise SchemaError("Processor payment without id")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise SchemaError(f"metadata of payment {payment_id} must be an object")
        return cls(
            id=str(payment_id),
            order_id=_opt_str(data.get("orderId")),
            amount=_opt_int(data.get("amount"), "amount"),
            currency=_opt_str(data.get("currency")),
            status=TransactionStatus.parse(data.get("status"), TransactionStatus.PENDING),
            timestamp=_opt_str(data.get("timestamp")),
            payment_method=_opt_str(data.get("paymentMethod")),
            customer_email=_opt_str(data.get("customerEmail")),
            metadata=metadata,
        )

    def to_document(self) -> dict[str, Any]:
        """payments[] entry."""
        return {
            "id": self.id,
            "orderId": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "paymentMethod": self.payment_method,
            "customerEmail": self.customer_email,
            "metadata": self.metadata,
        }


class LedgerStore:
    """
    SQLite-based ledger store.

    The authoritative copy of all transactional state. Construct once and
    pass by reference to the repositories; tests build isolated instances
    on temporary paths.

    Thread-safe for single-writer scenarios: every operation opens its own
    connection and SQLite serialises writers.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True, timeout: float = 5.0):
        """
        Initialize the ledger store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            timeout: Seconds SQLite waits on a locked database
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Raises:
            StoreError: Wrapping any sqlite3 error; transient for lock/busy
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open ledger {self.db_path}: {e}", transient=True) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(
                f"Ledger operation failed: {e}",
                transient=isinstance(e, sqlite3.OperationalError),
            ) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Active payment addresses
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    address TEXT PRIMARY KEY,
                    addr_index INTEGER,
                    eth_amount TEXT,
                    expected_amount TEXT,
                    crypto_type TEXT,
                    created_at TEXT,
                    expires_at TEXT,
                    status TEXT NOT NULL,
                    order_id TEXT,
                    fiat_amount TEXT,
                    fiat_currency TEXT,
                    amount TEXT,
                    timestamp TEXT,
                    amount_verified INTEGER NOT NULL DEFAULT 0
                )
            """
            )

            # Merchant ledger
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS merchant_transactions (
                    tx_id TEXT PRIMARY KEY,
                    tx_hash TEXT,
                    address TEXT,
                    amount TEXT,
                    eth_amount TEXT,
                    expected_amount TEXT,
                    timestamp TEXT,
                    status TEXT NOT NULL,
                    type TEXT NOT NULL,
                    crypto_type TEXT,
                    amount_verified INTEGER NOT NULL DEFAULT 0,
                    from_address TEXT,
                    to_address TEXT,
                    gas_used INTEGER,
                    gas_price TEXT,
                    completed_at TEXT,
                    last_updated TEXT
                )
            """
            )

            # Card processor payments
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processor_transactions (
                    id TEXT PRIMARY KEY,
                    order_id TEXT,
                    amount INTEGER,
                    currency TEXT,
                    status TEXT NOT NULL,
                    timestamp TEXT,
                    payment_method TEXT,
                    customer_email TEXT,
                    metadata TEXT  -- JSON object
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_merchant_address ON merchant_transactions(address)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_processor_order ON processor_transactions(order_id)"
            )

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    def table_counts(self) -> dict[str, int]:
        """Row counts per ledger table."""
        counts = {}
        with self._transaction() as conn:
            for table in ("transactions", "merchant_transactions", "processor_transactions"):
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return counts

    def is_empty(self) -> bool:
        """True when no ledger table holds any row."""
        return not any(self.table_counts().values())
