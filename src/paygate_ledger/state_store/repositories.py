"""
Repositories over the ledger tables.

One repository per record type. Each takes the LedgerStore by reference and
offers the same CRUD surface keyed on the record's natural key. Patches for
update() are document-shaped (camelCase keys) so they pass through the same
validation as ingested documents.

Calls that fail with a transient StoreError (locked/busy database) are
retried a bounded number of times before the error reaches the caller.
"""

import logging
import sqlite3
from collections.abc import Iterable
from typing import Any

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import StoreError
from .sqlite_store import (
    AddressRecord,
    LedgerStore,
    MerchantRecord,
    ProcessorRecord,
    TransactionStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, StoreError) and exc.transient


_retry_transient = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=0.5),
    reraise=True,
)


class _Repository:
    """Shared CRUD plumbing; subclasses define table layout and record mapping."""

    table: str = ""
    key_column: str = ""
    columns: tuple[str, ...] = ()

    def __init__(self, store: LedgerStore):
        self.store = store

    # Record mapping hooks

    def _from_row(self, row: sqlite3.Row) -> Any:
        raise NotImplementedError

    def _key_of(self, record: Any) -> str:
        raise NotImplementedError

    def _merge(self, record: Any, patch: dict[str, Any]) -> Any:
        raise NotImplementedError

    # SQL helpers

    @property
    def _insert_sql(self) -> str:
        placeholders = ", ".join("?" for _ in self.columns)
        return (
            f"INSERT OR REPLACE INTO {self.table} ({', '.join(self.columns)}) "
            f"VALUES ({placeholders})"
        )

    def _select(self, conn: sqlite3.Connection, key: str) -> sqlite3.Row | None:
        return conn.execute(
            f"SELECT * FROM {self.table} WHERE {self.key_column} = ?", (key,)
        ).fetchone()

    # Public API

    @_retry_transient
    def get_all(self) -> list:
        """All records ordered by natural key."""
        with self.store._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.table} ORDER BY {self.key_column}"
            ).fetchall()
        return [self._from_row(row) for row in rows]

    @_retry_transient
    def get_by_key(self, key: str):
        """Single record or None."""
        with self.store._transaction() as conn:
            row = self._select(conn, key)
        return self._from_row(row) if row else None

    @_retry_transient
    def add(self, record) -> None:
        """Insert or replace a record by natural key."""
        with self.store._transaction() as conn:
            conn.execute(self._insert_sql, record.to_row())
        logger.debug(f"Upserted {self.table} row {self._key_of(record)}")

    @_retry_transient
    def update(self, key: str, patch: dict[str, Any]) -> bool:
        """
        Merge a document-shaped patch into an existing record.

        Returns:
            False if no record has this key

        Raises:
            SchemaError: If the merged record is invalid (nothing is written)
        """
        with self.store._transaction() as conn:
            row = self._select(conn, key)
            if row is None:
                return False
            merged = self._merge(self._from_row(row), patch)
            conn.execute(self._insert_sql, merged.to_row())
        return True

    @_retry_transient
    def delete(self, key: str) -> bool:
        """Delete by natural key. Returns False if nothing was deleted."""
        with self.store._transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE {self.key_column} = ?", (key,))
            return cursor.rowcount > 0

    @_retry_transient
    def replace_all(self, records: Iterable) -> int:
        """
        Replace the whole table in one transaction.

        Returns:
            Number of records written
        """
        records = list(records)
        with self.store._transaction() as conn:
            conn.execute(f"DELETE FROM {self.table}")
            conn.executemany(self._insert_sql, [r.to_row() for r in records])
        logger.debug(f"Replaced {self.table} with {len(records)} rows")
        return len(records)

    @_retry_transient
    def count(self) -> int:
        with self.store._transaction() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]


class AddressRepository(_Repository):
    """Active payment addresses (table `transactions`)."""

    table = "transactions"
    key_column = "address"
    columns = (
        "address",
        "addr_index",
        "eth_amount",
        "expected_amount",
        "crypto_type",
        "created_at",
        "expires_at",
        "status",
        "order_id",
        "fiat_amount",
        "fiat_currency",
        "amount",
        "timestamp",
        "amount_verified",
    )

    def _from_row(self, row: sqlite3.Row) -> AddressRecord:
        return AddressRecord.from_row(row)

    def _key_of(self, record: AddressRecord) -> str:
        return record.address

    def _merge(self, record: AddressRecord, patch: dict[str, Any]) -> AddressRecord:
        document = record.to_document()
        document.update(patch)
        return AddressRecord.from_document(record.address, document)


class MerchantTransactionRepository(_Repository):
    """Merchant ledger entries (table `merchant_transactions`)."""

    table = "merchant_transactions"
    key_column = "tx_id"
    columns = (
        "tx_id",
        "tx_hash",
        "address",
        "amount",
        "eth_amount",
        "expected_amount",
        "timestamp",
        "status",
        "type",
        "crypto_type",
        "amount_verified",
        "from_address",
        "to_address",
        "gas_used",
        "gas_price",
        "completed_at",
        "last_updated",
        "status_history",
    )

    def _from_row(self, row: sqlite3.Row) -> MerchantRecord:
        return MerchantRecord.from_row(row)

    def _key_of(self, record: MerchantRecord) -> str:
        return record.tx_id

    def _merge(self, record: MerchantRecord, patch: dict[str, Any]) -> MerchantRecord:
        document = record.to_document()
        patch = {k: v for k, v in patch.items() if k not in ("txId", "statusHistory")}
        document.update(patch)
        merged = MerchantRecord.from_document(document)

        now = utc_now_iso()
        if "status" in patch and merged.status != record.status:
            merged.status_history = record.status_history + [
                {"status": merged.status.value, "timestamp": now}
            ]
        if "lastUpdated" not in patch:
            merged.last_updated = now
        return merged

    def add(self, record: MerchantRecord) -> None:
        """Insert or replace; a fresh entry starts its history with its status."""
        if not record.status_history:
            record.status_history = [
                {"status": record.status.value, "timestamp": record.timestamp or utc_now_iso()}
            ]
        super().add(record)

    @_retry_transient
    def get_by_address(self, address: str) -> list[MerchantRecord]:
        """Entries for a payment address, ordered by tx id."""
        with self.store._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM merchant_transactions WHERE address = ? ORDER BY tx_id",
                (address,),
            ).fetchall()
        return [MerchantRecord.from_row(row) for row in rows]

    @_retry_transient
    def get_by_status(self, status: TransactionStatus) -> list[MerchantRecord]:
        with self.store._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM merchant_transactions WHERE status = ? ORDER BY tx_id",
                (status.value,),
            ).fetchall()
        return [MerchantRecord.from_row(row) for row in rows]


class ProcessorTransactionRepository(_Repository):
    """Card processor payments (table `processor_transactions`)."""

    table = "processor_transactions"
    key_column = "id"
    columns = (
        "id",
        "order_id",
        "amount",
        "currency",
        "status",
        "timestamp",
        "payment_method",
        "customer_email",
        "metadata",
    )

    def _from_row(self, row: sqlite3.Row) -> ProcessorRecord:
        return ProcessorRecord.from_row(row)

    def _key_of(self, record: ProcessorRecord) -> str:
        return record.id

    def _merge(self, record: ProcessorRecord, patch: dict[str, Any]) -> ProcessorRecord:
        document = record.to_document()
        document.update({k: v for k, v in patch.items() if k != "id"})
        return ProcessorRecord.from_document(document)

    @_retry_transient
    def get_by_order_id(self, order_id: str) -> list[ProcessorRecord]:
        """Payments for an order, ordered by id."""
        with self.store._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM processor_transactions WHERE order_id = ? ORDER BY id",
                (order_id,),
            ).fetchall()
        return [ProcessorRecord.from_row(row) for row in rows]


__all__ = [
    "AddressRepository",
    "MerchantTransactionRepository",
    "ProcessorTransactionRepository",
]
