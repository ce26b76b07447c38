"""
Data-mutation facade.

The one entry point request handlers use to change or read transactional
state. Every mutation writes the store first, then re-projects the
documents, then returns; the sync engine's exclusive lock is held across
both steps so concurrent mutations queue instead of interleaving.

Inputs and outputs are document-shaped dicts (camelCase keys), the same
shape the JSON files use.
"""

import logging
from typing import Any

from ..errors import LedgerError, StoreError, SyncConflict
from ..state_store.repositories import (
    AddressRepository,
    MerchantTransactionRepository,
    ProcessorTransactionRepository,
)
from ..state_store.sqlite_store import (
    AddressRecord,
    MerchantRecord,
    ProcessorRecord,
    TransactionType,
    generate_tx_id,
    utc_now_iso,
)
from ..sync.engine import SyncEngine

logger = logging.getLogger(__name__)

MERCHANT_TYPES = {TransactionType.PAYMENT.value, TransactionType.RELEASE.value}
PROCESSOR_TYPES = {"processor", "stripe"}

# Fields copied from a payment onto the active address it pays into
_ADDRESS_FIELDS_FROM_PAYMENT = (
    "status",
    "amount",
    "ethAmount",
    "expectedAmount",
    "cryptoType",
    "timestamp",
    "amountVerified",
)


def classify(tx: dict[str, Any]) -> str | None:
    """
    Decide which ledger a transaction dict belongs to.

    Returns:
        "merchant", "processor" or None if it cannot be told
    """
    tx_type = tx.get("type")
    if tx_type in MERCHANT_TYPES:
        return "merchant"
    if tx_type in PROCESSOR_TYPES:
        return "processor"
    if tx_type is not None:
        return None
    if "txId" in tx or "txHash" in tx:
        return "merchant"
    if "id" in tx and ("orderId" in tx or "currency" in tx):
        return "processor"
    return None


class DataManager:
    """Facade over the repositories and the sync engine."""

    def __init__(
        self,
        addresses: AddressRepository,
        merchants: MerchantTransactionRepository,
        processors: ProcessorTransactionRepository,
        engine: SyncEngine,
    ):
        self.addresses = addresses
        self.merchants = merchants
        self.processors = processors
        self.engine = engine

    def _project(self) -> None:
        # Failures are reported to the monitor by the engine; the store write stands
        report = self.engine.project_store_to_documents()
        if not report.success:
            logger.warning(f"Projection after mutation incomplete: {report.errors}")

    # Mutations

    def record_transaction(self, tx: dict[str, Any]) -> bool:
        """Add a merchant or processor transaction and re-project."""
        kind = classify(tx)
        if kind is None:
            logger.warning(f"Unknown transaction type: {tx.get('type')!r}")
            return False

        try:
            with self.engine.exclusive():
                if kind == "merchant":
                    self._record_merchant(tx)
                else:
                    document = dict(tx)
                    document.pop("type", None)
                    record = ProcessorRecord.from_document(document)
                    self.processors.add(record)
                    logger.info(f"Recorded processor payment {record.id}")
                self._project()
        except LedgerError as e:
            logger.error(f"Error recording transaction: {e}")
            return False
        return True

    def _record_merchant(self, tx: dict[str, Any]) -> None:
        document = dict(tx)
        if not document.get("txId"):
            document["txId"] = generate_tx_id()
        document.setdefault("timestamp", utc_now_iso())
        record = MerchantRecord.from_document(document)
        self.merchants.add(record)
        logger.info(f"Recorded {record.type.value} {record.tx_id}")

        # Address-scoped readers expect every paid address to be tracked
        if record.type == TransactionType.PAYMENT and record.address:
            if self.addresses.get_by_key(record.address) is None:
                address_doc = {
                    k: document[k] for k in _ADDRESS_FIELDS_FROM_PAYMENT if k in document
                }
                address_doc["status"] = record.status.value
                address_doc.setdefault("createdAt", record.timestamp)
                self.addresses.add(AddressRecord.from_document(record.address, address_doc))
                logger.info(f"Registered active address {record.address} from payment")

    def update_transaction(self, key: str, patch: dict[str, Any]) -> bool:
        """Merge a patch into an existing transaction and re-project."""
        kind = classify(patch) if "type" in patch else None
        patch = {k: v for k, v in patch.items() if not (k == "type" and v in PROCESSOR_TYPES)}

        try:
            with self.engine.exclusive():
                if kind is None:
                    if self.merchants.get_by_key(key) is not None:
                        kind = "merchant"
                    elif self.processors.get_by_key(key) is not None:
                        kind = "processor"
                    else:
                        logger.warning(f"No transaction with key {key}")
                        return False

                repository = self.merchants if kind == "merchant" else self.processors
                if not repository.update(key, patch):
                    logger.warning(f"No {kind} transaction with key {key}")
                    return False
                self._project()
        except LedgerError as e:
            logger.error(f"Error updating transaction {key}: {e}")
            return False

        logger.info(f"Updated {kind} transaction {key}")
        return True

    def delete_transaction(self, key: str, tx_type: str) -> bool:
        """Delete a transaction of the given type and re-project."""
        if tx_type in MERCHANT_TYPES:
            repository = self.merchants
        elif tx_type in PROCESSOR_TYPES:
            repository = self.processors
        else:
            logger.warning(f"Unknown transaction type: {tx_type!r}")
            return False

        try:
            with self.engine.exclusive():
                if not repository.delete(key):
                    logger.warning(f"No {tx_type} transaction with key {key}")
                    return False
                self._project()
        except (StoreError, SyncConflict) as e:
            logger.error(f"Error deleting transaction {key}: {e}")
            return False

        logger.info(f"Deleted {tx_type} transaction {key}")
        return True

    def update_active_address(self, address: str, data: dict[str, Any]) -> bool:
        """Create or update an active address and re-project."""
        if not address:
            logger.warning("Refusing to update an active address without an address")
            return False

        try:
            with self.engine.exclusive():
                if not self.addresses.update(address, data):
                    self.addresses.add(AddressRecord.from_document(address, data))
                self._project()
        except LedgerError as e:
            logger.error(f"Error updating active address {address}: {e}")
            return False

        logger.info(f"Updated active address {address}")
        return True

    def delete_active_address(self, address: str) -> bool:
        """Stop tracking an address and re-project."""
        try:
            with self.engine.exclusive():
                if not self.addresses.delete(address):
                    logger.warning(f"No active address {address}")
                    return False
                self._project()
        except (StoreError, SyncConflict) as e:
            logger.error(f"Error deleting active address {address}: {e}")
            return False

        logger.info(f"Deleted active address {address}")
        return True

    # Reads

    def get_active_addresses(self) -> dict[str, dict[str, Any]]:
        try:
            return {r.address: r.to_document() for r in self.addresses.get_all()}
        except StoreError as e:
            logger.error(f"Error getting active addresses: {e}")
            return {}

    def get_merchant_transactions(self) -> list[dict[str, Any]]:
        try:
            return [r.to_document() for r in self.merchants.get_all()]
        except StoreError as e:
            logger.error(f"Error getting merchant transactions: {e}")
            return []

    def get_merchant_transactions_by_address(self, address: str) -> list[dict[str, Any]]:
        try:
            return [r.to_document() for r in self.merchants.get_by_address(address)]
        except StoreError as e:
            logger.error(f"Error getting merchant transactions for {address}: {e}")
            return []

    def get_processor_transactions(self) -> list[dict[str, Any]]:
        try:
            return [r.to_document() for r in self.processors.get_all()]
        except StoreError as e:
            logger.error(f"Error getting processor transactions: {e}")
            return []


__all__ = ["DataManager", "classify"]
