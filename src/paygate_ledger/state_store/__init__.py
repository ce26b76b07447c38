"""
Ledger store (SQLite-based).

The authoritative copy of the gateway's transactional state:
- Active payment addresses
- Merchant ledger entries (payments and releases)
- Card processor payments

The JSON documents under the data directory are projections of these
tables; see paygate_ledger.sync.
"""

from .repositories import (
    AddressRepository,
    MerchantTransactionRepository,
    ProcessorTransactionRepository,
)
from .sqlite_store import (
    AddressRecord,
    LedgerStore,
    MerchantRecord,
    ProcessorRecord,
    TransactionStatus,
    TransactionType,
    generate_tx_id,
    utc_now_iso,
)

__all__ = [
    "AddressRecord",
    "AddressRepository",
    "LedgerStore",
    "MerchantRecord",
    "MerchantTransactionRepository",
    "ProcessorRecord",
    "ProcessorTransactionRepository",
    "TransactionStatus",
    "TransactionType",
    "generate_tx_id",
    "utc_now_iso",
]
