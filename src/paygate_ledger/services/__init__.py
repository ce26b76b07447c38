"""Services built on the ledger: mutation facade, operations and scheduling."""

from paygate_ledger.services.data_manager import DataManager
from paygate_ledger.services.operations import DatabaseOperations
from paygate_ledger.services.scheduler import BackupScheduler

__all__ = ["BackupScheduler", "DataManager", "DatabaseOperations"]
