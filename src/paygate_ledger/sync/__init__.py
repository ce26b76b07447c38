"""
Store <-> document synchronisation.

The SyncEngine projects ledger tables into the JSON documents and ingests
edited documents back; the DocumentWatcher notices external edits.
"""

from .engine import SyncEngine, SyncReport
from .watcher import DocumentWatcher

__all__ = ["DocumentWatcher", "SyncEngine", "SyncReport"]
