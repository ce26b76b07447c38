"""
Database migrations module.

Versioned, ordered schema changes for the ledger store, tracked in the
ledger_migrations table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
