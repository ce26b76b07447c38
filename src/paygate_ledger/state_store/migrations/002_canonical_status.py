"""
Migration 002: Canonicalise legacy status values.

Older ledgers stored booleans and free-form strings in the status column.
Rewrite them to the enum values so every row reads back cleanly.
"""

import sqlite3

VERSION = 2
NAME = "canonical_status"

LEGACY = {
    "true": "confirmed",
    "1": "confirmed",
    "success": "confirmed",
    "completed": "confirmed",
    "false": "failed",
    "0": "failed",
}

TABLES = ("transactions", "merchant_transactions", "processor_transactions")


def upgrade(conn: sqlite3.Connection) -> None:
    """Rewrite legacy status values in all ledger tables."""
    for table in TABLES:
        for old, new in LEGACY.items():
            conn.execute(
                f"UPDATE {table} SET status = ? WHERE LOWER(CAST(status AS TEXT)) = ?",
                (new, old),
            )
