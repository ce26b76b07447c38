"""
Migration 001: Add status_history to merchant_transactions.

Every status change of a merchant ledger entry is appended to a JSON list
of {status, timestamp} objects.
"""

import sqlite3

VERSION = 1
NAME = "status_history"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add status_history column."""
    cursor = conn.execute("PRAGMA table_info(merchant_transactions)")
    columns = [row[1] for row in cursor.fetchall()]

    if "status_history" not in columns:
        conn.execute(
            "ALTER TABLE merchant_transactions ADD COLUMN status_history TEXT NOT NULL DEFAULT '[]'"
        )
