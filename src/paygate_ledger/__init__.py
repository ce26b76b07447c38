"""
Payment gateway ledger: SQLite store ↔ JSON document projection.

Keeps the authoritative SQLite ledger and the JSON documents consumed by the
rest of the gateway in agreement, detects corruption in either surface, and
manages timestamped backups with tiered retention.
"""

__version__ = "0.1.0"
