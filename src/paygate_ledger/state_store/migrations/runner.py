"""
Schema upgrades for the ledger database.

Each upgrade lives in a module named NNN_<name>.py next to this file and
exposes VERSION, NAME and upgrade(conn). Applied versions are recorded in
ledger_migrations so that reopening a database only runs what is new.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..sqlite_store import utc_now_iso

logger = logging.getLogger(__name__)

_MODULE_GLOB = "[0-9][0-9][0-9]_*.py"


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]


def get_all_migrations() -> list[Migration]:
    """Load every upgrade module in this package, oldest first."""
    found: dict[int, Migration] = {}
    for path in sorted(Path(__file__).parent.glob(_MODULE_GLOB)):
        module = importlib.import_module(f"{__package__}.{path.stem}")
        version = getattr(module, "VERSION", None)
        upgrade = getattr(module, "upgrade", None)
        if not isinstance(version, int) or upgrade is None:
            logger.warning(f"Ignoring {path.name}: no VERSION/upgrade")
            continue
        if version in found:
            raise RuntimeError(f"Duplicate ledger schema version {version} in {path.name}")
        found[version] = Migration(version, getattr(module, "NAME", path.stem[4:]), upgrade)
    return [found[v] for v in sorted(found)]


class MigrationRunner:
    """Brings a ledger connection up to the newest schema version."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        conn.execute(
            "CREATE TABLE IF NOT EXISTS ledger_migrations ("
            " version INTEGER PRIMARY KEY,"
            " name TEXT NOT NULL,"
            " applied_at TEXT NOT NULL)"
        )
        conn.commit()

    def get_current_version(self) -> int:
        """Highest applied version, 0 for a fresh database."""
        row = self.conn.execute("SELECT MAX(version) FROM ledger_migrations").fetchone()
        return row[0] or 0

    def _apply(self, migration: Migration) -> None:
        logger.info(f"Upgrading ledger schema to v{migration.version} ({migration.name})")
        try:
            migration.upgrade(self.conn)
            self.conn.execute(
                "INSERT INTO ledger_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, utc_now_iso()),
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            logger.error(f"Ledger schema upgrade v{migration.version} failed", exc_info=True)
            raise

    def run_pending(self) -> list[int]:
        """Apply outstanding upgrades in order; returns the versions applied."""
        done = {
            row[0] for row in self.conn.execute("SELECT version FROM ledger_migrations")
        }
        applied = []
        for migration in get_all_migrations():
            if migration.version in done:
                continue
            self._apply(migration)
            applied.append(migration.version)

        if applied:
            logger.info(f"Ledger schema now at v{applied[-1]}")
        return applied
