"""
Migration runner for versioned database schema changes.

Migrations are named with format: {version}_{name}.py
E.g., 001_initial_schema.py, 002_immutability_guards.py

Each migration must define:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None

The ledger keeps exactly four tables, so applied versions are tracked in
`PRAGMA user_version` and mirrored into sync_state["schema_version"] rather
than in a bookkeeping table of their own.

Each migration runs inside one BEGIN IMMEDIATE transaction. upgrade() must
use conn.execute (executescript would commit early).
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"


@dataclass
class Migration:
    """Represents a database migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]


def get_all_migrations() -> list[Migration]:
    """
    Load all migrations from the migrations directory.

    Returns migrations sorted by version.

    Raises:
        ImportError, AttributeError: If a migration module is broken
    """
    migrations = []
    migrations_dir = Path(__file__).parent

    for py_file in sorted(migrations_dir.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(version=module.VERSION, name=module.NAME, upgrade=module.upgrade)
        )

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Runs database migrations in order.

    The connection must be in autocommit mode (isolation_level=None); the
    runner manages its own transactions.
    """

    def __init__(self, conn: sqlite3.Connection):
        """Initialize with a database connection."""
        self.conn = conn

    def get_current_version(self) -> int:
        """Get the highest applied migration version."""
        return int(self.conn.execute("PRAGMA user_version").fetchone()[0])

    def apply_migration(self, migration: Migration) -> None:
        """Apply a single migration atomically."""
        logger.info(f"Applying migration {migration.version}: {migration.name}")

        self.conn.execute("BEGIN IMMEDIATE")
        try:
            migration.upgrade(self.conn)

            # PRAGMA does not accept bound parameters
            self.conn.execute(f"PRAGMA user_version = {int(migration.version)}")
            now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                """
                INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
            """,
                (SCHEMA_VERSION_KEY, str(migration.version), now),
            )
            self.conn.execute("COMMIT")
            logger.info(f"Migration {migration.version} applied successfully")

        except Exception as e:
            self.conn.execute("ROLLBACK")
            logger.error(f"Migration {migration.version} failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """
        Run all pending migrations.

        Returns list of applied migration versions.
        """
        current = self.get_current_version()
        pending = [m for m in get_all_migrations() if m.version > current]

        applied_versions = []
        for migration in pending:
            self.apply_migration(migration)
            applied_versions.append(migration.version)

        if applied_versions:
            logger.info(f"Applied {len(applied_versions)} migrations: {applied_versions}")
        else:
            logger.debug("No pending migrations")

        return applied_versions
