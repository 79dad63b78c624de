"""
Migration runner for the ledger schema.

Migration modules are named {version}_{name}.py (e.g. 001_vat_breakdown.py)
and define:
- VERSION: int
- NAME: str
- upgrade(conn) -> None
- downgrade(conn) -> None  (optional)
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

PACKAGE = "ledger_reconcile.state_store.migrations"


@dataclass
class Migration:
    """A single schema step."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Discover migration modules beside this file, sorted by version."""
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{PACKAGE}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """Applies and reverts migrations on one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        rows = self.conn.execute("SELECT version FROM migrations").fetchall()
        return {row[0] for row in rows}

    def get_current_version(self) -> int:
        """Highest applied version (0 when none)."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result or 0

    def apply_migration(self, migration: Migration) -> None:
        logger.info("Applying migration %03d_%s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, applied_at),
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            logger.error("Migration %03d_%s failed", migration.version, migration.name)
            raise

    def rollback_migration(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version} ({migration.name}) cannot be reverted"
            )
        logger.info("Reverting migration %03d_%s", migration.version, migration.name)
        try:
            migration.downgrade(self.conn)
            self.conn.execute(
                "DELETE FROM migrations WHERE version = ?", (migration.version,)
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            logger.error("Reverting migration %03d_%s failed", migration.version, migration.name)
            raise

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns the applied versions."""
        applied = self.get_applied_versions()
        done = []
        for migration in get_all_migrations():
            if migration.version not in applied:
                self.apply_migration(migration)
                done.append(migration.version)
        if done:
            logger.info("Applied %d migration(s): %s", len(done), done)
        else:
            logger.debug("Schema up to date")
        return done

    def migrate_to(self, target_version: int) -> None:
        """Upgrade or downgrade until target_version is the current version."""
        current = self.get_current_version()
        by_version = {m.version: m for m in get_all_migrations()}

        if target_version > current:
            for version in range(current + 1, target_version + 1):
                if version in by_version:
                    self.apply_migration(by_version[version])
        else:
            for version in range(current, target_version, -1):
                if version in by_version:
                    self.rollback_migration(by_version[version])
