"""
Migration 001: VAT breakdown columns on bank lines.

Stores the net / VAT / gross decomposition recorded for a reconciled line.
"""

import sqlite3

VERSION = 1
NAME = "vat_breakdown"

COLUMNS = ("total_net", "total_vat", "total_gross")


def _columns(conn: sqlite3.Connection) -> list[str]:
    return [row[1] for row in conn.execute("PRAGMA table_info(bank_transactions)").fetchall()]


def upgrade(conn: sqlite3.Connection) -> None:
    existing = _columns(conn)
    for column in COLUMNS:
        if column not in existing:
            conn.execute(f"ALTER TABLE bank_transactions ADD COLUMN {column} TEXT")


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the VAT columns (needs SQLite >= 3.35)."""
    existing = _columns(conn)
    for column in COLUMNS:
        if column in existing:
            conn.execute(f"ALTER TABLE bank_transactions DROP COLUMN {column}")
