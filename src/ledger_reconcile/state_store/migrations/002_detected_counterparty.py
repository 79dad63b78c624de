"""
Migration 002: detected counterparty on bank lines.

Keeps the best counterparty name found by the candidate resolver and its
tier score, so operators can see why a candidate list was proposed.
"""

import sqlite3

VERSION = 2
NAME = "detected_counterparty"


def upgrade(conn: sqlite3.Connection) -> None:
    columns = [row[1] for row in conn.execute("PRAGMA table_info(bank_transactions)").fetchall()]

    if "detected_counterparty" not in columns:
        conn.execute("ALTER TABLE bank_transactions ADD COLUMN detected_counterparty TEXT")
    if "detection_score" not in columns:
        conn.execute("ALTER TABLE bank_transactions ADD COLUMN detection_score INTEGER")


def downgrade(conn: sqlite3.Connection) -> None:
    conn.execute("ALTER TABLE bank_transactions DROP COLUMN detection_score")
    conn.execute("ALTER TABLE bank_transactions DROP COLUMN detected_counterparty")
