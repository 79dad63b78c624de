"""
Versioned schema migrations for the reconciliation ledger.

Migrations are applied in version order and recorded in the
migrations table.
"""

from .runner import MigrationRunner, get_all_migrations

__all__ = ["MigrationRunner", "get_all_migrations"]
