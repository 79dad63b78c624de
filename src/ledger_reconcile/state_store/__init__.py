"""State store for the reconciliation ledger."""

from .sqlite_store import AuditNote, StateStore, TransitionOutcome

__all__ = ["AuditNote", "StateStore", "TransitionOutcome"]
