"""
Error taxonomy for the reconciliation core.

Every failure surfaced by the engine is one of these. Callers can rely on:
- ValidationError: input rejected synchronously, nothing persisted
- NotFoundError: unknown id, no state change
- ConflictError: transition guard violated, no state change
- SequenceExhausted: identifier counter overflow, import must stop
- TransientStoreError: lock contention / stale read, safe to retry

A PARTIAL match is NOT an error. It is a normal outcome of matching.
"""


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""

    pass


class ValidationError(ReconciliationError):
    """Input is malformed (bad rule, negative amount, debit and credit both set...)."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class NotFoundError(ReconciliationError):
    """Referenced transaction, batch, rule or document does not exist."""

    def __init__(self, entity: str, key: object):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class ConflictError(ReconciliationError):
    """Operation not allowed in the current state."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class SequenceExhausted(ReconciliationError):
    """Identifier counter exceeded its scheme's capacity."""

    def __init__(self, scope: str, limit: int):
        self.scope = scope
        self.limit = limit
        super().__init__(f"Sequence exhausted for {scope}: limit is {limit}")


class TransientStoreError(ReconciliationError):
    """Persistence failed for a retryable reason (busy database, concurrent update)."""

    pass
