"""
SQLite-based state store implementation.

Tables:
- sequence_counters: Atomic per-day / per-month identifier counters
- batches: One row per imported statement period
- bank_transactions: Bank lines with status and match payload
- match_links: One row per (line, matched document)
- matching_rules: Automatic matching rules
- documents: Read-only projection of invoices / subscriptions / charge declarations
- document_links: Link notifications received for the local projection
- audit_notes: Operator notes and lifecycle events
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

from ..errors import ConflictError, NotFoundError, TransientStoreError
from ..schemas.documents import DocumentCandidate
from ..schemas.identifiers import batch_scope, line_scope, next_batch_id, next_line_id
from ..schemas.ledger import (
    BankTransaction,
    Batch,
    BatchStatus,
    DocumentKind,
    DocumentRef,
    MatchMode,
    MatchPayload,
    StatementLine,
    TransactionStatus,
    VatBreakdown,
)
from ..schemas.rules import Direction, MatchingRule

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _decimal_or_none(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _payload_from_row(row: sqlite3.Row) -> Optional[MatchPayload]:
    if not row["match_refs"]:
        return None
    items = json.loads(row["match_refs"])
    mode = MatchMode(row["match_mode"] or MatchMode.SINGLE.value)
    if mode == MatchMode.INVERSE:
        return MatchPayload.inverse(items[0]["line_id"]) if items else None
    refs = tuple(DocumentRef.from_dict(item) for item in items)
    if not refs:
        return None
    return MatchPayload(refs=refs, mode=mode)


def transaction_from_row(row: sqlite3.Row) -> BankTransaction:
    """Create a BankTransaction from a database row."""
    keys = row.keys()
    vat = None
    if "total_gross" in keys and row["total_gross"] is not None:
        vat = VatBreakdown(
            total_net=Decimal(row["total_net"]),
            total_vat=Decimal(row["total_vat"]),
            total_gross=Decimal(row["total_gross"]),
        )
    return BankTransaction(
        line_id=row["line_id"],
        batch_id=row["batch_id"],
        value_date=date.fromisoformat(row["value_date"]),
        label=row["label"],
        debit=Decimal(row["debit"]),
        credit=Decimal(row["credit"]),
        status=TransactionStatus(row["status"]),
        match=_payload_from_row(row),
        notes=row["notes"],
        match_source=row["match_source"],
        position=row["position"],
        source_key=row["source_key"],
        vat=vat,
        detected_counterparty=row["detected_counterparty"] if "detected_counterparty" in keys else None,
        detection_score=row["detection_score"] if "detection_score" in keys else None,
    )


def batch_from_row(row: sqlite3.Row) -> Batch:
    """Create a Batch (without transactions) from a database row."""
    return Batch(
        batch_id=row["batch_id"],
        period_start=date.fromisoformat(row["period_start"]),
        period_end=date.fromisoformat(row["period_end"]),
        status=BatchStatus(row["status"]),
        total_count=row["total_count"],
        reconciled_count=row["reconciled_count"],
        import_complete=bool(row["import_complete"]),
        version=row["version"],
    )


def rule_from_row(row: sqlite3.Row) -> MatchingRule:
    """Create a MatchingRule from a database row."""
    return MatchingRule(
        rule_id=row["rule_id"],
        name=row["name"],
        direction=Direction(row["direction"]),
        keywords=json.loads(row["keywords"]),
        document_kind=DocumentKind(row["document_kind"]),
        document_id=row["document_id"],
        active=bool(row["active"]),
        priority=row["priority"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def document_from_row(row: sqlite3.Row) -> DocumentCandidate:
    """Create a DocumentCandidate from a database row."""
    return DocumentCandidate(
        kind=DocumentKind(row["document_kind"]),
        id=row["document_id"],
        counterparty=row["counterparty"],
        amount_due=Decimal(row["amount_due"]),
        payment_status=row["payment_status"],
        reference=row["reference"],
        issued_on=row["issued_on"],
        vat_rate_label=row["vat_rate_label"],
    )


@dataclass
class AuditNote:
    """Record of an operator note or lifecycle event."""

    id: int
    batch_id: str
    line_id: Optional[str]
    action: str
    note: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditNote":
        """Create from database row."""
        return cls(
            id=row["id"],
            batch_id=row["batch_id"],
            line_id=row["line_id"],
            action=row["action"],
            note=row["note"],
            created_at=row["created_at"],
        )


@dataclass
class TransitionOutcome:
    """State persisted by a single transition."""

    transaction: BankTransaction
    batch: Batch
    batch_auto_validated: bool = False


class StateStore:
    """
    SQLite-based state store for the reconciliation ledger.

    Provides persistent tracking of:
    - Identifier counters (atomic increment-and-read)
    - Batches and their bank lines
    - Match links and rules
    - Document projection and link notifications
    - Audit notes

    Writes touching a batch aggregate run under BEGIN IMMEDIATE, which
    serializes counter updates across connections and processes.
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: Path | str,
        run_migrations: bool = True,
        busy_timeout: float = 5.0,
    ):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            busy_timeout: Seconds to wait for a database lock before failing
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.

        Args:
            immediate: Take the write lock up front (BEGIN IMMEDIATE)

        Raises:
            TransientStoreError: If the database stayed locked past the busy timeout
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise TransientStoreError(f"Database busy: {e}") from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sequence_counters (
                    scope TEXT PRIMARY KEY,  -- line:YYYYMMDD or batch:YYMM
                    value INTEGER NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS batches (
                    batch_id TEXT PRIMARY KEY,
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    status TEXT NOT NULL,
                    total_count INTEGER NOT NULL DEFAULT 0,
                    reconciled_count INTEGER NOT NULL DEFAULT 0,
                    import_complete INTEGER NOT NULL DEFAULT 0,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (reconciled_count >= 0 AND reconciled_count <= total_count)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bank_transactions (
                    line_id TEXT PRIMARY KEY,
                    batch_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    source_key TEXT NOT NULL,
                    value_date TEXT NOT NULL,
                    label TEXT NOT NULL,
                    debit TEXT NOT NULL,
                    credit TEXT NOT NULL,
                    status TEXT NOT NULL,
                    match_mode TEXT,
                    match_refs TEXT,  -- JSON: [{"kind": "INVOICE", "id": "..."}]
                    match_source TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (batch_id, source_key),
                    FOREIGN KEY (batch_id) REFERENCES batches(batch_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS match_links (
                    line_id TEXT NOT NULL,
                    document_kind TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    PRIMARY KEY (line_id, document_kind, document_id),
                    FOREIGN KEY (line_id) REFERENCES bank_transactions(line_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS matching_rules (
                    rule_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    keywords TEXT NOT NULL,  -- JSON array
                    document_kind TEXT NOT NULL,
                    document_id TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    priority INTEGER NOT NULL DEFAULT 10,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    document_kind TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    counterparty TEXT NOT NULL,
                    amount_due TEXT NOT NULL,
                    payment_status TEXT NOT NULL DEFAULT 'UNPAID',
                    reference TEXT,
                    issued_on TEXT,
                    vat_rate_label TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (document_kind, document_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_links (
                    document_kind TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    line_id TEXT NOT NULL,
                    linked_at TEXT NOT NULL,
                    PRIMARY KEY (document_kind, document_id, line_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_notes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    batch_id TEXT NOT NULL,
                    line_id TEXT,
                    action TEXT NOT NULL,
                    note TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            # Create indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_batch ON bank_transactions(batch_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_date ON bank_transactions(value_date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_match_links_document "
                "ON match_links(document_kind, document_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_batch ON audit_notes(batch_id)")

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Sequence methods

    @staticmethod
    def _increment_sequence(conn: sqlite3.Connection, scope: str) -> int:
        """Increment a counter inside the caller's transaction and return its new value."""
        conn.execute(
            """
            INSERT INTO sequence_counters (scope, value) VALUES (?, 1)
            ON CONFLICT(scope) DO UPDATE SET value = value + 1
        """,
            (scope,),
        )
        row = conn.execute("SELECT value FROM sequence_counters WHERE scope = ?", (scope,)).fetchone()
        return row["value"]

    def next_sequence(self, scope: str) -> int:
        """Atomically increment and read a counter."""
        with self._transaction(immediate=True) as conn:
            return self._increment_sequence(conn, scope)

    def current_sequence(self, scope: str) -> int:
        """Read a counter without incrementing it (0 if never used)."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM sequence_counters WHERE scope = ?", (scope,)
            ).fetchone()
            return row["value"] if row else 0

    # Batch methods

    def create_batch(self, period_start: date, period_end: date) -> Batch:
        """
        Create an empty IN_PROGRESS batch with a freshly allocated identifier.

        Raises:
            SequenceExhausted: If the month already has 99 batches
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            counter = self._increment_sequence(
                conn, batch_scope(period_start.year, period_start.month)
            )
            batch_id = next_batch_id(period_start.year, period_start.month, counter)
            conn.execute(
                """
                INSERT INTO batches
                (batch_id, period_start, period_end, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    batch_id,
                    period_start.isoformat(),
                    period_end.isoformat(),
                    BatchStatus.IN_PROGRESS.value,
                    now,
                    now,
                ),
            )
        logger.info("Created batch %s (%s..%s)", batch_id, period_start, period_end)
        return Batch(batch_id=batch_id, period_start=period_start, period_end=period_end)

    def get_batch(self, batch_id: str, with_transactions: bool = False) -> Optional[Batch]:
        """Get a batch by ID, optionally with its ordered transactions."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,)).fetchone()
            if not row:
                return None
            batch = batch_from_row(row)
            if with_transactions:
                rows = conn.execute(
                    "SELECT * FROM bank_transactions WHERE batch_id = ? ORDER BY position",
                    (batch_id,),
                ).fetchall()
                batch.transactions = [transaction_from_row(r) for r in rows]
            return batch

    def require_batch(self, batch_id: str, with_transactions: bool = False) -> Batch:
        """Get a batch or raise NotFoundError."""
        batch = self.get_batch(batch_id, with_transactions=with_transactions)
        if batch is None:
            raise NotFoundError("batch", batch_id)
        return batch

    def list_batches(self, status: Optional[BatchStatus] = None) -> list[Batch]:
        """List batches, newest period first."""
        with self._transaction() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM batches WHERE status = ? ORDER BY period_start DESC, batch_id",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM batches ORDER BY period_start DESC, batch_id"
                ).fetchall()
            return [batch_from_row(r) for r in rows]

    def existing_source_keys(self, batch_id: str) -> set[str]:
        """Source keys already imported into a batch."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT source_key FROM bank_transactions WHERE batch_id = ?", (batch_id,)
            ).fetchall()
            return {r["source_key"] for r in rows}

    def add_transaction(
        self,
        batch_id: str,
        line: StatementLine,
        source_key: str,
    ) -> Optional[BankTransaction]:
        """
        Insert one statement line into a batch.

        The line identifier is allocated in the same transaction as the
        insert, so an aborted insert never consumes a number.

        Returns:
            The created transaction, or None if the source line was already imported

        Raises:
            NotFoundError: If the batch does not exist
            ConflictError: If the batch is no longer IN_PROGRESS
            SequenceExhausted: If the day already has 99999 lines
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            batch_row = conn.execute(
                "SELECT status, total_count, version FROM batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
            if not batch_row:
                raise NotFoundError("batch", batch_id)
            if batch_row["status"] != BatchStatus.IN_PROGRESS.value:
                raise ConflictError(
                    f"Batch {batch_id} is {batch_row['status']}, cannot import lines",
                    current_status=batch_row["status"],
                )

            existing = conn.execute(
                "SELECT 1 FROM bank_transactions WHERE batch_id = ? AND source_key = ?",
                (batch_id, source_key),
            ).fetchone()
            if existing:
                return None

            counter = self._increment_sequence(conn, line_scope(line.value_date))
            line_id = next_line_id(line.value_date, counter)
            position = batch_row["total_count"] + 1

            conn.execute(
                """
                INSERT INTO bank_transactions
                (line_id, batch_id, position, source_key, value_date, label, debit, credit,
                 status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    line_id,
                    batch_id,
                    position,
                    source_key,
                    line.value_date.isoformat(),
                    line.label,
                    f"{line.debit:.2f}",
                    f"{line.credit:.2f}",
                    TransactionStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            conn.execute(
                """
                UPDATE batches
                SET total_count = total_count + 1, version = version + 1, updated_at = ?
                WHERE batch_id = ?
            """,
                (now, batch_id),
            )

        return BankTransaction(
            line_id=line_id,
            batch_id=batch_id,
            value_date=line.value_date,
            label=line.label,
            debit=line.debit,
            credit=line.credit,
            position=position,
            source_key=source_key,
        )

    def mark_import_complete(self, batch_id: str) -> bool:
        """
        Flag a batch as fully imported.

        When the lines are already all reconciled (an import resumed after
        the operator worked through them) the batch is validated in the same
        transaction.

        Returns:
            True if the batch was auto-validated
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                "UPDATE batches SET import_complete = 1, updated_at = ? WHERE batch_id = ?",
                (now, batch_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("batch", batch_id)
            return self._settle_batch(conn, batch_id, now)

    def advance_batch_status(
        self,
        batch_id: str,
        target: BatchStatus,
        override_note: Optional[str] = None,
    ) -> Batch:
        """
        Move a batch one step forward in its lifecycle.

        VALIDATED requires a complete import and every line reconciled,
        unless an override note is given (recorded in the audit trail).

        Raises:
            NotFoundError: If the batch does not exist
            ConflictError: If the step is not allowed
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            row = conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,)).fetchone()
            if not row:
                raise NotFoundError("batch", batch_id)
            batch = batch_from_row(row)

            if not batch.status.can_advance_to(target):
                raise ConflictError(
                    f"Batch {batch_id} cannot move from {batch.status.value} to {target.value}",
                    current_status=batch.status.value,
                )

            action = target.value
            if target == BatchStatus.VALIDATED:
                if not batch.import_complete:
                    raise ConflictError(
                        f"Batch {batch_id} import is incomplete, resume it before validating",
                        current_status=batch.status.value,
                    )
                if batch.reconciled_count != batch.total_count:
                    if not override_note or not override_note.strip():
                        raise ConflictError(
                            f"Batch {batch_id} has {batch.total_count - batch.reconciled_count} "
                            "unreconciled line(s); an override note is required",
                            current_status=batch.status.value,
                        )
                    action = "VALIDATE_OVERRIDE"

            cursor = conn.execute(
                """
                UPDATE batches SET status = ?, version = version + 1, updated_at = ?
                WHERE batch_id = ? AND version = ?
            """,
                (target.value, now, batch_id, batch.version),
            )
            if cursor.rowcount != 1:
                raise TransientStoreError(f"Batch {batch_id} was modified concurrently")

            self._add_audit_note(conn, batch_id, None, action, override_note)

            batch.status = target
            batch.version += 1

        logger.info("Batch %s -> %s", batch_id, target.value)
        return batch

    # Transaction methods

    def get_transaction(self, line_id: str) -> Optional[BankTransaction]:
        """Get a transaction by line ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM bank_transactions WHERE line_id = ?", (line_id,)
            ).fetchone()
            return transaction_from_row(row) if row else None

    def require_transaction(self, line_id: str) -> BankTransaction:
        """Get a transaction or raise NotFoundError."""
        transaction = self.get_transaction(line_id)
        if transaction is None:
            raise NotFoundError("transaction", line_id)
        return transaction

    def list_transactions(
        self,
        batch_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        kind: Optional[DocumentKind] = None,
        document_id: Optional[str] = None,
    ) -> list[BankTransaction]:
        """
        Query transactions.

        Args:
            batch_id: Restrict to one batch
            status: Restrict to one status
            start: Earliest value date (inclusive)
            end: Latest value date (inclusive)
            kind: Only lines linked to a document of this kind
            document_id: Only lines linked to this document id (with kind)
        """
        clauses: list[str] = []
        params: list[object] = []
        if batch_id:
            clauses.append("t.batch_id = ?")
            params.append(batch_id)
        if status:
            clauses.append("t.status = ?")
            params.append(status.value)
        if start:
            clauses.append("t.value_date >= ?")
            params.append(start.isoformat())
        if end:
            clauses.append("t.value_date <= ?")
            params.append(end.isoformat())
        if kind:
            link_clause = "l.line_id = t.line_id AND l.document_kind = ?"
            params.append(kind.value)
            if document_id:
                link_clause += " AND l.document_id = ?"
                params.append(document_id)
            clauses.append(f"EXISTS (SELECT 1 FROM match_links l WHERE {link_clause})")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT t.* FROM bank_transactions t {where} "
                "ORDER BY t.value_date, t.batch_id, t.position",
                params,
            ).fetchall()
            return [transaction_from_row(r) for r in rows]

    def transactions_for_document(self, ref: DocumentRef) -> list[BankTransaction]:
        """Every line currently linked to a document."""
        return self.list_transactions(kind=ref.kind, document_id=ref.id)

    def commit_transition(
        self,
        line_id: str,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
        payload: Optional[MatchPayload],
        action: str,
        notes: Optional[str] = None,
        match_source: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        Persist a line transition and its batch side effects atomically.

        In one transaction: line status + payload + links, recomputed
        reconciled count, optimistic batch version bump, auto-validation when
        every line of an IN_PROGRESS batch is reconciled, and the audit notes.

        Lines of a VALIDATED batch may still change; the batch keeps its
        status and a line leaving the reconciled set is recorded as a
        VALIDATE_OVERRIDE note. Lines of an ARCHIVED batch are frozen.

        Raises:
            NotFoundError: If the line does not exist
            ConflictError: If the owning batch is ARCHIVED, or the
                status/payload pairing is invalid
            TransientStoreError: If the line changed since it was read, or
                the batch was updated concurrently
        """
        if new_status.is_reconciled != (payload is not None):
            raise ConflictError(
                f"Status {new_status.value} is incompatible with "
                f"{'a' if payload else 'no'} match payload",
                current_status=expected_status.value,
            )

        now = _now()
        with self._transaction(immediate=True) as conn:
            row = self._lock_line(conn, line_id, expected_status)
            batch_id = row["batch_id"]

            self._write_line(conn, line_id, new_status, payload, notes, match_source, now)
            if notes:
                self._add_audit_note(conn, batch_id, line_id, action, notes)
            auto_validated = self._settle_batch(
                conn, batch_id, now, line_id=line_id, expected_version=row["batch_version"]
            )

            transaction, batch = self._read_back(conn, line_id)

        transaction.check_invariants()
        batch.check_invariants()
        return TransitionOutcome(
            transaction=transaction, batch=batch, batch_auto_validated=auto_validated
        )

    def commit_inverse_pair(
        self,
        line_ids: tuple[str, str],
        expected_statuses: tuple[TransactionStatus, TransactionStatus],
        new_status: TransactionStatus,
        action: str,
        notes: Optional[str] = None,
        match_source: Optional[str] = None,
    ) -> tuple[TransitionOutcome, TransitionOutcome]:
        """
        Pair two bank lines that cancel each other out, or undo such a pair.

        With a reconciled new_status each line gets an INVERSE payload
        pointing at the other one; otherwise both payloads are cleared.
        Both lines, their batches (which may differ) and the audit notes are
        written in one transaction.

        Raises:
            NotFoundError: If either line does not exist
            ConflictError: If a line is paired with itself or belongs to an
                ARCHIVED batch
            TransientStoreError: If either line changed since it was read
        """
        first, second = line_ids
        if first == second:
            raise ConflictError(
                f"Line {first} cannot be paired with itself",
                current_status=expected_statuses[0].value,
            )

        now = _now()
        batches: dict[str, bool] = {}
        with self._transaction(immediate=True) as conn:
            for line_id, other, expected in (
                (first, second, expected_statuses[0]),
                (second, first, expected_statuses[1]),
            ):
                row = self._lock_line(conn, line_id, expected)
                payload = MatchPayload.inverse(other) if new_status.is_reconciled else None
                self._write_line(conn, line_id, new_status, payload, notes, match_source, now)
                if notes:
                    self._add_audit_note(conn, row["batch_id"], line_id, action, notes)
                batches[row["batch_id"]] = False

            for batch_id in batches:
                batches[batch_id] = self._settle_batch(conn, batch_id, now, line_id=first)

            outcomes = []
            for line_id in line_ids:
                transaction, batch = self._read_back(conn, line_id)
                outcomes.append(
                    TransitionOutcome(
                        transaction=transaction,
                        batch=batch,
                        batch_auto_validated=batches[batch.batch_id],
                    )
                )

        for outcome in outcomes:
            outcome.transaction.check_invariants()
            outcome.batch.check_invariants()
        return outcomes[0], outcomes[1]

    def _lock_line(
        self, conn: sqlite3.Connection, line_id: str, expected_status: TransactionStatus
    ) -> sqlite3.Row:
        """Read a line with its batch state, inside a write transaction."""
        row = conn.execute(
            """
            SELECT t.*, b.status AS batch_status, b.version AS batch_version
            FROM bank_transactions t JOIN batches b ON b.batch_id = t.batch_id
            WHERE t.line_id = ?
        """,
            (line_id,),
        ).fetchone()
        if not row:
            raise NotFoundError("transaction", line_id)

        if row["batch_status"] == BatchStatus.ARCHIVED.value:
            raise ConflictError(
                f"Batch {row['batch_id']} is ARCHIVED, its lines cannot change",
                current_status=row["batch_status"],
            )
        if row["status"] != expected_status.value:
            raise TransientStoreError(
                f"Line {line_id} changed concurrently "
                f"(expected {expected_status.value}, found {row['status']})"
            )
        return row

    def _write_line(
        self,
        conn: sqlite3.Connection,
        line_id: str,
        status: TransactionStatus,
        payload: Optional[MatchPayload],
        notes: Optional[str],
        match_source: Optional[str],
        now: str,
    ) -> None:
        conn.execute(
            """
            UPDATE bank_transactions
            SET status = ?, match_mode = ?, match_refs = ?, match_source = ?, notes = ?,
                updated_at = ?
            WHERE line_id = ?
        """,
            (
                status.value,
                payload.mode.value if payload else None,
                json.dumps(payload.to_list()) if payload else None,
                match_source if payload else None,
                notes,
                now,
                line_id,
            ),
        )

        conn.execute("DELETE FROM match_links WHERE line_id = ?", (line_id,))
        if payload:
            conn.executemany(
                "INSERT INTO match_links (line_id, document_kind, document_id) VALUES (?, ?, ?)",
                [(line_id, ref.kind.value, ref.id) for ref in payload.refs],
            )

    def _settle_batch(
        self,
        conn: sqlite3.Connection,
        batch_id: str,
        now: str,
        line_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        """
        Recompute a batch's reconciled count inside the caller's transaction.

        An IN_PROGRESS batch whose import is complete and whose lines are all
        reconciled moves to VALIDATED. A VALIDATED batch losing a reconciled
        line keeps its status; the change is recorded as VALIDATE_OVERRIDE.

        Returns:
            True if this call validated the batch
        """
        row = conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,)).fetchone()
        if not row:
            raise NotFoundError("batch", batch_id)
        batch = batch_from_row(row)
        if expected_version is None:
            expected_version = batch.version

        previous = batch.reconciled_count
        batch.reconciled_count = conn.execute(
            """
            SELECT COUNT(*) FROM bank_transactions
            WHERE batch_id = ? AND status IN (?, ?)
        """,
            (batch_id, TransactionStatus.MATCHED.value, TransactionStatus.PARTIAL.value),
        ).fetchone()[0]

        auto_validated = batch.is_open and batch.import_complete and batch.is_fully_reconciled
        if auto_validated:
            batch.status = BatchStatus.VALIDATED

        cursor = conn.execute(
            """
            UPDATE batches
            SET reconciled_count = ?, status = ?, version = version + 1, updated_at = ?
            WHERE batch_id = ? AND version = ?
        """,
            (batch.reconciled_count, batch.status.value, now, batch_id, expected_version),
        )
        if cursor.rowcount != 1:
            raise TransientStoreError(f"Batch {batch_id} was modified concurrently")

        if auto_validated:
            self._add_audit_note(
                conn, batch_id, None, BatchStatus.VALIDATED.value, "All lines reconciled"
            )
            logger.info("Batch %s fully reconciled -> VALIDATED", batch_id)
        elif batch.status == BatchStatus.VALIDATED and batch.reconciled_count < previous:
            self._add_audit_note(
                conn,
                batch_id,
                line_id,
                "VALIDATE_OVERRIDE",
                f"Line {line_id} unreconciled after validation "
                f"({batch.reconciled_count}/{batch.total_count} reconciled)",
            )
            logger.warning(
                "Batch %s stays VALIDATED with %d/%d lines reconciled",
                batch_id,
                batch.reconciled_count,
                batch.total_count,
            )
        return auto_validated

    def _read_back(self, conn: sqlite3.Connection, line_id: str) -> tuple[BankTransaction, Batch]:
        row = conn.execute(
            "SELECT * FROM bank_transactions WHERE line_id = ?", (line_id,)
        ).fetchone()
        batch_row = conn.execute(
            "SELECT * FROM batches WHERE batch_id = ?", (row["batch_id"],)
        ).fetchone()
        return transaction_from_row(row), batch_from_row(batch_row)

    def set_vat_breakdown(self, line_id: str, vat: Optional[VatBreakdown]) -> None:
        """Store (or clear) the VAT decomposition recorded for a line."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE bank_transactions
                SET total_net = ?, total_vat = ?, total_gross = ?, updated_at = ?
                WHERE line_id = ?
            """,
                (
                    f"{vat.total_net:.2f}" if vat else None,
                    f"{vat.total_vat:.2f}" if vat else None,
                    f"{vat.total_gross:.2f}" if vat else None,
                    _now(),
                    line_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("transaction", line_id)

    def set_detection(self, line_id: str, counterparty: Optional[str], score: Optional[int]) -> None:
        """Record the counterparty detected for a line by the candidate resolver."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE bank_transactions
                SET detected_counterparty = ?, detection_score = ?, updated_at = ?
                WHERE line_id = ?
            """,
                (counterparty, score, _now(), line_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("transaction", line_id)

    # Rule methods

    def save_rule(self, rule: MatchingRule) -> MatchingRule:
        """Insert a new rule. Its rule_id records creation order."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO matching_rules
                (name, direction, keywords, document_kind, document_id, active, priority,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    rule.name,
                    rule.direction.value,
                    json.dumps(rule.keywords),
                    rule.document_kind.value,
                    rule.document_id,
                    1 if rule.active else 0,
                    rule.priority,
                    now,
                    now,
                ),
            )
            rule.rule_id = cursor.lastrowid
            rule.created_at = now
            rule.updated_at = now
        return rule

    def update_rule(self, rule: MatchingRule) -> MatchingRule:
        """Overwrite an existing rule's fields (creation order is kept)."""
        if rule.rule_id is None:
            raise NotFoundError("rule", None)
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE matching_rules
                SET name = ?, direction = ?, keywords = ?, document_kind = ?, document_id = ?,
                    active = ?, priority = ?, updated_at = ?
                WHERE rule_id = ?
            """,
                (
                    rule.name,
                    rule.direction.value,
                    json.dumps(rule.keywords),
                    rule.document_kind.value,
                    rule.document_id,
                    1 if rule.active else 0,
                    rule.priority,
                    now,
                    rule.rule_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("rule", rule.rule_id)
            rule.updated_at = now
        return rule

    def delete_rule(self, rule_id: int) -> bool:
        """Delete a rule. Lines it matched keep their match. Returns True if deleted."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM matching_rules WHERE rule_id = ?", (rule_id,))
            return cursor.rowcount > 0

    def get_rule(self, rule_id: int) -> Optional[MatchingRule]:
        """Get a rule by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM matching_rules WHERE rule_id = ?", (rule_id,)
            ).fetchone()
            return rule_from_row(row) if row else None

    def list_rules(self, active_only: bool = False) -> list[MatchingRule]:
        """List rules in evaluation order (priority, creation order)."""
        query = "SELECT * FROM matching_rules"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY priority, rule_id"
        with self._transaction() as conn:
            return [rule_from_row(r) for r in conn.execute(query).fetchall()]

    # Document projection methods

    def upsert_document(self, document: DocumentCandidate) -> None:
        """Insert or refresh a document in the local projection."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents
                (document_kind, document_id, counterparty, amount_due, payment_status,
                 reference, issued_on, vat_rate_label, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_kind, document_id) DO UPDATE SET
                    counterparty = excluded.counterparty,
                    amount_due = excluded.amount_due,
                    payment_status = excluded.payment_status,
                    reference = excluded.reference,
                    issued_on = excluded.issued_on,
                    vat_rate_label = excluded.vat_rate_label,
                    updated_at = excluded.updated_at
            """,
                (
                    document.kind.value,
                    document.id,
                    document.counterparty,
                    f"{document.amount_due:.2f}",
                    document.payment_status,
                    document.reference,
                    document.issued_on,
                    document.vat_rate_label,
                    _now(),
                ),
            )

    def get_document(self, ref: DocumentRef) -> Optional[DocumentCandidate]:
        """Get a document from the projection."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_kind = ? AND document_id = ?",
                (ref.kind.value, ref.id),
            ).fetchone()
            return document_from_row(row) if row else None

    def list_documents(self, kind: Optional[DocumentKind] = None) -> list[DocumentCandidate]:
        """List documents of the projection ordered by kind and id."""
        with self._transaction() as conn:
            if kind:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE document_kind = ? ORDER BY document_id",
                    (kind.value,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents ORDER BY document_kind, document_id"
                ).fetchall()
            return [document_from_row(r) for r in rows]

    def record_document_link(self, ref: DocumentRef, line_id: str) -> None:
        """Record a link notification (idempotent)."""
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO document_links (document_kind, document_id, line_id, linked_at)
                VALUES (?, ?, ?, ?)
            """,
                (ref.kind.value, ref.id, line_id, _now()),
            )

    def remove_document_link(self, ref: DocumentRef, line_id: str) -> None:
        """Remove a link notification."""
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                DELETE FROM document_links
                WHERE document_kind = ? AND document_id = ? AND line_id = ?
            """,
                (ref.kind.value, ref.id, line_id),
            )

    def list_document_links(self, ref: DocumentRef) -> list[str]:
        """Line IDs notified as linked to a document."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT line_id FROM document_links
                WHERE document_kind = ? AND document_id = ? ORDER BY line_id
            """,
                (ref.kind.value, ref.id),
            ).fetchall()
            return [r["line_id"] for r in rows]

    # Audit methods

    @staticmethod
    def _add_audit_note(
        conn: sqlite3.Connection,
        batch_id: str,
        line_id: Optional[str],
        action: str,
        note: Optional[str],
    ) -> None:
        conn.execute(
            """
            INSERT INTO audit_notes (batch_id, line_id, action, note, created_at)
            VALUES (?, ?, ?, ?, ?)
        """,
            (batch_id, line_id, action, note, _now()),
        )

    def list_audit_notes(self, batch_id: str) -> list[AuditNote]:
        """Audit trail of a batch, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_notes WHERE batch_id = ? ORDER BY id", (batch_id,)
            ).fetchall()
            return [AuditNote.from_row(r) for r in rows]

    # Statistics

    def get_stats(self) -> dict:
        """Get ledger statistics."""
        with self._transaction() as conn:
            stats: dict = {}
            for status in BatchStatus:
                stats[f"batches_{status.value.lower()}"] = conn.execute(
                    "SELECT COUNT(*) FROM batches WHERE status = ?", (status.value,)
                ).fetchone()[0]
            for status in TransactionStatus:
                stats[f"lines_{status.value.lower()}"] = conn.execute(
                    "SELECT COUNT(*) FROM bank_transactions WHERE status = ?", (status.value,)
                ).fetchone()[0]
            stats["rules_active"] = conn.execute(
                "SELECT COUNT(*) FROM matching_rules WHERE active = 1"
            ).fetchone()[0]
            stats["documents"] = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            return stats
