"""Bank statement reconciliation workflow.

This service owns every mutation of a bank line's match state:
- import a statement into a batch (resumable, idempotent per source line)
- auto-match pending lines with the rule engine
- manual single match, split match, amend, unmatch, ignore, reopen
- inverse pairing of two lines that cancel each other out
- batch validation and archival (only archived batches freeze their lines)

Each line transition is one atomic store transaction. Transient store
failures (busy database, concurrent update of the batch) are retried with
exponential backoff for single-line operations only.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..documents.base import DocumentProviderError
from ..errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from ..matching.candidates import (
    CandidateResolver,
    ScoredCandidate,
    amounts_reconcile,
    normalize_name,
)
from ..matching.rules import RuleEngine
from ..schemas.documents import DocumentCandidate
from ..schemas.identifiers import compute_source_key
from ..schemas.ledger import (
    ZERO,
    BankTransaction,
    Batch,
    BatchStatus,
    DocumentKind,
    DocumentRef,
    MatchPayload,
    StatementLine,
    TransactionStatus,
    VatBreakdown,
    to_decimal,
)
from ..schemas.rules import MatchingRule, RuleDraft, build_rule

if TYPE_CHECKING:
    from ..config import Config
    from ..documents.base import DocumentProvider
    from ..state_store import AuditNote, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses a line may leave to join an inverse pair
INVERSE_PAIRABLE = (TransactionStatus.PENDING, TransactionStatus.IGNORED)


class MatchSource:
    """Values stored in a line's match_source."""

    MANUAL = "MANUAL"
    INVERSE = "INVERSE"

    @staticmethod
    def rule(rule: MatchingRule) -> str:
        return f"RULE:{rule.rule_id}"

    @staticmethod
    def rule_candidate(rule: MatchingRule) -> str:
        return f"RULE:{rule.rule_id}:CANDIDATE"


@dataclass
class TransitionResult:
    """Result of one line transition."""

    transaction: BankTransaction
    batch: Batch
    previous_status: TransactionStatus
    documents_total: Optional[Decimal] = None
    batch_auto_validated: bool = False
    warnings: list[str] = field(default_factory=list)
    counterpart: Optional[BankTransaction] = None  # other line of an inverse pair

    @property
    def status(self) -> TransactionStatus:
        return self.transaction.status

    @property
    def delta(self) -> Optional[Decimal]:
        """Gap between the documents' total and the bank amount (magnitudes)."""
        if self.documents_total is None:
            return None
        return abs(abs(self.documents_total) - abs(self.transaction.net_amount))


@dataclass
class ImportResult:
    """Result of a statement import."""

    batch: Batch
    created: list[BankTransaction] = field(default_factory=list)
    skipped: int = 0
    cancelled: bool = False
    batch_auto_validated: bool = False

    @property
    def complete(self) -> bool:
        return not self.cancelled


@dataclass
class AutoMatchReport:
    """Outcome of running the rule engine over a batch."""

    batch_id: str
    matched: list[str] = field(default_factory=list)
    suggestions: dict[str, list[DocumentCandidate]] = field(default_factory=dict)
    unmatched: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    batch_auto_validated: bool = False

    @property
    def examined(self) -> int:
        return len(self.matched) + len(self.suggestions) + len(self.unmatched) + len(self.errors)


class ReconciliationService:
    """Orchestrates statement import and line reconciliation.

    Usage:
        service = ReconciliationService(state_store, document_provider, config)
        result = service.import_statement(date(2025, 3, 1), date(2025, 3, 31), lines)
        service.auto_match_batch(result.batch.batch_id)
        service.match_single("RL-20250305-00001", DocumentRef.parse("invoice:F-001"))
    """

    def __init__(
        self,
        state_store: StateStore,
        document_provider: DocumentProvider,
        config: Optional[Config] = None,
        rule_engine: Optional[RuleEngine] = None,
        resolver: Optional[CandidateResolver] = None,
    ) -> None:
        """Initialize the reconciliation service.

        Args:
            state_store: State store for persistence.
            document_provider: Source of invoices, subscriptions and charge declarations.
            config: Application configuration (defaults when None).
            rule_engine: Rule engine override (tests).
            resolver: Candidate resolver override (tests).
        """
        if config is None:
            from ..config import Config

            config = Config()

        self.store = state_store
        self.provider = document_provider
        self.config = config
        self.tolerance = config.reconciliation.tolerance

        self.rule_engine = rule_engine or RuleEngine()
        self.resolver = resolver or CandidateResolver(
            document_provider,
            tolerance=self.tolerance,
            max_results=config.reconciliation.max_candidates,
        )

        self._retrying = Retrying(
            stop=stop_after_attempt(config.store.max_retries),
            wait=wait_exponential(multiplier=config.store.retry_backoff_seconds, max=2),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _with_retry(self, fn: Callable[..., T], *args, **kwargs) -> T:
        return self._retrying.copy()(fn, *args, **kwargs)

    # Import

    def import_statement(
        self,
        period_start: date,
        period_end: date,
        lines: Sequence[StatementLine],
        batch_id: Optional[str] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> ImportResult:
        """Import a statement period.

        Every line is validated before anything is written. Re-running the
        same import against the batch it created skips lines already present,
        which is how an interrupted import resumes.

        Args:
            period_start: First day of the statement period.
            period_end: Last day of the statement period.
            lines: Statement lines in bank order.
            batch_id: Existing IN_PROGRESS batch to resume, None to create one.
            should_cancel: Polled between insertions; True stops the import.

        Raises:
            ValidationError: If the period or a line is malformed.
            NotFoundError: If batch_id does not exist.
            ConflictError: If the batch is no longer IN_PROGRESS.
            SequenceExhausted: If an identifier counter overflows.
        """
        if period_end < period_start:
            raise ValidationError(
                f"Period end {period_end} is before period start {period_start}", field="period"
            )

        for position, line in enumerate(lines, start=1):
            try:
                line.validate()
            except ValidationError as e:
                raise ValidationError(f"Line {position}: {e}", field=e.field) from e
            if not period_start <= line.value_date <= period_end:
                raise ValidationError(
                    f"Line {position}: value date {line.value_date} outside period "
                    f"{period_start}..{period_end}",
                    field="value_date",
                )

        if batch_id:
            batch = self.store.require_batch(batch_id)
            if not batch.is_open:
                raise ConflictError(
                    f"Batch {batch_id} is {batch.status.value}, cannot import into it",
                    current_status=batch.status.value,
                )
            if (batch.period_start, batch.period_end) != (period_start, period_end):
                raise ValidationError(
                    f"Batch {batch_id} covers {batch.period_start}..{batch.period_end}, "
                    f"not {period_start}..{period_end}",
                    field="period",
                )
        else:
            batch = self.store.create_batch(period_start, period_end)

        existing = self.store.existing_source_keys(batch.batch_id)
        occurrences: Counter = Counter()
        result = ImportResult(batch=batch)

        for line in lines:
            if should_cancel is not None and should_cancel():
                result.cancelled = True
                logger.warning(
                    "Import into %s cancelled after %d line(s)", batch.batch_id, len(result.created)
                )
                break

            identity = (line.value_date, " ".join(line.label.split()).lower(), line.debit, line.credit)
            source_key = compute_source_key(
                line.value_date, line.label, line.debit, line.credit, occurrences[identity]
            )
            occurrences[identity] += 1

            if source_key in existing:
                result.skipped += 1
                continue

            transaction = self.store.add_transaction(batch.batch_id, line, source_key)
            if transaction is None:
                result.skipped += 1
            else:
                result.created.append(transaction)

        if not result.cancelled:
            result.batch_auto_validated = self.store.mark_import_complete(batch.batch_id)

        result.batch = self.store.require_batch(batch.batch_id)
        logger.info(
            "Imported %d line(s) into %s (%d already present%s)",
            len(result.created),
            batch.batch_id,
            result.skipped,
            ", cancelled" if result.cancelled else "",
        )
        return result

    # Auto-match

    def auto_match_batch(self, batch_id: str) -> AutoMatchReport:
        """Apply matching rules to every PENDING line of a batch.

        A rule naming a document matches the line directly. A rule naming
        only a document kind narrows the candidate search: the line is
        matched only when exactly one best-tier candidate reconciles within
        tolerance, otherwise the candidates are returned as suggestions.

        Raises:
            NotFoundError: If the batch does not exist.
            ConflictError: If the batch is ARCHIVED.
        """
        batch = self.store.require_batch(batch_id, with_transactions=True)
        self._ensure_not_archived(batch)

        rules = self.store.list_rules(active_only=True)
        report = AutoMatchReport(batch_id=batch_id)

        for transaction in batch.transactions:
            if transaction.status != TransactionStatus.PENDING:
                continue

            hit = self.rule_engine.evaluate(transaction, rules)
            if hit is None:
                report.unmatched.append(transaction.line_id)
                continue

            try:
                if hit.is_direct:
                    result = self._auto_match_direct(transaction, hit.rule, hit.document)
                else:
                    result = self._auto_match_hint(transaction, hit.rule, hit.document_kind, report)
            except (ConflictError, TransientStoreError) as e:
                logger.warning("Auto-match of %s failed: %s", transaction.line_id, e)
                report.errors[transaction.line_id] = str(e)
                continue

            if result is None:
                continue
            report.matched.append(transaction.line_id)
            report.warnings.extend(result.warnings)
            if result.batch_auto_validated:
                report.batch_auto_validated = True

        logger.info(
            "Auto-match %s: %d matched, %d with suggestions, %d unmatched, %d failed",
            batch_id,
            len(report.matched),
            len(report.suggestions),
            len(report.unmatched),
            len(report.errors),
        )
        return report

    def _auto_match_direct(
        self,
        transaction: BankTransaction,
        rule: MatchingRule,
        ref: DocumentRef,
    ) -> Optional[TransitionResult]:
        if not self.provider.exists(ref):
            logger.warning(
                "Rule %s (%s) targets unknown document %s, line %s left pending",
                rule.rule_id,
                rule.name,
                ref,
                transaction.line_id,
            )
            return None
        return self._with_retry(
            self._apply_transition,
            transaction.line_id,
            (TransactionStatus.PENDING,),
            TransactionStatus.MATCHED,
            MatchPayload.single(ref),
            "AUTO_MATCH",
            None,
            MatchSource.rule(rule),
        )

    def _auto_match_hint(
        self,
        transaction: BankTransaction,
        rule: MatchingRule,
        kind: DocumentKind,
        report: AutoMatchReport,
    ) -> Optional[TransitionResult]:
        scored = self.resolver.score_candidates(transaction, type_hint=kind)
        if not scored:
            report.unmatched.append(transaction.line_id)
            return None

        top = scored[0]
        self.store.set_detection(transaction.line_id, top.candidate.counterparty, top.score)

        best_tier = [s for s in scored if s.tier == top.tier]
        settling = [
            s
            for s in best_tier
            if amounts_reconcile(s.candidate.amount_due, transaction.net_amount, self.tolerance)
        ]
        if len(settling) != 1:
            report.suggestions[transaction.line_id] = [s.candidate for s in scored]
            return None

        return self._with_retry(
            self._apply_transition,
            transaction.line_id,
            (TransactionStatus.PENDING,),
            TransactionStatus.MATCHED,
            MatchPayload.single(settling[0].candidate.ref),
            "AUTO_MATCH",
            None,
            MatchSource.rule_candidate(rule),
        )

    # Manual workflow

    def match_single(
        self,
        line_id: str,
        ref: DocumentRef,
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """Match a PENDING line to one document.

        MATCHED when the document settles the amount within tolerance,
        PARTIAL otherwise.
        """
        payload = MatchPayload.single(ref)
        return self._with_retry(
            self._apply_match, line_id, payload, (TransactionStatus.PENDING,), "MATCH", notes
        )

    def match_split(
        self,
        line_id: str,
        refs: Iterable[DocumentRef],
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """Match a PENDING line to two or more documents.

        Raises:
            ValidationError: If fewer than 2 distinct documents are given.
        """
        payload = MatchPayload.split(list(refs))
        return self._with_retry(
            self._apply_match, line_id, payload, (TransactionStatus.PENDING,), "SPLIT_MATCH", notes
        )

    def amend_match(
        self,
        line_id: str,
        refs: Iterable[DocumentRef],
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """Replace the document set of a PARTIAL line and re-evaluate it.

        A MATCHED line must be unmatched first.
        """
        payload = MatchPayload.for_refs(list(refs))
        return self._with_retry(
            self._apply_match, line_id, payload, (TransactionStatus.PARTIAL,), "AMEND", notes
        )

    def unmatch(self, line_id: str, notes: Optional[str] = None) -> TransitionResult:
        """Clear the match of a MATCHED or PARTIAL line (back to PENDING).

        Unmatching one line of an inverse pair releases both lines.
        """
        return self._with_retry(self._apply_unmatch, line_id, notes)

    def _apply_unmatch(self, line_id: str, notes: Optional[str]) -> TransitionResult:
        allowed_from = (TransactionStatus.MATCHED, TransactionStatus.PARTIAL)
        transaction = self.store.require_transaction(line_id)
        self._ensure_transition_allowed(transaction, allowed_from, "UNMATCH")

        if transaction.match is not None and transaction.match.is_inverse:
            counterpart = self.store.require_transaction(transaction.match.counterpart_line)
            return self._apply_inverse(
                transaction, counterpart, TransactionStatus.PENDING, "UNMATCH", notes
            )
        return self._apply_transition(
            line_id,
            allowed_from,
            TransactionStatus.PENDING,
            None,
            "UNMATCH",
            notes,
            None,
            transaction,
        )

    def ignore(self, line_id: str, notes: Optional[str] = None) -> TransitionResult:
        """Mark a PENDING line as not reconcilable (internal transfer, bank fee...)."""
        return self._with_retry(
            self._apply_transition,
            line_id,
            (TransactionStatus.PENDING,),
            TransactionStatus.IGNORED,
            None,
            "IGNORE",
            notes,
            None,
        )

    def reopen(self, line_id: str, notes: Optional[str] = None) -> TransitionResult:
        """Put an IGNORED line back to PENDING."""
        return self._with_retry(
            self._apply_transition,
            line_id,
            (TransactionStatus.IGNORED,),
            TransactionStatus.PENDING,
            None,
            "REOPEN",
            notes,
            None,
        )

    # Inverse pairing

    def find_inverse_lines(self, line_id: str) -> list[BankTransaction]:
        """Lines that cancel this one out, e.g. a direct debit and its reversal.

        A candidate has the opposite sign, the same magnitude within
        tolerance, and is PENDING or IGNORED in a batch that is not ARCHIVED.
        When both lines carry a detected counterparty, the names must agree.
        """
        source = self.store.require_transaction(line_id)
        archived = {b.batch_id for b in self.store.list_batches(BatchStatus.ARCHIVED)}
        party = normalize_name(source.detected_counterparty)

        found = []
        for transaction in self.store.list_transactions():
            if transaction.line_id == source.line_id or transaction.batch_id in archived:
                continue
            if transaction.status not in INVERSE_PAIRABLE:
                continue
            if not self._cancels_out(source, transaction):
                continue
            other_party = normalize_name(transaction.detected_counterparty)
            if party and other_party and party != other_party:
                continue
            found.append(transaction)
        return found

    def pair_inverse(
        self,
        line_id: str,
        other_line_id: str,
        notes: Optional[str] = None,
    ) -> TransitionResult:
        """Reconcile two lines against each other instead of against documents.

        Both lines become MATCHED with a payload naming the other line, in one
        store transaction. The lines may belong to different batches.

        Raises:
            ValidationError: If the lines do not cancel each other out.
            ConflictError: If a line is not PENDING/IGNORED or its batch is ARCHIVED.
        """
        return self._with_retry(self._apply_pair, line_id, other_line_id, notes)

    def _apply_pair(self, line_id: str, other_line_id: str, notes: Optional[str]) -> TransitionResult:
        if line_id == other_line_id:
            raise ValidationError(f"Line {line_id} cannot be paired with itself", field="line_id")

        first = self.store.require_transaction(line_id)
        second = self.store.require_transaction(other_line_id)
        for transaction in (first, second):
            self._ensure_transition_allowed(transaction, INVERSE_PAIRABLE, "PAIR_INVERSE")
        if not self._cancels_out(first, second):
            raise ValidationError(
                f"Lines {line_id} ({first.net_amount}) and {other_line_id} "
                f"({second.net_amount}) do not cancel each other out",
                field="amount",
            )
        return self._apply_inverse(first, second, TransactionStatus.MATCHED, "PAIR_INVERSE", notes)

    def _cancels_out(self, first: BankTransaction, second: BankTransaction) -> bool:
        if first.net_amount * second.net_amount >= 0:
            return False
        return amounts_reconcile(first.net_amount, second.net_amount, self.tolerance)

    def _apply_inverse(
        self,
        first: BankTransaction,
        second: BankTransaction,
        new_status: TransactionStatus,
        action: str,
        notes: Optional[str],
    ) -> TransitionResult:
        outcome, other = self.store.commit_inverse_pair(
            (first.line_id, second.line_id),
            (first.status, second.status),
            new_status,
            action=action,
            notes=notes,
            match_source=MatchSource.INVERSE if new_status.is_reconciled else None,
        )
        logger.info(
            "%s %s <-> %s: %s -> %s",
            action,
            first.line_id,
            second.line_id,
            first.status.value,
            new_status.value,
        )
        return TransitionResult(
            transaction=outcome.transaction,
            batch=outcome.batch,
            previous_status=first.status,
            batch_auto_validated=outcome.batch_auto_validated or other.batch_auto_validated,
            counterpart=other.transaction,
        )

    def _apply_match(
        self,
        line_id: str,
        payload: MatchPayload,
        allowed_from: tuple[TransactionStatus, ...],
        action: str,
        notes: Optional[str],
    ) -> TransitionResult:
        transaction = self.store.require_transaction(line_id)
        self._ensure_transition_allowed(transaction, allowed_from, action)

        documents_total = sum((self.provider.amount_due(ref) for ref in payload.refs), ZERO)
        if amounts_reconcile(documents_total, transaction.net_amount, self.tolerance):
            status = TransactionStatus.MATCHED
        else:
            status = TransactionStatus.PARTIAL

        result = self._apply_transition(
            line_id, allowed_from, status, payload, action, notes, MatchSource.MANUAL, transaction
        )
        result.documents_total = documents_total
        return result

    def _apply_transition(
        self,
        line_id: str,
        allowed_from: tuple[TransactionStatus, ...],
        new_status: TransactionStatus,
        payload: Optional[MatchPayload],
        action: str,
        notes: Optional[str],
        match_source: Optional[str],
        transaction: Optional[BankTransaction] = None,
    ) -> TransitionResult:
        if transaction is None:
            transaction = self.store.require_transaction(line_id)
            self._ensure_transition_allowed(transaction, allowed_from, action)

        outcome = self.store.commit_transition(
            line_id,
            expected_status=transaction.status,
            new_status=new_status,
            payload=payload,
            action=action,
            notes=notes,
            match_source=match_source,
        )

        old_refs = set(transaction.match.refs) if transaction.match else set()
        new_refs = set(payload.refs) if payload else set()
        warnings = self._notify_links(line_id, old_refs - new_refs, new_refs - old_refs)

        logger.info(
            "%s %s: %s -> %s%s",
            action,
            line_id,
            transaction.status.value,
            new_status.value,
            f" ({', '.join(payload.targets())})" if payload else "",
        )
        return TransitionResult(
            transaction=outcome.transaction,
            batch=outcome.batch,
            previous_status=transaction.status,
            batch_auto_validated=outcome.batch_auto_validated,
            warnings=warnings,
        )

    def _notify_links(
        self,
        line_id: str,
        removed: set[DocumentRef],
        added: set[DocumentRef],
    ) -> list[str]:
        """Write link changes back to the document side. Failures are reported, not raised."""
        warnings: list[str] = []
        for ref in sorted(removed):
            try:
                self.provider.unlink_transaction(ref, line_id)
            except (DocumentProviderError, NotFoundError) as e:
                logger.warning("Could not unlink %s from %s: %s", line_id, ref, e)
                warnings.append(f"unlink {ref}: {e}")
        for ref in sorted(added):
            try:
                self.provider.link_transaction(ref, line_id)
            except (DocumentProviderError, NotFoundError) as e:
                logger.warning("Could not link %s to %s: %s", line_id, ref, e)
                warnings.append(f"link {ref}: {e}")
        return warnings

    def _ensure_not_archived(self, batch: Batch) -> None:
        if batch.status == BatchStatus.ARCHIVED:
            raise ConflictError(
                f"Batch {batch.batch_id} is ARCHIVED, its lines are frozen",
                current_status=batch.status.value,
            )

    def _ensure_transition_allowed(
        self,
        transaction: BankTransaction,
        allowed_from: tuple[TransactionStatus, ...],
        action: str,
    ) -> None:
        self._ensure_not_archived(self.store.require_batch(transaction.batch_id))
        if transaction.status not in allowed_from:
            raise ConflictError(
                f"Cannot {action.lower().replace('_', ' ')} line {transaction.line_id}: "
                f"it is {transaction.status.value} "
                f"(allowed from {', '.join(s.value for s in allowed_from)})",
                current_status=transaction.status.value,
            )

    # VAT

    def set_vat_breakdown(
        self,
        line_id: str,
        total_net: Decimal | str,
        total_vat: Decimal | str,
        total_gross: Decimal | str,
    ) -> BankTransaction:
        """Store a line's own VAT decomposition.

        Raises:
            ValidationError: If net + vat != gross (within tolerance).
            ConflictError: If the line's batch is ARCHIVED.
        """
        vat = VatBreakdown(
            total_net=to_decimal(total_net, "total_net"),
            total_vat=to_decimal(total_vat, "total_vat"),
            total_gross=to_decimal(total_gross, "total_gross"),
        )
        if not vat.is_consistent(self.tolerance):
            raise ValidationError(
                f"Net {vat.total_net} + VAT {vat.total_vat} does not equal gross {vat.total_gross}",
                field="total_gross",
            )

        def store_breakdown() -> BankTransaction:
            transaction = self.store.require_transaction(line_id)
            self._ensure_not_archived(self.store.require_batch(transaction.batch_id))
            self.store.set_vat_breakdown(line_id, vat)
            return self.store.require_transaction(line_id)

        return self._with_retry(store_breakdown)

    # Batch lifecycle

    def validate_batch(self, batch_id: str, override_note: Optional[str] = None) -> Batch:
        """Move a batch to VALIDATED.

        Without an override note every line must be reconciled. Not retried:
        on failure the caller inspects the error and re-runs.
        """
        return self.store.advance_batch_status(batch_id, BatchStatus.VALIDATED, override_note)

    def archive_batch(self, batch_id: str) -> Batch:
        """Move a VALIDATED batch to ARCHIVED. Its lines stay frozen."""
        return self.store.advance_batch_status(batch_id, BatchStatus.ARCHIVED)

    # Rule administration

    def create_rule(self, draft: RuleDraft) -> MatchingRule:
        rule = self.store.save_rule(build_rule(draft))
        logger.info("Created rule %s (%s)", rule.rule_id, rule.name)
        return rule

    def update_rule(self, rule_id: int, draft: RuleDraft) -> MatchingRule:
        """Replace a rule's fields. Its creation order is kept."""
        existing = self.get_rule(rule_id)
        rule = build_rule(draft)
        rule.rule_id = existing.rule_id
        rule.created_at = existing.created_at
        return self.store.update_rule(rule)

    def delete_rule(self, rule_id: int) -> None:
        """Delete a rule. Lines it matched keep their match."""
        if not self.store.delete_rule(rule_id):
            raise NotFoundError("rule", rule_id)
        logger.info("Deleted rule %s", rule_id)

    def get_rule(self, rule_id: int) -> MatchingRule:
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("rule", rule_id)
        return rule

    def list_rules(self, active_only: bool = False) -> list[MatchingRule]:
        return self.store.list_rules(active_only=active_only)

    # Queries

    def get_batch(self, batch_id: str, with_transactions: bool = True) -> Batch:
        return self.store.require_batch(batch_id, with_transactions=with_transactions)

    def list_batches(self, status: Optional[BatchStatus] = None) -> list[Batch]:
        return self.store.list_batches(status=status)

    def get_transaction(self, line_id: str) -> BankTransaction:
        return self.store.require_transaction(line_id)

    def find_candidates(
        self,
        line_id: str,
        kind: Optional[DocumentKind] = None,
    ) -> list[ScoredCandidate]:
        """Scored candidate documents for a line, best first."""
        transaction = self.store.require_transaction(line_id)
        return self.resolver.score_candidates(transaction, type_hint=kind)

    def audit_trail(self, batch_id: str) -> list[AuditNote]:
        self.store.require_batch(batch_id)
        return self.store.list_audit_notes(batch_id)

    def get_status(self) -> dict:
        """Ledger statistics for the status command."""
        return self.store.get_stats()
