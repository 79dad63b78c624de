"""Tests for the reconciliation workflow."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ledger_reconcile.config import Config, ReconciliationConfig, StoreConfig
from ledger_reconcile.documents import DocumentProviderAPIError, StoreDocumentProvider
from ledger_reconcile.errors import (
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from ledger_reconcile.schemas import (
    BatchStatus,
    DocumentKind,
    DocumentRef,
    MatchMode,
    StatementLine,
    TransactionStatus,
)
from ledger_reconcile.schemas.rules import RuleDraft
from ledger_reconcile.services import ReconciliationService

EDF = DocumentRef(DocumentKind.INVOICE, "F-001")
MARTIN_300 = DocumentRef(DocumentKind.INVOICE, "F-300")
MARTIN_299 = DocumentRef(DocumentKind.INVOICE, "F-299")
DUPONT_100 = DocumentRef(DocumentKind.INVOICE, "F-010")
DUPONT_50 = DocumentRef(DocumentKind.INVOICE, "F-011")
ADOBE = DocumentRef(DocumentKind.SUBSCRIPTION, "AB-01")

EDF_LINE = "RL-20250305-00001"
MARTIN_LINE = "RL-20250312-00001"
ADOBE_LINE = "RL-20250320-00001"


class TestImportStatement:
    """Tests for statement import."""

    def test_import_assigns_identifiers(self, service, statement_lines):
        result = service.import_statement(date(2025, 3, 1), date(2025, 3, 31), statement_lines)

        assert result.batch.batch_id == "RAP-2503-01"
        assert [t.line_id for t in result.created] == [EDF_LINE, MARTIN_LINE, ADOBE_LINE]
        assert result.batch.total_count == 3
        assert result.batch.reconciled_count == 0
        assert result.batch.import_complete
        assert result.complete

    def test_second_batch_same_month(self, service, march_batch, statement_lines):
        result = service.import_statement(date(2025, 3, 1), date(2025, 3, 31), statement_lines)
        assert result.batch.batch_id == "RAP-2503-02"
        assert result.created[0].line_id == "RL-20250305-00002"

    def test_line_outside_period_rejected(self, service, store, statement_lines):
        lines = statement_lines + [StatementLine(date(2025, 4, 1), "LATE", debit=Decimal("1"))]

        with pytest.raises(ValidationError):
            service.import_statement(date(2025, 3, 1), date(2025, 3, 31), lines)
        assert store.list_batches() == []

    def test_both_amounts_rejected(self, service, store):
        lines = [
            StatementLine(date(2025, 3, 5), "BAD", debit=Decimal("1"), credit=Decimal("2"))
        ]

        with pytest.raises(ValidationError, match="Line 1"):
            service.import_statement(date(2025, 3, 1), date(2025, 3, 31), lines)
        assert store.list_batches() == []

    def test_negative_amount_rejected(self, service):
        lines = [StatementLine(date(2025, 3, 5), "BAD", debit=Decimal("-5"))]
        with pytest.raises(ValidationError):
            service.import_statement(date(2025, 3, 1), date(2025, 3, 31), lines)

    def test_inverted_period_rejected(self, service):
        with pytest.raises(ValidationError):
            service.import_statement(date(2025, 3, 31), date(2025, 3, 1), [])

    def test_cancelled_import_resumes(self, service, statement_lines):
        calls = {"n": 0}

        def cancel_after_one():
            calls["n"] += 1
            return calls["n"] > 1

        first = service.import_statement(
            date(2025, 3, 1), date(2025, 3, 31), statement_lines, should_cancel=cancel_after_one
        )

        assert first.cancelled
        assert len(first.created) == 1
        assert not first.batch.import_complete
        with pytest.raises(ConflictError):
            service.validate_batch(first.batch.batch_id, override_note="force")

        resumed = service.import_statement(
            date(2025, 3, 1), date(2025, 3, 31), statement_lines, batch_id=first.batch.batch_id
        )

        assert resumed.skipped == 1
        assert [t.line_id for t in resumed.created] == [MARTIN_LINE, ADOBE_LINE]
        assert resumed.batch.total_count == 3
        assert resumed.batch.import_complete

    def test_resume_validates_already_reconciled_lines(
        self, service, store, statement_lines, monkeypatch
    ):
        """An import interrupted before completion, then fully worked through, validates on resume."""
        complete = store.mark_import_complete
        monkeypatch.setattr(
            store, "mark_import_complete", MagicMock(side_effect=TransientStoreError("Database busy"))
        )
        with pytest.raises(TransientStoreError):
            service.import_statement(date(2025, 3, 1), date(2025, 3, 31), statement_lines)
        monkeypatch.setattr(store, "mark_import_complete", complete)

        service.match_single(EDF_LINE, EDF)
        service.match_single(MARTIN_LINE, MARTIN_299)
        last = service.match_single(ADOBE_LINE, ADOBE)
        assert not last.batch_auto_validated
        assert last.batch.status == BatchStatus.IN_PROGRESS

        resumed = service.import_statement(
            date(2025, 3, 1), date(2025, 3, 31), statement_lines, batch_id="RAP-2503-01"
        )

        assert resumed.created == []
        assert resumed.skipped == 3
        assert resumed.batch_auto_validated
        assert resumed.batch.status == BatchStatus.VALIDATED
        assert service.audit_trail("RAP-2503-01")[-1].action == "VALIDATED"

    def test_reimport_same_batch_is_idempotent(self, service, march_batch, statement_lines):
        result = service.import_statement(
            date(2025, 3, 1), date(2025, 3, 31), statement_lines, batch_id=march_batch.batch_id
        )
        assert result.created == []
        assert result.skipped == 3
        assert result.batch.total_count == 3

    def test_identical_lines_both_imported(self, service):
        line = StatementLine(date(2025, 3, 5), "FRAIS BANCAIRES", debit=Decimal("2.50"))
        twin = StatementLine(date(2025, 3, 5), "FRAIS BANCAIRES", debit=Decimal("2.50"))

        result = service.import_statement(date(2025, 3, 1), date(2025, 3, 31), [line, twin])

        assert len(result.created) == 2
        assert result.created[0].source_key != result.created[1].source_key

    def test_resume_with_other_period_rejected(self, service, march_batch):
        with pytest.raises(ValidationError):
            service.import_statement(
                date(2025, 3, 1), date(2025, 3, 15), [], batch_id=march_batch.batch_id
            )

    def test_resume_unknown_batch(self, service):
        with pytest.raises(NotFoundError):
            service.import_statement(date(2025, 3, 1), date(2025, 3, 31), [], batch_id="RAP-2503-07")


class TestManualMatch:
    """Tests for single and split matching."""

    def test_exact_amount_is_matched(self, service, march_batch):
        result = service.match_single(EDF_LINE, EDF)

        assert result.status == TransactionStatus.MATCHED
        assert result.previous_status == TransactionStatus.PENDING
        assert result.documents_total == Decimal("120.00")
        assert result.delta == Decimal("0.00")
        assert result.transaction.match_source == "MANUAL"
        assert result.batch.reconciled_count == 1

    def test_one_cent_gap_is_partial(self, service, march_batch):
        """A difference equal to the tolerance does not settle the line."""
        result = service.match_single(MARTIN_LINE, MARTIN_300)

        assert result.status == TransactionStatus.PARTIAL
        assert result.delta == Decimal("0.01")
        assert result.batch.reconciled_count == 1

    def test_refund_matches_by_magnitude(self, service, march_batch):
        result = service.match_single(ADOBE_LINE, ADOBE)
        assert result.status == TransactionStatus.MATCHED

    def test_larger_tolerance(self, store, provider, march_batch):
        config = Config(
            reconciliation=ReconciliationConfig(tolerance=Decimal("0.05")),
            store=StoreConfig(max_retries=1, retry_backoff_seconds=0.0),
        )
        service = ReconciliationService(store, provider, config)

        assert service.match_single(MARTIN_LINE, MARTIN_300).status == TransactionStatus.MATCHED

    def test_split_match(self, service):
        result = service.import_statement(
            date(2025, 3, 1),
            date(2025, 3, 31),
            [StatementLine(date(2025, 3, 15), "VIR DUPONT SARL", debit=Decimal("150.00"))],
        )
        line_id = result.created[0].line_id

        matched = service.match_split(line_id, [DUPONT_100, DUPONT_50], notes="two invoices")

        assert matched.status == TransactionStatus.MATCHED
        assert matched.transaction.match.mode == MatchMode.SPLIT
        assert set(matched.transaction.match.refs) == {DUPONT_100, DUPONT_50}
        assert matched.documents_total == Decimal("150.00")

    def test_split_needs_two_documents(self, service, march_batch):
        with pytest.raises(ValidationError):
            service.match_split(EDF_LINE, [EDF, EDF])
        assert service.get_transaction(EDF_LINE).status == TransactionStatus.PENDING

    def test_match_unknown_document(self, service, march_batch):
        with pytest.raises(NotFoundError):
            service.match_single(EDF_LINE, DocumentRef(DocumentKind.INVOICE, "F-404"))
        assert service.get_transaction(EDF_LINE).status == TransactionStatus.PENDING

    def test_match_unknown_line(self, service, march_batch):
        with pytest.raises(NotFoundError):
            service.match_single("RL-20250301-00001", EDF)

    def test_match_twice_rejected(self, service, march_batch):
        service.match_single(EDF_LINE, EDF)
        with pytest.raises(ConflictError):
            service.match_single(EDF_LINE, EDF)

    def test_link_written_back(self, service, provider, store, march_batch):
        service.match_single(EDF_LINE, EDF)
        assert store.list_document_links(EDF) == [EDF_LINE]

    def test_notes_recorded_in_audit(self, service, march_batch):
        service.match_single(EDF_LINE, EDF, notes="January invoice paid late")

        notes = service.audit_trail(march_batch.batch_id)

        assert [(n.line_id, n.action, n.note) for n in notes] == [
            (EDF_LINE, "MATCH", "January invoice paid late")
        ]
        assert service.get_transaction(EDF_LINE).notes == "January invoice paid late"


class TestTransitions:
    """Tests for amend, unmatch, ignore and reopen."""

    def test_unmatch_then_rematch(self, service, store, march_batch):
        service.match_single(MARTIN_LINE, MARTIN_300)

        cleared = service.unmatch(MARTIN_LINE)

        assert cleared.status == TransactionStatus.PENDING
        assert cleared.transaction.match is None
        assert cleared.transaction.match_source is None
        assert cleared.batch.reconciled_count == 0
        assert store.list_document_links(MARTIN_300) == []

        rematched = service.match_single(MARTIN_LINE, MARTIN_299)
        assert rematched.status == TransactionStatus.MATCHED

    def test_unmatch_pending_rejected(self, service, march_batch):
        with pytest.raises(ConflictError):
            service.unmatch(EDF_LINE)

    def test_amend_partial(self, service, store, march_batch):
        service.match_single(MARTIN_LINE, MARTIN_300)

        amended = service.amend_match(MARTIN_LINE, [MARTIN_299], notes="wrong invoice")

        assert amended.status == TransactionStatus.MATCHED
        assert amended.previous_status == TransactionStatus.PARTIAL
        assert store.list_document_links(MARTIN_300) == []
        assert store.list_document_links(MARTIN_299) == [MARTIN_LINE]

    def test_amend_matched_rejected(self, service, march_batch):
        service.match_single(EDF_LINE, EDF)
        with pytest.raises(ConflictError):
            service.amend_match(EDF_LINE, [MARTIN_299])

    def test_ignore_and_reopen(self, service, march_batch):
        ignored = service.ignore(EDF_LINE, notes="internal transfer")

        assert ignored.status == TransactionStatus.IGNORED
        assert ignored.batch.reconciled_count == 0

        reopened = service.reopen(EDF_LINE)
        assert reopened.status == TransactionStatus.PENDING
        assert reopened.transaction.notes is None

    def test_ignore_matched_rejected(self, service, march_batch):
        service.match_single(EDF_LINE, EDF)
        with pytest.raises(ConflictError):
            service.ignore(EDF_LINE)

    def test_reopen_pending_rejected(self, service, march_batch):
        with pytest.raises(ConflictError):
            service.reopen(EDF_LINE)


class TestBatchLifecycle:
    """Tests for validation and archival."""

    def test_full_reconciliation_validates_batch(self, service, march_batch):
        service.match_single(EDF_LINE, EDF)
        service.match_single(MARTIN_LINE, MARTIN_300)

        last = service.match_single(ADOBE_LINE, ADOBE)

        assert last.batch_auto_validated
        assert last.batch.status == BatchStatus.VALIDATED
        assert last.batch.reconciled_count == 3
        actions = [n.action for n in service.audit_trail(march_batch.batch_id)]
        assert actions[-1] == "VALIDATED"

    def test_archived_batch_is_frozen(self, service, march_batch):
        service.match_single(EDF_LINE, EDF)
        service.match_single(MARTIN_LINE, MARTIN_299)
        service.match_single(ADOBE_LINE, ADOBE)

        archived = service.archive_batch(march_batch.batch_id)

        assert archived.status == BatchStatus.ARCHIVED
        with pytest.raises(ConflictError):
            service.unmatch(EDF_LINE)
        with pytest.raises(ConflictError):
            service.set_vat_breakdown(EDF_LINE, "100.00", "20.00", "120.00")

    @pytest.fixture
    def martin_line(self, service):
        """One-line batch: the 299.99 transfer to Cabinet Martin."""
        result = service.import_statement(
            date(2025, 3, 1),
            date(2025, 3, 31),
            [StatementLine(date(2025, 3, 12), "VIR CABINET MARTIN", debit=Decimal("299.99"))],
        )
        return result.created[0].line_id

    def test_partial_line_amended_after_auto_validation(self, service, martin_line):
        partial = service.match_single(martin_line, MARTIN_300)
        assert partial.status == TransactionStatus.PARTIAL
        assert partial.batch_auto_validated

        amended = service.amend_match(martin_line, [MARTIN_299], notes="credit note received")

        assert amended.status == TransactionStatus.MATCHED
        assert amended.batch.status == BatchStatus.VALIDATED
        assert amended.batch.reconciled_count == amended.batch.total_count == 1
        assert not amended.batch_auto_validated

    def test_unmatch_after_auto_validation_is_an_override(self, service, martin_line):
        service.match_single(martin_line, MARTIN_300)

        cleared = service.unmatch(martin_line, notes="wrong invoice")

        assert cleared.status == TransactionStatus.PENDING
        assert cleared.batch.status == BatchStatus.VALIDATED
        assert cleared.batch.reconciled_count == 0
        trail = service.audit_trail(cleared.batch.batch_id)
        assert [n.action for n in trail][-2:] == ["UNMATCH", "VALIDATE_OVERRIDE"]
        assert trail[-1].line_id == martin_line

        rematched = service.match_single(martin_line, MARTIN_299)
        assert rematched.status == TransactionStatus.MATCHED
        assert rematched.batch.status == BatchStatus.VALIDATED
        assert not rematched.batch_auto_validated

    def test_validated_batch_lines_still_workable(self, service, march_batch):
        service.validate_batch(march_batch.batch_id, override_note="closing the month")

        result = service.match_single(EDF_LINE, EDF)
        report = service.auto_match_batch(march_batch.batch_id)

        assert result.status == TransactionStatus.MATCHED
        assert result.batch.status == BatchStatus.VALIDATED
        assert result.batch.reconciled_count == 1
        assert report.errors == {}

    def test_validate_with_open_lines_needs_override(self, service, march_batch):
        service.ignore(EDF_LINE)

        with pytest.raises(ConflictError):
            service.validate_batch(march_batch.batch_id)

        batch = service.validate_batch(march_batch.batch_id, override_note="EDF disputed")
        assert batch.status == BatchStatus.VALIDATED
        last = service.audit_trail(march_batch.batch_id)[-1]
        assert (last.action, last.note) == ("VALIDATE_OVERRIDE", "EDF disputed")

    def test_blank_override_rejected(self, service, march_batch):
        with pytest.raises(ConflictError):
            service.validate_batch(march_batch.batch_id, override_note="   ")

    def test_archive_requires_validation(self, service, march_batch):
        with pytest.raises(ConflictError):
            service.archive_batch(march_batch.batch_id)

    def test_ignored_lines_do_not_count_as_reconciled(self, service, march_batch):
        service.match_single(EDF_LINE, EDF)
        service.match_single(MARTIN_LINE, MARTIN_299)
        result = service.ignore(ADOBE_LINE)

        assert not result.batch_auto_validated
        assert result.batch.status == BatchStatus.IN_PROGRESS


class TestAutoMatch:
    """Tests for rule-driven auto-matching."""

    def test_direct_rule(self, service, march_batch):
        rule = service.create_rule(
            RuleDraft(name="EDF", keywords=["edf"], direction="DEBIT", document_id="F-001")
        )

        report = service.auto_match_batch(march_batch.batch_id)

        assert report.matched == [EDF_LINE]
        assert sorted(report.unmatched) == [MARTIN_LINE, ADOBE_LINE]
        line = service.get_transaction(EDF_LINE)
        assert line.status == TransactionStatus.MATCHED
        assert line.match_source == f"RULE:{rule.rule_id}"

    def test_direct_rule_unknown_document_leaves_pending(self, service, march_batch):
        service.create_rule(RuleDraft(name="EDF", keywords=["EDF"], document_id="F-404"))

        report = service.auto_match_batch(march_batch.batch_id)

        assert report.matched == []
        assert service.get_transaction(EDF_LINE).status == TransactionStatus.PENDING

    def test_type_hint_single_settling_candidate(self, service, march_batch):
        service.create_rule(RuleDraft(name="Martin", keywords=["CABINET", "MARTIN"]))

        report = service.auto_match_batch(march_batch.batch_id)

        assert report.matched == [MARTIN_LINE]
        line = service.get_transaction(MARTIN_LINE)
        assert line.match.refs == (MARTIN_299,)
        assert line.match_source.endswith(":CANDIDATE")
        assert line.detected_counterparty == "Cabinet Martin"

    def test_type_hint_without_settling_candidate_suggests(self, service):
        result = service.import_statement(
            date(2025, 3, 1),
            date(2025, 3, 31),
            [StatementLine(date(2025, 3, 15), "VIR DUPONT SARL", debit=Decimal("75.00"))],
        )
        service.create_rule(RuleDraft(name="Dupont", keywords=["DUPONT"]))

        report = service.auto_match_batch(result.batch.batch_id)

        line_id = result.created[0].line_id
        assert report.matched == []
        assert [c.id for c in report.suggestions[line_id]] == ["F-010", "F-011"]
        assert service.get_transaction(line_id).status == TransactionStatus.PENDING

    def test_direction_filters_rule(self, service, march_batch):
        service.create_rule(
            RuleDraft(
                name="Adobe refund",
                keywords=["ADOBE"],
                direction="DEBIT",
                document_kind="SUBSCRIPTION",
                document_id="AB-01",
            )
        )

        report = service.auto_match_batch(march_batch.batch_id)

        assert ADOBE_LINE in report.unmatched

    def test_inactive_rules_skipped(self, service, march_batch):
        service.create_rule(
            RuleDraft(name="EDF", keywords=["EDF"], document_id="F-001", active=False)
        )
        assert service.auto_match_batch(march_batch.batch_id).matched == []

    def test_only_pending_lines_examined(self, service, march_batch):
        service.ignore(EDF_LINE)
        service.create_rule(RuleDraft(name="EDF", keywords=["EDF"], document_id="F-001"))

        report = service.auto_match_batch(march_batch.batch_id)

        assert report.examined == 2
        assert service.get_transaction(EDF_LINE).status == TransactionStatus.IGNORED

    def test_auto_match_completes_batch(self, service, march_batch):
        service.match_single(MARTIN_LINE, MARTIN_299)
        service.match_single(ADOBE_LINE, ADOBE)
        service.create_rule(RuleDraft(name="EDF", keywords=["EDF"], document_id="F-001"))

        report = service.auto_match_batch(march_batch.batch_id)

        assert report.batch_auto_validated
        assert service.get_batch(march_batch.batch_id).status == BatchStatus.VALIDATED


class TestRules:
    def test_create_rule_validates(self, service):
        with pytest.raises(ValidationError):
            service.create_rule(RuleDraft(name="empty", keywords=["  "]))

    def test_update_keeps_creation_order(self, service):
        rule = service.create_rule(RuleDraft(name="a", keywords=["X"]))

        updated = service.update_rule(rule.rule_id, RuleDraft(name="b", keywords=["Y"], priority=1))

        assert updated.rule_id == rule.rule_id
        assert service.get_rule(rule.rule_id).keywords == ["Y"]

    def test_delete_rule_keeps_matches(self, service, march_batch):
        rule = service.create_rule(RuleDraft(name="EDF", keywords=["EDF"], document_id="F-001"))
        service.auto_match_batch(march_batch.batch_id)

        service.delete_rule(rule.rule_id)

        line = service.get_transaction(EDF_LINE)
        assert line.status == TransactionStatus.MATCHED
        assert line.match_source == f"RULE:{rule.rule_id}"
        with pytest.raises(NotFoundError):
            service.delete_rule(rule.rule_id)


class TestVatBreakdown:
    def test_store_breakdown(self, service, march_batch):
        line = service.set_vat_breakdown(EDF_LINE, "100.00", "20.00", "120.00")
        assert line.vat.total_net == Decimal("100.00")

    def test_inconsistent_breakdown_rejected(self, service, march_batch):
        with pytest.raises(ValidationError):
            service.set_vat_breakdown(EDF_LINE, "100.00", "21.00", "120.00")


class TestWriteBack:
    """Link notifications never undo a committed transition."""

    @pytest.fixture
    def failing_provider(self, provider):
        wrapped = MagicMock(spec=StoreDocumentProvider, wraps=provider)
        wrapped.link_transaction.side_effect = DocumentProviderAPIError(503, "unavailable")
        wrapped.unlink_transaction.side_effect = DocumentProviderAPIError(503, "unavailable")
        return wrapped

    def test_link_failure_is_a_warning(self, store, failing_provider, config, march_batch):
        service = ReconciliationService(store, failing_provider, config)

        result = service.match_single(EDF_LINE, EDF)

        assert result.status == TransactionStatus.MATCHED
        assert len(result.warnings) == 1
        assert "F-001" in result.warnings[0]
        assert store.get_transaction(EDF_LINE).status == TransactionStatus.MATCHED

    def test_unlink_failure_is_a_warning(self, store, failing_provider, config, march_batch):
        service = ReconciliationService(store, failing_provider, config)
        service.match_single(EDF_LINE, EDF)

        result = service.unmatch(EDF_LINE)

        assert result.status == TransactionStatus.PENDING
        assert result.warnings


class TestRetry:
    """Transient store failures are retried for single-line operations."""

    def test_transient_failure_retried(self, store, provider, config, march_batch, monkeypatch):
        original = store.commit_transition
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise TransientStoreError("Database busy: database is locked")
            return original(*args, **kwargs)

        monkeypatch.setattr(store, "commit_transition", flaky)
        service = ReconciliationService(store, provider, config)

        result = service.match_single(EDF_LINE, EDF)

        assert result.status == TransactionStatus.MATCHED
        assert calls["n"] == 2

    def test_gives_up_after_max_retries(self, store, provider, config, march_batch, monkeypatch):
        failing = MagicMock(side_effect=TransientStoreError("Database busy"))
        monkeypatch.setattr(store, "commit_transition", failing)
        service = ReconciliationService(store, provider, config)

        with pytest.raises(TransientStoreError):
            service.ignore(EDF_LINE)
        assert failing.call_count == config.store.max_retries

    def test_conflict_not_retried(self, store, provider, config, march_batch, monkeypatch):
        failing = MagicMock(side_effect=ConflictError("frozen"))
        monkeypatch.setattr(store, "commit_transition", failing)
        service = ReconciliationService(store, provider, config)

        with pytest.raises(ConflictError):
            service.ignore(EDF_LINE)
        assert failing.call_count == 1


class TestInversePairing:
    """Lines reconciled against each other: a debit and the credit that cancels it."""

    CHARGE = "RL-20250310-00001"
    REVERSAL = "RL-20250311-00001"
    SALARY = "RL-20250314-00001"
    CARD = "RL-20250315-00001"
    CREDIT_NOTE = "RL-20250318-00001"

    @pytest.fixture
    def batch(self, service):
        lines = [
            StatementLine(date(2025, 3, 10), "PRLV SEPA GYM CLUB", debit=Decimal("45.00")),
            StatementLine(date(2025, 3, 11), "ANNULATION PRLV GYM CLUB", credit=Decimal("45.00")),
            StatementLine(date(2025, 3, 14), "VIR ACOMPTE SALAIRE", credit=Decimal("45.00")),
            StatementLine(date(2025, 3, 15), "CARTE RESTAURANT", debit=Decimal("45.00")),
            StatementLine(date(2025, 3, 18), "AVOIR GYM CLUB", credit=Decimal("44.50")),
        ]
        return service.import_statement(date(2025, 3, 1), date(2025, 3, 31), lines).batch

    def test_find_opposite_lines_of_same_amount(self, service, batch):
        found = service.find_inverse_lines(self.CHARGE)
        assert [t.line_id for t in found] == [self.REVERSAL, self.SALARY]

    def test_detected_counterparty_must_agree(self, service, store, batch):
        store.set_detection(self.CHARGE, "Gym Club", 80)
        store.set_detection(self.SALARY, "Employeur SA", 70)

        found = service.find_inverse_lines(self.CHARGE)

        assert [t.line_id for t in found] == [self.REVERSAL]

    def test_matched_lines_not_proposed(self, service, batch):
        service.pair_inverse(self.CHARGE, self.REVERSAL)

        assert [t.line_id for t in service.find_inverse_lines(self.SALARY)] == [self.CARD]

    def test_pair_reconciles_both_lines(self, service, batch):
        result = service.pair_inverse(self.CHARGE, self.REVERSAL, notes="direct debit cancelled")

        assert result.status == TransactionStatus.MATCHED
        assert result.previous_status == TransactionStatus.PENDING
        assert result.transaction.match.counterpart_line == self.REVERSAL
        assert result.transaction.match_source == "INVERSE"
        assert result.counterpart.status == TransactionStatus.MATCHED
        assert result.counterpart.match.counterpart_line == self.CHARGE
        assert result.batch.reconciled_count == 2
        actions = [n.action for n in service.audit_trail(batch.batch_id)]
        assert actions == ["PAIR_INVERSE", "PAIR_INVERSE"]

    def test_ignored_line_can_be_paired(self, service, batch):
        service.ignore(self.REVERSAL, notes="looked like a refund")

        result = service.pair_inverse(self.CHARGE, self.REVERSAL)

        assert result.counterpart.status == TransactionStatus.MATCHED

    def test_same_sign_rejected(self, service, batch):
        with pytest.raises(ValidationError):
            service.pair_inverse(self.CHARGE, self.CARD)

    def test_amount_gap_rejected(self, service, batch):
        with pytest.raises(ValidationError):
            service.pair_inverse(self.CHARGE, self.CREDIT_NOTE)
        assert service.get_transaction(self.CHARGE).status == TransactionStatus.PENDING

    def test_line_cannot_pair_with_itself(self, service, batch):
        with pytest.raises(ValidationError):
            service.pair_inverse(self.CHARGE, self.CHARGE)

    def test_paired_line_cannot_take_a_document(self, service, batch):
        service.pair_inverse(self.CHARGE, self.REVERSAL)
        with pytest.raises(ConflictError):
            service.match_single(self.CHARGE, EDF)

    def test_unmatch_releases_both_lines(self, service, batch):
        service.pair_inverse(self.CHARGE, self.REVERSAL)

        result = service.unmatch(self.REVERSAL)

        assert result.status == TransactionStatus.PENDING
        assert result.counterpart.line_id == self.CHARGE
        assert result.counterpart.status == TransactionStatus.PENDING
        assert result.batch.reconciled_count == 0

    def test_pair_across_batches(self, service, batch):
        april = service.import_statement(
            date(2025, 4, 1),
            date(2025, 4, 30),
            [StatementLine(date(2025, 4, 2), "ANNULATION PRLV GYM CLUB", credit=Decimal("45.00"))],
        )
        april_line = april.created[0].line_id

        result = service.pair_inverse(self.CHARGE, april_line)

        assert result.batch.reconciled_count == 1
        assert result.counterpart.batch_id == april.batch.batch_id
        april_batch = service.get_batch(april.batch.batch_id, with_transactions=False)
        assert april_batch.status == BatchStatus.VALIDATED

    def test_archived_batch_lines_not_proposed(self, service, batch):
        service.validate_batch(batch.batch_id, override_note="closing")
        service.archive_batch(batch.batch_id)
        april = service.import_statement(
            date(2025, 4, 1),
            date(2025, 4, 30),
            [StatementLine(date(2025, 4, 2), "PRLV SEPA GYM CLUB", debit=Decimal("45.00"))],
        )

        assert service.find_inverse_lines(april.created[0].line_id) == []


class TestConcurrency:
    """Several operators matching lines of the same batch at once."""

    def test_parallel_matches_keep_counts_exact(self, service):
        lines = [
            StatementLine(date(2025, 3, 5), "PRLV SEPA EDF PRELEVEMENT", debit=Decimal("120.00"))
            for _ in range(40)
        ]
        imported = service.import_statement(date(2025, 3, 1), date(2025, 3, 31), lines)
        line_ids = [t.line_id for t in imported.created]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda line_id: service.match_single(line_id, EDF), line_ids[:-1]))

        assert all(r.status == TransactionStatus.MATCHED for r in results)
        assert not any(r.batch_auto_validated for r in results)
        batch = service.get_batch(imported.batch.batch_id, with_transactions=False)
        assert batch.reconciled_count == 39
        assert batch.total_count == 40
        assert batch.status == BatchStatus.IN_PROGRESS

        last = service.match_single(line_ids[-1], EDF)

        assert last.batch_auto_validated
        assert last.batch.reconciled_count == 40
