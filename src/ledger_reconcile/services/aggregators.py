"""Derived read-only views over reconciled bank lines.

- subscription / charge-declaration payment histories with VAT decomposition
- reverse lookup of the lines linked to a document
- derived settlement status of a document
- annual overview by month

A stored VAT decomposition on the bank line always wins. Otherwise the VAT
is recomputed from the document's VAT-rate label; rates that had to be
parsed from free text or defaulted are flagged as degraded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..errors import NotFoundError
from ..matching.candidates import normalize_name
from ..schemas.ledger import (
    ZERO,
    BankTransaction,
    DocumentKind,
    DocumentRef,
    TransactionStatus,
)
from ..schemas.vat import VatRate, VatSource, decompose_gross, resolve_vat_rate

if TYPE_CHECKING:
    from ..documents.base import DocumentProvider
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class SettlementStatus(str, Enum):
    """Payment status of a document as derived from its links."""

    PAID = "PAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    UNPAID = "UNPAID"


@dataclass
class PaymentRow:
    """One payment of a subscription or charge declaration."""

    line_id: str
    batch_id: str
    value_date: date
    label: str
    document: DocumentRef
    status: TransactionStatus
    amount: Decimal  # signed display amount, negative for refunds
    total_net: Decimal
    total_vat: Decimal
    total_gross: Decimal
    vat_source: VatSource
    vat_percent: Optional[Decimal] = None

    @property
    def is_refund(self) -> bool:
        return self.amount < 0

    @property
    def degraded(self) -> bool:
        """True when the VAT rate was parsed from free text or defaulted."""
        return self.vat_source.degraded

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "batch_id": self.batch_id,
            "value_date": self.value_date.isoformat(),
            "label": self.label,
            "document": str(self.document),
            "status": self.status.value,
            "amount": f"{self.amount:.2f}",
            "total_net": f"{self.total_net:.2f}",
            "total_vat": f"{self.total_vat:.2f}",
            "total_gross": f"{self.total_gross:.2f}",
            "vat_source": self.vat_source.value,
            "vat_percent": str(self.vat_percent) if self.vat_percent is not None else None,
            "degraded": self.degraded,
        }


@dataclass
class HistoryEntry:
    """A bank line linked to a document, seen from the document."""

    line_id: str
    batch_id: str
    value_date: date
    label: str
    amount: Decimal
    status: TransactionStatus
    co_documents: list[DocumentRef] = field(default_factory=list)


@dataclass
class MonthSummary:
    month: int
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    line_count: int = 0
    reconciled_count: int = 0

    @property
    def net(self) -> Decimal:
        return self.credit - self.debit


@dataclass
class AnnualOverview:
    """All lines of a year, with per-month totals."""

    year: int
    months: list[MonthSummary]
    transactions: list[BankTransaction] = field(default_factory=list)

    @property
    def total_debit(self) -> Decimal:
        return sum((m.debit for m in self.months), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((m.credit for m in self.months), ZERO)

    @property
    def reconciled_count(self) -> int:
        return sum(m.reconciled_count for m in self.months)


class AggregatorService:
    """Read-only reporting over the reconciliation ledger."""

    def __init__(self, state_store: StateStore, document_provider: DocumentProvider) -> None:
        self.store = state_store
        self.provider = document_provider

    # Payment histories

    def subscription_payments(
        self,
        start: date,
        end: date,
        subscription_id: Optional[str] = None,
    ) -> list[PaymentRow]:
        """Payments of subscriptions between two dates, newest first."""
        return self._payments(DocumentKind.SUBSCRIPTION, start, end, subscription_id)

    def charge_declaration_payments(
        self,
        start: date,
        end: date,
        declaration_id: Optional[str] = None,
    ) -> list[PaymentRow]:
        """Payments of charge declarations between two dates, newest first."""
        return self._payments(DocumentKind.CHARGE_DECLARATION, start, end, declaration_id)

    def _payments(
        self,
        kind: DocumentKind,
        start: date,
        end: date,
        document_id: Optional[str],
    ) -> list[PaymentRow]:
        transactions = self.store.list_transactions(
            start=start, end=end, kind=kind, document_id=document_id
        )
        rates: dict[DocumentRef, VatRate] = {}
        rows: list[PaymentRow] = []

        for transaction in transactions:
            if not transaction.status.is_reconciled or transaction.match is None:
                continue
            for ref in transaction.match.refs:
                if ref.kind != kind or (document_id and ref.id != document_id):
                    continue
                rows.append(self._payment_row(transaction, ref, rates))

        rows.sort(key=lambda r: (r.value_date, r.line_id), reverse=True)
        degraded = sum(1 for r in rows if r.degraded)
        if degraded:
            logger.warning(
                "%d of %d %s payment(s) use a parsed or default VAT rate",
                degraded,
                len(rows),
                kind.value.lower(),
            )
        return rows

    def _payment_row(
        self,
        transaction: BankTransaction,
        ref: DocumentRef,
        rates: dict[DocumentRef, VatRate],
    ) -> PaymentRow:
        amount = transaction.display_amount

        if transaction.vat is not None:
            vat = transaction.vat
            return PaymentRow(
                line_id=transaction.line_id,
                batch_id=transaction.batch_id,
                value_date=transaction.value_date,
                label=transaction.label,
                document=ref,
                status=transaction.status,
                amount=amount,
                total_net=vat.total_net,
                total_vat=vat.total_vat,
                total_gross=vat.total_gross,
                vat_source=VatSource.STORED,
            )

        if ref not in rates:
            rates[ref] = resolve_vat_rate(self._vat_label(ref))
        rate = rates[ref]
        breakdown = decompose_gross(amount, rate.percent)
        return PaymentRow(
            line_id=transaction.line_id,
            batch_id=transaction.batch_id,
            value_date=transaction.value_date,
            label=transaction.label,
            document=ref,
            status=transaction.status,
            amount=amount,
            total_net=breakdown.total_net,
            total_vat=breakdown.total_vat,
            total_gross=breakdown.total_gross,
            vat_source=rate.source,
            vat_percent=rate.percent,
        )

    def _vat_label(self, ref: DocumentRef) -> Optional[str]:
        try:
            return self.provider.get_candidate(ref).vat_rate_label
        except NotFoundError:
            logger.warning("Document %s no longer exists, VAT defaults to 0%%", ref)
            return None

    # Document views

    def document_history(self, ref: DocumentRef) -> list[HistoryEntry]:
        """Every bank line linked to a document, newest first."""
        entries = [
            HistoryEntry(
                line_id=t.line_id,
                batch_id=t.batch_id,
                value_date=t.value_date,
                label=t.label,
                amount=t.display_amount,
                status=t.status,
                co_documents=[r for r in t.match.refs if r != ref] if t.match else [],
            )
            for t in self.store.transactions_for_document(ref)
        ]
        entries.sort(key=lambda e: (e.value_date, e.line_id), reverse=True)
        return entries

    def document_settlement(self, ref: DocumentRef) -> SettlementStatus:
        """PAID if a MATCHED line settles the document, PARTIALLY_PAID if only PARTIAL ones do."""
        statuses = {t.status for t in self.store.transactions_for_document(ref)}
        if TransactionStatus.MATCHED in statuses:
            return SettlementStatus.PAID
        if TransactionStatus.PARTIAL in statuses:
            return SettlementStatus.PARTIALLY_PAID
        return SettlementStatus.UNPAID

    # Annual overview

    def annual_overview(
        self,
        year: int,
        counterparty: Optional[str] = None,
        search: Optional[str] = None,
    ) -> AnnualOverview:
        """Lines of a year grouped by month.

        Args:
            year: Calendar year.
            counterparty: Keep lines whose detected counterparty (or label) names it.
            search: Case-insensitive filter over label, line id and counterparty.
        """
        transactions = self.store.list_transactions(start=date(year, 1, 1), end=date(year, 12, 31))

        if counterparty:
            wanted = normalize_name(counterparty)
            transactions = [
                t
                for t in transactions
                if normalize_name(t.detected_counterparty) == wanted
                or wanted in normalize_name(t.label)
            ]

        if search:
            needle = search.casefold()
            transactions = [
                t
                for t in transactions
                if needle in t.label.casefold()
                or needle in t.line_id.casefold()
                or needle in (t.detected_counterparty or "").casefold()
            ]

        months = [MonthSummary(month=m) for m in range(1, 13)]
        for transaction in transactions:
            summary = months[transaction.value_date.month - 1]
            summary.debit += transaction.debit
            summary.credit += transaction.credit
            summary.line_count += 1
            if transaction.status.is_reconciled:
                summary.reconciled_count += 1

        return AnnualOverview(year=year, months=months, transactions=transactions)
