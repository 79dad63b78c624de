"""Reconciliation workflow and derived reporting."""

from .aggregators import (
    AggregatorService,
    AnnualOverview,
    HistoryEntry,
    MonthSummary,
    PaymentRow,
    SettlementStatus,
)
from .reconciliation import (
    AutoMatchReport,
    ImportResult,
    MatchSource,
    ReconciliationService,
    TransitionResult,
)

__all__ = [
    "AggregatorService",
    "AnnualOverview",
    "AutoMatchReport",
    "HistoryEntry",
    "ImportResult",
    "MatchSource",
    "MonthSummary",
    "PaymentRow",
    "ReconciliationService",
    "SettlementStatus",
    "TransitionResult",
]
