"""Canonical data model: ledger, rules, document projection, identifiers, VAT."""

from .documents import DocumentCandidate
from .identifiers import compute_source_key, next_batch_id, next_line_id
from .ledger import (
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
from .rules import Direction, MatchingRule, RuleDraft, build_rule
from .vat import VatRate, VatSource, decompose_gross, resolve_vat_rate

__all__ = [
    "BankTransaction",
    "Batch",
    "BatchStatus",
    "Direction",
    "DocumentCandidate",
    "DocumentKind",
    "DocumentRef",
    "MatchMode",
    "MatchPayload",
    "MatchingRule",
    "RuleDraft",
    "StatementLine",
    "TransactionStatus",
    "VatBreakdown",
    "VatRate",
    "VatSource",
    "build_rule",
    "compute_source_key",
    "decompose_gross",
    "next_batch_id",
    "next_line_id",
    "resolve_vat_rate",
]
