"""Rule engine and candidate resolver for bank line reconciliation."""

from ledger_reconcile.matching.candidates import (
    CandidateResolver,
    CandidateTier,
    ScoredCandidate,
    amounts_reconcile,
)
from ledger_reconcile.matching.rules import RuleEngine, RuleMatch, evaluate, keywords_match

__all__ = [
    "CandidateResolver",
    "CandidateTier",
    "RuleEngine",
    "RuleMatch",
    "ScoredCandidate",
    "amounts_reconcile",
    "evaluate",
    "keywords_match",
]
