"""Candidate resolver: plausible documents for a bank line.

Tiers (highest first):
- EXACT: counterparty name equals the line's counterpart name
- PREFIX: counterpart name is a prefix of the counterparty name
- CONTAINS: one name contains the other
- AMOUNT: amount due equals the line's amount, used only when no name tier hits

An EXACT hit short-circuits the lower tiers. Within a tier, candidates are
ordered by document id. The resolver never mutates anything.
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import TYPE_CHECKING, Optional

from ..schemas.documents import DocumentCandidate
from ..schemas.ledger import BankTransaction, DocumentKind

if TYPE_CHECKING:
    from ..documents.base import DocumentProvider

logger = logging.getLogger(__name__)


class CandidateTier(IntEnum):
    """Score of a candidate; higher is better."""

    AMOUNT = 1
    CONTAINS = 2
    PREFIX = 3
    EXACT = 4


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate document with the tier it was found in."""

    candidate: DocumentCandidate
    tier: CandidateTier

    @property
    def score(self) -> int:
        return int(self.tier)

    def to_dict(self) -> dict:
        data = self.candidate.to_dict()
        data["tier"] = self.tier.name
        data["score"] = self.score
        return data


def normalize_name(value: str | None) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.split())


def name_tier(counterpart: str, party: str) -> Optional[CandidateTier]:
    """Name-based tier of a document for a normalized counterpart name."""
    if not counterpart or not party:
        return None
    if counterpart == party:
        return CandidateTier.EXACT
    if party.startswith(counterpart):
        return CandidateTier.PREFIX
    if counterpart in party or party in counterpart:
        return CandidateTier.CONTAINS
    return None


def amounts_reconcile(expected: Decimal, actual: Decimal, tolerance: Decimal) -> bool:
    """True if two amounts agree in magnitude within tolerance (strict)."""
    return abs(abs(expected) - abs(actual)) < tolerance


def _ordered(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    return sorted(scored, key=lambda s: (-s.score, s.candidate.id, s.candidate.kind.value))


class CandidateResolver:
    """Finds documents a bank line may settle.

    Queried by the manual workflow and by the rule engine's type-hint branch.
    """

    def __init__(
        self,
        provider: DocumentProvider,
        tolerance: Decimal = Decimal("0.01"),
        max_results: int = 20,
    ) -> None:
        """Initialize the resolver.

        Args:
            provider: Source of document candidates.
            tolerance: Amount tolerance for the amount-only tier.
            max_results: Maximum number of candidates returned.
        """
        self.provider = provider
        self.tolerance = tolerance
        self.max_results = max_results

    def score_candidates(
        self,
        transaction: BankTransaction,
        type_hint: Optional[DocumentKind] = None,
    ) -> list[ScoredCandidate]:
        """Score the document universe against a transaction.

        Args:
            transaction: Bank line to resolve.
            type_hint: Restrict the search to one document kind.

        Returns:
            Scored candidates, best first. Empty if nothing plausible.
        """
        documents = self.provider.list_candidates(kind=type_hint)
        counterpart = normalize_name(transaction.label)

        exact: list[ScoredCandidate] = []
        partial: list[ScoredCandidate] = []
        if counterpart:
            for doc in documents:
                tier = name_tier(counterpart, normalize_name(doc.counterparty))
                if tier is CandidateTier.EXACT:
                    exact.append(ScoredCandidate(doc, tier))
                elif tier is not None:
                    partial.append(ScoredCandidate(doc, tier))

        if exact:
            result = _ordered(exact)
        elif partial:
            result = _ordered(partial)
        else:
            result = _ordered(
                [
                    ScoredCandidate(doc, CandidateTier.AMOUNT)
                    for doc in documents
                    if amounts_reconcile(doc.amount_due, transaction.net_amount, self.tolerance)
                ]
            )

        logger.debug(
            "Line %s: %d candidate(s) among %d document(s) (hint=%s)",
            transaction.line_id,
            len(result),
            len(documents),
            type_hint.value if type_hint else None,
        )
        return result[: self.max_results]

    def find_candidates(
        self,
        transaction: BankTransaction,
        type_hint: Optional[DocumentKind] = None,
    ) -> list[DocumentCandidate]:
        """Ordered candidate documents for a transaction."""
        return [s.candidate for s in self.score_candidates(transaction, type_hint)]
