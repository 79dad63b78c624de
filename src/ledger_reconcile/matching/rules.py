"""Rule engine: keyword rules evaluated against bank lines.

Evaluation is deterministic and side-effect free:
1. keep active rules whose direction accepts the line's sign
2. order by (priority ascending, creation order ascending)
3. the first rule whose keywords ALL occur in the label wins

A winning rule with a concrete document yields a direct match. A rule that
only names a document kind yields a type hint for the Candidate Resolver.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

from ..schemas.ledger import BankTransaction, DocumentKind, DocumentRef
from ..schemas.rules import MatchingRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMatch:
    """Outcome of a rule hit."""

    rule: MatchingRule
    document_kind: DocumentKind
    document: Optional[DocumentRef] = None

    @property
    def is_direct(self) -> bool:
        """True if the rule resolves to exactly one document."""
        return self.document is not None

    @property
    def is_type_hint(self) -> bool:
        return self.document is None

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule.rule_id,
            "rule_name": self.rule.name,
            "document_kind": self.document_kind.value,
            "document": self.document.to_dict() if self.document else None,
        }


def _creation_order(rule: MatchingRule) -> int:
    # Unsaved rules sort after saved ones; their relative input order is kept
    # by the stable sort.
    return rule.rule_id if rule.rule_id is not None else sys.maxsize


def order_rules(rules: Iterable[MatchingRule]) -> list[MatchingRule]:
    """Sort rules by (priority, creation order). Stable for equal keys."""
    return sorted(rules, key=lambda r: (r.priority, _creation_order(r)))


def keywords_match(keywords: Iterable[str], label: str) -> bool:
    """
    Conjunctive keyword test.

    Every keyword must occur as a case-insensitive substring of the label.
    An empty keyword set or a blank label never matches.
    """
    haystack = " ".join(label.split()).casefold()
    if not haystack:
        return False

    needles = [" ".join(k.split()).casefold() for k in keywords]
    needles = [n for n in needles if n]
    if not needles:
        return False

    return all(needle in haystack for needle in needles)


class RuleEngine:
    """Evaluates matching rules against unmatched bank lines.

    The engine holds no state between calls: the same transaction and rule
    set always yield the same result.
    """

    def evaluate(
        self,
        transaction: BankTransaction,
        rules: Iterable[MatchingRule],
    ) -> Optional[RuleMatch]:
        """Find the winning rule for a transaction.

        Args:
            transaction: Bank line to classify.
            rules: Candidate rules (any order, inactive ones are skipped).

        Returns:
            RuleMatch for the first matching rule, or None.
        """
        eligible = [r for r in rules if r.active and r.direction.accepts(transaction)]

        for rule in order_rules(eligible):
            if keywords_match(rule.keywords, transaction.label):
                logger.debug(
                    "Line %s matched rule %s (%s, priority %d)",
                    transaction.line_id,
                    rule.rule_id,
                    rule.name,
                    rule.priority,
                )
                return RuleMatch(
                    rule=rule,
                    document_kind=rule.document_kind,
                    document=rule.target,
                )

        logger.debug("Line %s matched no rule", transaction.line_id)
        return None


def evaluate(transaction: BankTransaction, rules: Iterable[MatchingRule]) -> Optional[RuleMatch]:
    """Module-level shortcut for RuleEngine().evaluate."""
    return RuleEngine().evaluate(transaction, rules)
