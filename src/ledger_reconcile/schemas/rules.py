"""
Matching rule model.

A rule is a stored keyword/direction condition. All keywords must occur in
a line's label (case-insensitive substring, conjunctive). A rule either
points at one concrete document or only narrows the document kind.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..errors import ValidationError
from .ledger import BankTransaction, DocumentKind, DocumentRef


class Direction(str, Enum):
    """Which side of the statement a rule applies to."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"
    ANY = "ANY"

    def accepts(self, transaction: BankTransaction) -> bool:
        """True if the transaction's sign is compatible with this direction."""
        if self == Direction.CREDIT:
            return transaction.credit > 0
        if self == Direction.DEBIT:
            return transaction.debit > 0
        return True


@dataclass
class MatchingRule:
    """User-defined automatic matching rule."""

    name: str
    keywords: list[str]
    document_kind: DocumentKind
    direction: Direction = Direction.ANY
    document_id: Optional[str] = None  # None: the rule only narrows the kind
    active: bool = True
    priority: int = 10  # lower value = evaluated first
    rule_id: Optional[int] = None  # creation order, assigned by the store
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def target(self) -> Optional[DocumentRef]:
        """Concrete document targeted by the rule, if any."""
        if self.document_id:
            return DocumentRef(kind=self.document_kind, id=self.document_id)
        return None

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "direction": self.direction.value,
            "keywords": list(self.keywords),
            "document_kind": self.document_kind.value,
            "document_id": self.document_id,
            "active": self.active,
            "priority": self.priority,
        }


@dataclass
class RuleDraft:
    """Unvalidated rule input as received from the administration surface."""

    name: str
    keywords: list[str] = field(default_factory=list)
    document_kind: str = DocumentKind.INVOICE.value
    direction: str = Direction.ANY.value
    document_id: Optional[str] = None
    active: bool = True
    priority: int = 10


def normalize_keywords(keywords: list[str]) -> list[str]:
    """Strip keywords, drop blanks and duplicates (case-insensitive), keep order."""
    seen: set[str] = set()
    result: list[str] = []
    for keyword in keywords:
        cleaned = " ".join(str(keyword).split())
        if not cleaned or cleaned.casefold() in seen:
            continue
        seen.add(cleaned.casefold())
        result.append(cleaned)
    return result


def build_rule(draft: RuleDraft) -> MatchingRule:
    """
    Validate a draft and build the rule.

    An empty keyword set is rejected here, at creation time, rather than
    silently never matching at evaluation time.

    Raises:
        ValidationError: If any field is malformed
    """
    name = (draft.name or "").strip()
    if not name:
        raise ValidationError("Rule name is required", field="name")

    keywords = normalize_keywords(draft.keywords or [])
    if not keywords:
        raise ValidationError("A rule needs at least one non-blank keyword", field="keywords")

    try:
        direction = Direction(str(draft.direction).upper())
    except ValueError:
        raise ValidationError(
            f"Invalid direction '{draft.direction}' (expected DEBIT, CREDIT or ANY)",
            field="direction",
        ) from None

    try:
        kind = DocumentKind(str(draft.document_kind).upper())
    except ValueError:
        raise ValidationError(
            f"Invalid document kind '{draft.document_kind}'", field="document_kind"
        ) from None

    if isinstance(draft.priority, bool) or not isinstance(draft.priority, int):
        raise ValidationError("Priority must be an integer", field="priority")

    document_id = (draft.document_id or "").strip() or None

    return MatchingRule(
        name=name,
        keywords=keywords,
        document_kind=kind,
        direction=direction,
        document_id=document_id,
        active=bool(draft.active),
        priority=draft.priority,
    )
