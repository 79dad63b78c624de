"""
Canonical ledger model (SSOT).

This is THE single source of truth for batches, bank transactions and
their match payloads. Persistence, workflow and aggregators all map
into/out of these types.

Invariants enforced here:
- debit and credit are non-negative, at most one of them is non-zero
- status MATCHED/PARTIAL <=> match payload present
- batch status only advances IN_PROGRESS -> VALIDATED -> ARCHIVED
- 0 <= reconciled_count <= total_count
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from ..errors import ConflictError, ValidationError

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


class BatchStatus(str, Enum):
    """Lifecycle of a statement batch."""

    IN_PROGRESS = "IN_PROGRESS"
    VALIDATED = "VALIDATED"
    ARCHIVED = "ARCHIVED"

    @property
    def rank(self) -> int:
        return _BATCH_STATUS_ORDER.index(self)

    def can_advance_to(self, target: "BatchStatus") -> bool:
        """True if target is exactly the next lifecycle step."""
        return target.rank == self.rank + 1


_BATCH_STATUS_ORDER = [BatchStatus.IN_PROGRESS, BatchStatus.VALIDATED, BatchStatus.ARCHIVED]


class TransactionStatus(str, Enum):
    """
    Reconciliation status of one bank line.

    PENDING: not reconciled yet
    MATCHED: linked, documents settle the amount within tolerance
    PARTIAL: linked, documents do not settle the exact amount (fees, partial payment)
    IGNORED: operator marked the line as not reconcilable (internal transfer...)
    """

    PENDING = "PENDING"
    MATCHED = "MATCHED"
    PARTIAL = "PARTIAL"
    IGNORED = "IGNORED"

    @property
    def is_reconciled(self) -> bool:
        """MATCHED and PARTIAL count towards the batch's reconciled lines."""
        return self in (TransactionStatus.MATCHED, TransactionStatus.PARTIAL)


class DocumentKind(str, Enum):
    """Kind of financial document a line can be matched against."""

    INVOICE = "INVOICE"
    SUBSCRIPTION = "SUBSCRIPTION"
    CHARGE_DECLARATION = "CHARGE_DECLARATION"


class MatchMode(str, Enum):
    """Shape of the match payload."""

    SINGLE = "SINGLE"
    SPLIT = "SPLIT"
    INVERSE = "INVERSE"


@dataclass(frozen=True, order=True)
class DocumentRef:
    """Tagged reference to exactly one document: {kind, id}."""

    kind: DocumentKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"

    @classmethod
    def parse(cls, value: str) -> "DocumentRef":
        """
        Parse "KIND:id" (kind is case-insensitive, e.g. "invoice:F-2025-001").

        Raises:
            ValidationError: If the format or kind is invalid
        """
        kind_str, sep, doc_id = value.partition(":")
        if not sep or not doc_id.strip():
            raise ValidationError(f"Document reference must be KIND:ID, got '{value}'")
        try:
            kind = DocumentKind(kind_str.strip().upper())
        except ValueError:
            raise ValidationError(
                f"Unknown document kind '{kind_str}' in '{value}'", field="kind"
            ) from None
        return cls(kind=kind, id=doc_id.strip())

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentRef":
        return cls(kind=DocumentKind(data["kind"]), id=str(data["id"]))


@dataclass(frozen=True)
class MatchPayload:
    """
    What a reconciled line is linked to.

    Either one document (SINGLE), a set of at least two documents (SPLIT), or
    another bank line cancelling this one out (INVERSE, no documents).
    The references are kept sorted and de-duplicated so equal sets compare equal.
    """

    refs: tuple[DocumentRef, ...]
    mode: MatchMode = MatchMode.SINGLE
    counterpart_line: Optional[str] = None  # INVERSE only

    @classmethod
    def single(cls, ref: DocumentRef) -> "MatchPayload":
        return cls(refs=(ref,), mode=MatchMode.SINGLE)

    @classmethod
    def split(cls, refs: list[DocumentRef] | tuple[DocumentRef, ...]) -> "MatchPayload":
        """
        Build a split payload.

        Raises:
            ValidationError: If fewer than 2 distinct documents are given
        """
        unique = tuple(sorted(set(refs)))
        if len(unique) < 2:
            raise ValidationError(
                "A split match needs at least 2 distinct documents", field="documents"
            )
        return cls(refs=unique, mode=MatchMode.SPLIT)

    @classmethod
    def for_refs(cls, refs: list[DocumentRef] | tuple[DocumentRef, ...]) -> "MatchPayload":
        """Single payload for one document, split payload for several."""
        unique = tuple(sorted(set(refs)))
        if not unique:
            raise ValidationError("At least one document is required", field="documents")
        if len(unique) == 1:
            return cls.single(unique[0])
        return cls(refs=unique, mode=MatchMode.SPLIT)

    @classmethod
    def inverse(cls, line_id: str) -> "MatchPayload":
        """Payload pointing at the bank line that cancels this one out."""
        return cls(refs=(), mode=MatchMode.INVERSE, counterpart_line=line_id)

    @property
    def is_inverse(self) -> bool:
        return self.mode == MatchMode.INVERSE

    def targets(self) -> list[str]:
        """Human-readable targets: "KIND:id" per document, "LINE:<id>" for a paired line."""
        if self.is_inverse:
            return [f"LINE:{self.counterpart_line}"]
        return [str(ref) for ref in self.refs]

    def to_list(self) -> list[dict]:
        if self.is_inverse:
            return [{"line_id": self.counterpart_line}]
        return [ref.to_dict() for ref in self.refs]


@dataclass
class VatBreakdown:
    """VAT decomposition of an amount (all values signed alike)."""

    total_net: Decimal
    total_vat: Decimal
    total_gross: Decimal

    def is_consistent(self, tolerance: Decimal = CENT) -> bool:
        """True if net + vat equals gross within tolerance."""
        return abs(self.total_net + self.total_vat - self.total_gross) < tolerance


def to_decimal(value: Decimal | str | int | float | None, field_name: str = "amount") -> Decimal:
    """
    Convert an amount to a 2-place Decimal.

    Raises:
        ValidationError: If the value cannot be parsed
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, float):
        value = str(value)
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        return Decimal(value).quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name) from None


def validate_amounts(debit: Decimal, credit: Decimal) -> None:
    """
    Check the debit/credit pair of a bank line.

    Raises:
        ValidationError: If an amount is negative or both are non-zero
    """
    if debit < 0:
        raise ValidationError(f"Debit must be non-negative, got {debit}", field="debit")
    if credit < 0:
        raise ValidationError(f"Credit must be non-negative, got {credit}", field="credit")
    if debit != 0 and credit != 0:
        raise ValidationError(
            f"Debit and credit cannot both be non-zero (debit={debit}, credit={credit})",
            field="amount",
        )


@dataclass
class StatementLine:
    """One raw line supplied by the statement import collaborator."""

    value_date: date
    label: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO

    def __post_init__(self) -> None:
        self.debit = to_decimal(self.debit, "debit")
        self.credit = to_decimal(self.credit, "credit")

    def validate(self) -> None:
        validate_amounts(self.debit, self.credit)


@dataclass
class BankTransaction:
    """One bank movement of a batch, with its reconciliation state."""

    line_id: str  # RL-YYYYMMDD-NNNNN
    batch_id: str
    value_date: date
    label: str
    debit: Decimal
    credit: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    match: Optional[MatchPayload] = None
    notes: Optional[str] = None
    match_source: Optional[str] = None  # "RULE:<id>", "MANUAL", "AUTO_CANDIDATE", "INVERSE"
    position: int = 0
    source_key: str = ""
    vat: Optional[VatBreakdown] = None
    detected_counterparty: Optional[str] = None
    detection_score: Optional[int] = None

    @property
    def net_amount(self) -> Decimal:
        """Credit minus debit."""
        return self.credit - self.debit

    @property
    def is_refund(self) -> bool:
        """A positive credit is a refund / credit note."""
        return self.credit > 0

    @property
    def display_amount(self) -> Decimal:
        """Amount as displayed in payment histories: negative for refunds."""
        if self.is_refund:
            return -self.credit
        return self.debit

    def check_invariants(self) -> None:
        """
        Verify status/payload pairing and amounts.

        Raises:
            ValidationError: If amounts are invalid
            ConflictError: If status and payload disagree
        """
        validate_amounts(self.debit, self.credit)
        if self.status.is_reconciled and (self.match is None or not self.match.targets()):
            raise ConflictError(
                f"Line {self.line_id} is {self.status.value} without a match payload",
                current_status=self.status.value,
            )
        if not self.status.is_reconciled and self.match is not None:
            raise ConflictError(
                f"Line {self.line_id} is {self.status.value} but carries a match payload",
                current_status=self.status.value,
            )


@dataclass
class Batch:
    """The ledger of one statement period."""

    batch_id: str  # RAP-YYMM-NN
    period_start: date
    period_end: date
    status: BatchStatus = BatchStatus.IN_PROGRESS
    total_count: int = 0
    reconciled_count: int = 0
    import_complete: bool = False
    version: int = 0
    transactions: list[BankTransaction] = field(default_factory=list)

    @property
    def is_fully_reconciled(self) -> bool:
        return self.total_count > 0 and self.reconciled_count == self.total_count

    @property
    def is_open(self) -> bool:
        return self.status == BatchStatus.IN_PROGRESS

    def check_invariants(self) -> None:
        """
        Raises:
            ConflictError: If counters are out of range
        """
        if not 0 <= self.reconciled_count <= self.total_count:
            raise ConflictError(
                f"Batch {self.batch_id} counters out of range: "
                f"{self.reconciled_count}/{self.total_count}",
                current_status=self.status.value,
            )
