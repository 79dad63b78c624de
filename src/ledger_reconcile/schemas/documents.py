"""
Read-only projection of the document universe.

The reconciliation core never mutates invoices, subscriptions or charge
declarations. It reads this projection for scoring and only writes the
link (transaction -> document).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .ledger import DocumentKind, DocumentRef, to_decimal


@dataclass(frozen=True)
class DocumentCandidate:
    """A document as seen by the Candidate Resolver."""

    kind: DocumentKind
    id: str
    counterparty: str
    amount_due: Decimal
    payment_status: str = "UNPAID"
    reference: Optional[str] = None  # invoice number, contract number...
    issued_on: Optional[str] = None  # ISO date
    vat_rate_label: Optional[str] = None  # e.g. "normal", "20%", "exonéré"

    @property
    def ref(self) -> DocumentRef:
        return DocumentRef(kind=self.kind, id=self.id)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "counterparty": self.counterparty,
            "amount_due": f"{self.amount_due:.2f}",
            "payment_status": self.payment_status,
            "reference": self.reference,
            "issued_on": self.issued_on,
            "vat_rate_label": self.vat_rate_label,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentCandidate":
        return cls(
            kind=DocumentKind(str(data["kind"]).upper()),
            id=str(data["id"]),
            counterparty=data.get("counterparty") or "",
            amount_due=to_decimal(data.get("amount_due"), "amount_due"),
            payment_status=data.get("payment_status") or "UNPAID",
            reference=data.get("reference"),
            issued_on=data.get("issued_on"),
            vat_rate_label=data.get("vat_rate_label"),
        )
