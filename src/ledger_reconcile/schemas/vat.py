"""
VAT rate resolution from free-text labels.

Documents carry their VAT regime as a label ("normal", "Taux réduit",
"20 %", "exonéré"...). Resolution order:
1. exonerated -> 0
2. super-reduced -> 2.1 (checked before "reduced", its label contains it)
3. normal -> 20
4. reduced -> 5.5
5. intermediate -> 10
6. first numeric percentage found in the label
7. 0

Only 1-5 are trusted. A parsed or defaulted rate is reported with a
degraded source so callers can flag it.
"""

import re
import unicodedata
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from .ledger import CENT, VatBreakdown


class VatSource(str, Enum):
    """Where a VAT decomposition or rate came from."""

    STORED = "STORED"  # decomposition recorded on the bank line
    LOOKUP = "LOOKUP"  # keyword table
    PARSED = "PARSED"  # numeric percentage read from free text
    DEFAULT = "DEFAULT"  # nothing usable, 0%

    @property
    def degraded(self) -> bool:
        return self in (VatSource.PARSED, VatSource.DEFAULT)


# Ordered: first match wins
VAT_RATE_KEYWORDS: list[tuple[str, Decimal]] = [
    ("exon", Decimal("0")),
    ("super", Decimal("2.1")),
    ("normal", Decimal("20")),
    ("reduit", Decimal("5.5")),
    ("reduc", Decimal("5.5")),
    ("interm", Decimal("10")),
]

_PERCENT_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*%?")


@dataclass(frozen=True)
class VatRate:
    """A resolved VAT percentage and its provenance."""

    percent: Decimal
    source: VatSource


def _fold(label: str) -> str:
    """Lowercase and strip accents ("Réduit" -> "reduit")."""
    decomposed = unicodedata.normalize("NFD", label.lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c)).strip()


def resolve_vat_rate(label: str | None) -> VatRate:
    """Resolve a VAT label to a percentage."""
    if not label or not label.strip():
        return VatRate(Decimal("0"), VatSource.DEFAULT)

    folded = _fold(label)
    for keyword, percent in VAT_RATE_KEYWORDS:
        if keyword in folded:
            return VatRate(percent, VatSource.LOOKUP)

    match = _PERCENT_RE.search(folded)
    if match:
        return VatRate(Decimal(match.group(1).replace(",", ".")), VatSource.PARSED)

    return VatRate(Decimal("0"), VatSource.DEFAULT)


def decompose_gross(gross: Decimal, percent: Decimal) -> VatBreakdown:
    """
    Split a gross (VAT-inclusive) amount into net and VAT.

    The sign of gross is carried over to all three values.
    """
    net = (gross / (Decimal("1") + percent / Decimal("100"))).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    return VatBreakdown(total_net=net, total_vat=gross - net, total_gross=gross)
