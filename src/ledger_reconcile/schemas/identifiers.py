"""
Identifier generation (SSOT).

This module defines THE two numbering schemes of the ledger. No other
module may format a line or batch identifier.

Formats:
1. Line identifier: RL-YYYYMMDD-NNNNN
   - YYYYMMDD = value date of the bank movement
   - NNNNN = per-day counter, zero-padded to 5 digits (1..99999)

2. Batch identifier: RAP-YYMM-NN
   - YY = two-digit year, MM = month of the statement period
   - NN = per-month counter, zero-padded to 2 digits (1..99)

Both generators are pure: the counter is supplied by the persistence layer,
which owns the atomic increment-and-read (see StateStore.next_sequence).

The module also computes the source key used to make statement imports
idempotent per source line.
"""

import hashlib
from datetime import date
from decimal import Decimal

from ..errors import SequenceExhausted

# ============================================================================
# SSOT Constants for identifiers
# ============================================================================

LINE_ID_PREFIX = "RL"
BATCH_ID_PREFIX = "RAP"

LINE_SEQUENCE_WIDTH = 5
BATCH_SEQUENCE_WIDTH = 2

MAX_LINE_SEQUENCE = 10**LINE_SEQUENCE_WIDTH - 1  # 99999
MAX_BATCH_SEQUENCE = 10**BATCH_SEQUENCE_WIDTH - 1  # 99

# Length of the hash prefix used for source keys
SOURCE_KEY_LENGTH = 16


def line_scope(transaction_date: date) -> str:
    """Counter scope for line identifiers of a given day."""
    return f"line:{transaction_date:%Y%m%d}"


def batch_scope(year: int, month: int) -> str:
    """Counter scope for batch identifiers of a given month."""
    return f"batch:{year % 100:02d}{month:02d}"


def next_line_id(transaction_date: date, counter_for_date: int) -> str:
    """
    Format the line identifier for a movement.

    Args:
        transaction_date: Value date of the bank movement
        counter_for_date: Sequence number already allocated for that day (1-based)

    Returns:
        Identifier like "RL-20250305-00001"

    Raises:
        SequenceExhausted: If the counter exceeds 99999
        ValueError: If the counter is not positive
    """
    if counter_for_date < 1:
        raise ValueError(f"counter must be >= 1, got {counter_for_date}")
    if counter_for_date > MAX_LINE_SEQUENCE:
        raise SequenceExhausted(line_scope(transaction_date), MAX_LINE_SEQUENCE)

    return (
        f"{LINE_ID_PREFIX}-{transaction_date:%Y%m%d}-"
        f"{counter_for_date:0{LINE_SEQUENCE_WIDTH}d}"
    )


def next_batch_id(year: int, month: int, counter_for_month: int) -> str:
    """
    Format the batch identifier for a statement period.

    Args:
        year: Four-digit year of the period start
        month: Month of the period start (1-12)
        counter_for_month: Sequence number already allocated for that month (1-based)

    Returns:
        Identifier like "RAP-2503-01"

    Raises:
        SequenceExhausted: If the counter exceeds 99
        ValueError: If month or counter is out of range
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12, got {month}")
    if counter_for_month < 1:
        raise ValueError(f"counter must be >= 1, got {counter_for_month}")
    if counter_for_month > MAX_BATCH_SEQUENCE:
        raise SequenceExhausted(batch_scope(year, month), MAX_BATCH_SEQUENCE)

    return (
        f"{BATCH_ID_PREFIX}-{year % 100:02d}{month:02d}-"
        f"{counter_for_month:0{BATCH_SEQUENCE_WIDTH}d}"
    )


def _normalize_label(label: str | None) -> str:
    """Normalize a label for hashing (collapse whitespace, lowercase)."""
    if not label:
        return ""
    return " ".join(label.split()).lower()


def compute_source_key(
    value_date: date,
    label: str,
    debit: Decimal,
    credit: Decimal,
    occurrence: int = 0,
) -> str:
    """
    Compute the deterministic key of a statement line.

    Identical lines inside one statement (same day, label and amounts) are
    told apart by their occurrence index, so re-importing the same statement
    maps every line onto the key it had the first time.

    Hash components (in order):
    - value date (YYYY-MM-DD)
    - normalized label
    - debit, credit (2 decimal places)
    - occurrence index
    """
    parts = [
        value_date.isoformat(),
        _normalize_label(label),
        f"{debit:.2f}",
        f"{credit:.2f}",
        str(occurrence),
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:SOURCE_KEY_LENGTH]
