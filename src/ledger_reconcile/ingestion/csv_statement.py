"""
Bank statement CSV reader.

Turns a bank's CSV export into ordered StatementLine tuples for import.
Handles the usual French bank export quirks:
- preamble rows (account number, balance) before the header
- ';' delimiter and comma decimals ("1 234,56")
- separate Débit / Crédit columns, or one signed Montant column
"""

import csv
import io
import logging
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from ..errors import ValidationError
from ..schemas.ledger import ZERO, StatementLine

logger = logging.getLogger(__name__)

DATE_FORMATS = [
    "%d/%m/%Y",  # 05/03/2025
    "%d-%m-%Y",  # 05-03-2025
    "%Y-%m-%d",  # 2025-03-05
    "%d/%m/%y",  # 05/03/25
    "%d.%m.%Y",  # 05.03.2025
]

DATE_HEADERS = ("date valeur", "date de valeur", "value date", "date operation", "date")
LABEL_HEADERS = ("libelle", "label", "description", "intitule")
DEBIT_HEADERS = ("debit",)
CREDIT_HEADERS = ("credit",)
AMOUNT_HEADERS = ("montant", "amount")

CANDIDATE_DELIMITERS = ";,\t"


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.strip().lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def parse_date(value: str) -> Optional[date]:
    """Parse a statement date, None if no known format applies."""
    value = value.strip().strip('"').strip()
    if not value:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value: str) -> Optional[Decimal]:
    """
    Parse a bank amount to Decimal.

    Handles:
    - comma or dot decimals; the right-most separator is the decimal one
    - space / NBSP / apostrophe thousands separators
    - currency symbols (EUR, €)
    - negatives as -12,00 or (12,00)

    Returns:
        Decimal if successful, None for an empty cell

    Raises:
        ValueError: If the cell is not an amount
    """
    text = value.strip().strip('"').strip()
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    text = re.sub(r"(EUR|€|\s|')", "", text, flags=re.IGNORECASE)
    if text.startswith("-"):
        negative = True
        text = text[1:]
    elif text.startswith("+"):
        text = text[1:]

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        text = text.replace(",", ".")

    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Not an amount: {value!r}") from None
    return -amount if negative else amount


def _find_column(header: list[str], names: tuple[str, ...]) -> Optional[int]:
    folded = [_fold(h) for h in header]
    for name in names:
        for index, column in enumerate(folded):
            if column == name:
                return index
    for name in names:
        for index, column in enumerate(folded):
            if column.startswith(name):
                return index
    return None


def _sniff_delimiter(content: str) -> str:
    sample = "\n".join(content.splitlines()[:20])
    try:
        return csv.Sniffer().sniff(sample, delimiters=CANDIDATE_DELIMITERS).delimiter
    except csv.Error:
        counts = {d: sample.count(d) for d in CANDIDATE_DELIMITERS}
        return max(counts, key=counts.get)


def read_statement_csv(content: str, delimiter: Optional[str] = None) -> list[StatementLine]:
    """
    Parse CSV content into statement lines, in file order.

    Args:
        content: Decoded CSV text
        delimiter: Column delimiter (sniffed when None)

    Returns:
        Ordered list of StatementLine. Debits are positive.

    Raises:
        ValidationError: If no header row is found or an amount cannot be parsed
    """
    delimiter = delimiter or _sniff_delimiter(content)
    rows = list(csv.reader(io.StringIO(content), delimiter=delimiter))

    header_index = None
    for index, row in enumerate(rows):
        if _find_column(row, DATE_HEADERS) is not None and _find_column(row, LABEL_HEADERS) is not None:
            header_index = index
            break
    if header_index is None:
        raise ValidationError("No header row with a date and a label column", field="header")

    header = rows[header_index]
    date_col = _find_column(header, DATE_HEADERS)
    label_col = _find_column(header, LABEL_HEADERS)
    debit_col = _find_column(header, DEBIT_HEADERS)
    credit_col = _find_column(header, CREDIT_HEADERS)
    amount_col = _find_column(header, AMOUNT_HEADERS)
    if (debit_col is None or credit_col is None) and amount_col is None:
        raise ValidationError(
            "Statement needs Debit and Credit columns or a signed Amount column", field="header"
        )

    def cell(row: list[str], column: Optional[int]) -> str:
        if column is None or column >= len(row):
            return ""
        return row[column]

    lines: list[StatementLine] = []
    for row_number, row in enumerate(rows[header_index + 1 :], start=header_index + 2):
        if not any(c.strip() for c in row):
            continue

        value_date = parse_date(cell(row, date_col))
        if value_date is None:
            logger.warning("Row %d: unparseable date %r, skipped", row_number, cell(row, date_col))
            continue

        try:
            if debit_col is not None and credit_col is not None:
                debit = abs(parse_amount(cell(row, debit_col)) or ZERO)
                credit = abs(parse_amount(cell(row, credit_col)) or ZERO)
            else:
                amount = parse_amount(cell(row, amount_col)) or ZERO
                debit = -amount if amount < 0 else ZERO
                credit = amount if amount > 0 else ZERO
        except ValueError as e:
            raise ValidationError(f"Row {row_number}: {e}", field="amount") from e

        label = " ".join(cell(row, label_col).split())
        lines.append(StatementLine(value_date=value_date, label=label, debit=debit, credit=credit))

    logger.info("Read %d statement line(s)", len(lines))
    return lines


def read_statement_file(
    path: Path,
    encoding: str = "utf-8-sig",
    delimiter: Optional[str] = None,
) -> list[StatementLine]:
    """Read a CSV statement from disk."""
    with open(path, encoding=encoding, newline="") as f:
        content = f.read()
    return read_statement_csv(content, delimiter=delimiter)
