"""Statement ingestion (bank CSV exports)."""

from .csv_statement import parse_amount, parse_date, read_statement_csv, read_statement_file

__all__ = ["parse_amount", "parse_date", "read_statement_csv", "read_statement_file"]
