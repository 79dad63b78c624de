"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_reconcile.config import Config, StoreConfig
from ledger_reconcile.documents import StoreDocumentProvider
from ledger_reconcile.schemas import DocumentCandidate, DocumentKind, StatementLine
from ledger_reconcile.services import AggregatorService, ReconciliationService
from ledger_reconcile.state_store import StateStore

SAMPLE_STATEMENT_CSV = """Compte courant n° 00012345678
Solde au 31/03/2025;;;4 210,55
Date;Libellé;Débit;Crédit
05/03/2025;PRLV SEPA EDF PRELEVEMENT;120,00;
12/03/2025;VIR CABINET MARTIN;299,99;
20/03/2025;REMBOURSEMENT ADOBE;;59,99
"""

SAMPLE_DOCUMENTS = [
    DocumentCandidate(
        kind=DocumentKind.INVOICE,
        id="F-001",
        counterparty="EDF",
        amount_due=Decimal("120.00"),
        reference="EDF-2025-03",
        vat_rate_label="normal",
    ),
    DocumentCandidate(
        kind=DocumentKind.INVOICE,
        id="F-300",
        counterparty="Cabinet Martin",
        amount_due=Decimal("300.00"),
    ),
    DocumentCandidate(
        kind=DocumentKind.INVOICE,
        id="F-299",
        counterparty="Cabinet Martin",
        amount_due=Decimal("299.99"),
    ),
    DocumentCandidate(
        kind=DocumentKind.INVOICE,
        id="F-010",
        counterparty="Dupont SARL",
        amount_due=Decimal("100.00"),
    ),
    DocumentCandidate(
        kind=DocumentKind.INVOICE,
        id="F-011",
        counterparty="Dupont SARL",
        amount_due=Decimal("50.00"),
    ),
    DocumentCandidate(
        kind=DocumentKind.SUBSCRIPTION,
        id="AB-01",
        counterparty="Adobe",
        amount_due=Decimal("59.99"),
        vat_rate_label="normal",
    ),
    DocumentCandidate(
        kind=DocumentKind.CHARGE_DECLARATION,
        id="URSSAF-Q1",
        counterparty="URSSAF",
        amount_due=Decimal("850.00"),
        vat_rate_label="exonéré",
    ),
]


def march_lines() -> list[StatementLine]:
    """The three lines of the sample March 2025 statement."""
    return [
        StatementLine(date(2025, 3, 5), "PRLV SEPA EDF PRELEVEMENT", debit=Decimal("120.00")),
        StatementLine(date(2025, 3, 12), "VIR CABINET MARTIN", debit=Decimal("299.99")),
        StatementLine(date(2025, 3, 20), "REMBOURSEMENT ADOBE", credit=Decimal("59.99")),
    ]


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def config() -> Config:
    """Default configuration without retry backoff delays."""
    return Config(store=StoreConfig(max_retries=3, retry_backoff_seconds=0.0))


@pytest.fixture
def provider(store) -> StoreDocumentProvider:
    """Store-backed document provider loaded with the sample documents."""
    provider = StoreDocumentProvider(store)
    for document in SAMPLE_DOCUMENTS:
        provider.upsert_document(document)
    return provider


@pytest.fixture
def service(store, provider, config) -> ReconciliationService:
    return ReconciliationService(store, provider, config)


@pytest.fixture
def aggregator(store, provider) -> AggregatorService:
    return AggregatorService(store, provider)


@pytest.fixture
def sample_statement_csv() -> str:
    return SAMPLE_STATEMENT_CSV


@pytest.fixture
def march_batch(service):
    """Imported March 2025 statement (RAP-2503-01)."""
    result = service.import_statement(date(2025, 3, 1), date(2025, 3, 31), march_lines())
    return result.batch


@pytest.fixture
def statement_lines() -> list[StatementLine]:
    return march_lines()
