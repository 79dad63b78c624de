"""
Tests for the REST document service client.

These tests use responses library to mock HTTP requests,
validating client behavior without making real API calls.
"""

import json
from decimal import Decimal

import pytest
import responses
from responses import matchers

from ledger_reconcile.documents import (
    DocumentProviderAPIError,
    DocumentProviderConnectionError,
    HttpDocumentProvider,
)
from ledger_reconcile.errors import NotFoundError
from ledger_reconcile.schemas import DocumentKind, DocumentRef

BASE_URL = "http://documents.test:8000"
TOKEN = "test-token-12345"

INVOICE = DocumentRef(DocumentKind.INVOICE, "F-001")


def invoice_payload(doc_id: str = "F-001", amount: str = "120.00") -> dict:
    return {
        "kind": "INVOICE",
        "id": doc_id,
        "counterparty": "EDF",
        "amount_due": amount,
        "vat_rate_label": "normal",
    }


@pytest.fixture
def client():
    return HttpDocumentProvider(BASE_URL, TOKEN, max_retries=0)


class TestHttpDocumentProvider:
    """Test document service client."""

    @responses.activate
    def test_list_candidates_follows_pagination(self, client):
        """All pages are fetched until `next` is empty."""
        responses.add(
            responses.GET,
            f"{BASE_URL}/api/documents/",
            json={
                "results": [invoice_payload("F-001")],
                "next": f"{BASE_URL}/api/documents/?kind=INVOICE&page=2",
            },
            match=[matchers.query_param_matcher({"kind": "INVOICE"})],
        )
        responses.add(
            responses.GET,
            f"{BASE_URL}/api/documents/",
            json={"results": [invoice_payload("F-002", "80,50")], "next": None},
            match=[matchers.query_param_matcher({"kind": "INVOICE", "page": "2"})],
        )

        documents = client.list_candidates(DocumentKind.INVOICE)

        assert [d.id for d in documents] == ["F-001", "F-002"]
        assert documents[1].amount_due == Decimal("80.50")
        assert len(responses.calls) == 2

    @responses.activate
    def test_malformed_documents_skipped(self, client):
        responses.add(
            responses.GET,
            f"{BASE_URL}/api/documents/",
            json={
                "results": [invoice_payload(), {"kind": "RECEIPT", "id": "X"}],
                "next": None,
            },
        )

        assert [d.id for d in client.list_candidates()] == ["F-001"]

    @responses.activate
    def test_bearer_token_sent(self, client):
        responses.add(responses.GET, f"{BASE_URL}/api/documents/invoice/F-001/", json=invoice_payload())

        client.get_candidate(INVOICE)

        assert responses.calls[0].request.headers["Authorization"] == f"Bearer {TOKEN}"

    @responses.activate
    def test_get_candidate(self, client):
        responses.add(responses.GET, f"{BASE_URL}/api/documents/invoice/F-001/", json=invoice_payload())

        document = client.get_candidate(INVOICE)

        assert document.ref == INVOICE
        assert document.counterparty == "EDF"
        assert client.amount_due(INVOICE) == Decimal("120.00")

    @responses.activate
    def test_get_candidate_not_found(self, client):
        responses.add(
            responses.GET,
            f"{BASE_URL}/api/documents/invoice/F-001/",
            json={"detail": "Not found."},
            status=404,
        )

        with pytest.raises(NotFoundError):
            client.get_candidate(INVOICE)
        assert client.exists(INVOICE) is False

    @responses.activate
    def test_api_error_carries_detail(self, client):
        responses.add(
            responses.GET,
            f"{BASE_URL}/api/documents/invoice/F-001/",
            json={"detail": "Invalid token."},
            status=401,
        )

        with pytest.raises(DocumentProviderAPIError) as exc_info:
            client.get_candidate(INVOICE)

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid token."

    @responses.activate
    def test_connection_error(self, client):
        """Unregistered URLs raise ConnectionError in responses."""
        with pytest.raises(DocumentProviderConnectionError):
            client.get_candidate(INVOICE)

    @responses.activate
    def test_link_posts_line_id(self, client):
        responses.add(responses.POST, f"{BASE_URL}/api/documents/invoice/F-001/links/", status=201)

        client.link_transaction(INVOICE, "RL-20250305-00001")

        assert json.loads(responses.calls[0].request.body) == {"line_id": "RL-20250305-00001"}

    @responses.activate
    def test_link_unknown_document(self, client):
        responses.add(responses.POST, f"{BASE_URL}/api/documents/invoice/F-001/links/", status=404)

        with pytest.raises(NotFoundError):
            client.link_transaction(INVOICE, "RL-20250305-00001")

    @responses.activate
    def test_unlink_missing_link_ignored(self, client):
        responses.add(
            responses.DELETE,
            f"{BASE_URL}/api/documents/invoice/F-001/links/RL-20250305-00001/",
            status=404,
        )

        client.unlink_transaction(INVOICE, "RL-20250305-00001")

    @responses.activate
    def test_unlink_server_error_raised(self, client):
        responses.add(
            responses.DELETE,
            f"{BASE_URL}/api/documents/invoice/F-001/links/RL-20250305-00001/",
            status=400,
        )

        with pytest.raises(DocumentProviderAPIError):
            client.unlink_transaction(INVOICE, "RL-20250305-00001")

    def test_base_url_trailing_slash_stripped(self):
        assert HttpDocumentProvider(f"{BASE_URL}/").base_url == BASE_URL
