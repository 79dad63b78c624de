"""
REST document service client.

Endpoints:
- GET    /api/documents/?kind=<KIND>                   paginated {"results": [...], "next": url}
- GET    /api/documents/<kind>/<id>/
- POST   /api/documents/<kind>/<id>/links/              {"line_id": "RL-..."}
- DELETE /api/documents/<kind>/<id>/links/<line_id>/
"""

import logging
from typing import Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import NotFoundError, ValidationError
from ..schemas.documents import DocumentCandidate
from ..schemas.ledger import DocumentKind, DocumentRef
from .base import (
    DocumentProvider,
    DocumentProviderAPIError,
    DocumentProviderConnectionError,
    DocumentProviderError,
)

logger = logging.getLogger(__name__)


class HttpDocumentProvider(DocumentProvider):
    """
    Client for a REST document service.

    Features:
    - Bearer token authentication
    - Per-request timeout
    - Automatic retry with backoff on 429 / 5xx
    - Transparent pagination
    """

    DEFAULT_TIMEOUT = 10
    MAX_PAGES = 100

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the document service client.

        Args:
            base_url: Service URL (e.g., "http://localhost:8000")
            token: API token (sent as Bearer)
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST", "DELETE"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        url: str,
        params: dict | None = None,
        json_data: dict | None = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        if not url.startswith(("http://", "https://")):
            url = f"{self.base_url}{url}"

        logger.debug("API Request: %s %s", method, url)
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error to %s: %s", url, e)
            raise DocumentProviderConnectionError(
                f"Failed to connect to document service at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            logger.error("Timeout for %s: %s", url, e)
            raise DocumentProviderConnectionError(f"Document service timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Request error for %s: %s", url, e)
            raise DocumentProviderError(f"Request failed: {e}") from e

        if not response.ok:
            try:
                message = response.json().get("detail", response.reason)
            except ValueError:
                message = response.reason
            logger.error("API Error %s: %s", response.status_code, message)
            raise DocumentProviderAPIError(response.status_code, str(message))

        return response

    @staticmethod
    def _document_path(ref: DocumentRef) -> str:
        return f"/api/documents/{ref.kind.value.lower()}/{quote(ref.id, safe='')}/"

    def _parse(self, item: dict) -> Optional[DocumentCandidate]:
        try:
            return DocumentCandidate.from_dict(item)
        except (KeyError, ValueError, ValidationError) as e:
            logger.warning("Skipping malformed document %s: %s", item.get("id"), e)
            return None

    def list_candidates(self, kind: Optional[DocumentKind] = None) -> list[DocumentCandidate]:
        """Fetch every document, following `next` links."""
        params = {"kind": kind.value} if kind else None
        url: Optional[str] = "/api/documents/"
        documents: list[DocumentCandidate] = []
        pages = 0

        while url and pages < self.MAX_PAGES:
            data = self._request("GET", url, params=params).json()
            for item in data.get("results", []):
                document = self._parse(item)
                if document is not None:
                    documents.append(document)
            url = data.get("next")
            params = None  # next URL already carries the query
            pages += 1

        logger.debug("Fetched %d document(s) in %d page(s)", len(documents), pages)
        return documents

    def get_candidate(self, ref: DocumentRef) -> DocumentCandidate:
        try:
            response = self._request("GET", self._document_path(ref))
        except DocumentProviderAPIError as e:
            if e.status_code == 404:
                raise NotFoundError("document", str(ref)) from e
            raise
        document = self._parse(response.json())
        if document is None:
            raise DocumentProviderError(f"Malformed document payload for {ref}")
        return document

    def link_transaction(self, ref: DocumentRef, line_id: str) -> None:
        try:
            self._request("POST", f"{self._document_path(ref)}links/", json_data={"line_id": line_id})
        except DocumentProviderAPIError as e:
            if e.status_code == 404:
                raise NotFoundError("document", str(ref)) from e
            raise

    def unlink_transaction(self, ref: DocumentRef, line_id: str) -> None:
        try:
            self._request("DELETE", f"{self._document_path(ref)}links/{quote(line_id, safe='')}/")
        except DocumentProviderAPIError as e:
            # An already removed link is not an error
            if e.status_code != 404:
                raise
