"""
Document provider interface.

A provider exposes the invoice / subscription / charge-declaration universe
to the reconciliation core. The core only reads documents and writes links
(transaction -> document); it never edits a document itself.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from ..errors import NotFoundError
from ..schemas.documents import DocumentCandidate
from ..schemas.ledger import DocumentKind, DocumentRef


class DocumentProviderError(Exception):
    """Base exception for document provider errors."""

    pass


class DocumentProviderConnectionError(DocumentProviderError):
    """Failed to reach the document service."""

    pass


class DocumentProviderAPIError(DocumentProviderError):
    """Document service returned an error response."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Document service error {status_code}: {message}")


class DocumentProvider(ABC):
    """Source of candidate documents and sink for link notifications."""

    @abstractmethod
    def list_candidates(self, kind: Optional[DocumentKind] = None) -> list[DocumentCandidate]:
        """All documents, optionally restricted to one kind."""

    @abstractmethod
    def get_candidate(self, ref: DocumentRef) -> DocumentCandidate:
        """
        One document.

        Raises:
            NotFoundError: If the document does not exist
        """

    @abstractmethod
    def link_transaction(self, ref: DocumentRef, line_id: str) -> None:
        """Notify the document side that a bank line settles this document."""

    @abstractmethod
    def unlink_transaction(self, ref: DocumentRef, line_id: str) -> None:
        """Notify the document side that a link was removed."""

    def amount_due(self, ref: DocumentRef) -> Decimal:
        return self.get_candidate(ref).amount_due

    def counterparty_name(self, ref: DocumentRef) -> str:
        return self.get_candidate(ref).counterparty

    def exists(self, ref: DocumentRef) -> bool:
        try:
            self.get_candidate(ref)
        except NotFoundError:
            return False
        return True
