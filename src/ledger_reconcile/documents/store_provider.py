"""Document provider backed by the state store's document projection."""

import logging
from typing import Optional

from ..errors import NotFoundError
from ..schemas.documents import DocumentCandidate
from ..schemas.ledger import DocumentKind, DocumentRef
from ..state_store import StateStore
from .base import DocumentProvider

logger = logging.getLogger(__name__)


class StoreDocumentProvider(DocumentProvider):
    """Reads documents from the local `documents` table.

    Link notifications are recorded in `document_links`.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def list_candidates(self, kind: Optional[DocumentKind] = None) -> list[DocumentCandidate]:
        return self.store.list_documents(kind=kind)

    def get_candidate(self, ref: DocumentRef) -> DocumentCandidate:
        document = self.store.get_document(ref)
        if document is None:
            raise NotFoundError("document", str(ref))
        return document

    def link_transaction(self, ref: DocumentRef, line_id: str) -> None:
        logger.debug("Linking %s -> %s", line_id, ref)
        self.store.record_document_link(ref, line_id)

    def unlink_transaction(self, ref: DocumentRef, line_id: str) -> None:
        logger.debug("Unlinking %s -> %s", line_id, ref)
        self.store.remove_document_link(ref, line_id)

    def upsert_document(self, document: DocumentCandidate) -> None:
        """Load or refresh a document in the projection."""
        self.store.upsert_document(document)
