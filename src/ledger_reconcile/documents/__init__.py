"""Document provider collaborators (invoices, subscriptions, charge declarations)."""

from .base import (
    DocumentProvider,
    DocumentProviderAPIError,
    DocumentProviderConnectionError,
    DocumentProviderError,
)
from .http_client import HttpDocumentProvider
from .store_provider import StoreDocumentProvider

__all__ = [
    "DocumentProvider",
    "DocumentProviderAPIError",
    "DocumentProviderConnectionError",
    "DocumentProviderError",
    "HttpDocumentProvider",
    "StoreDocumentProvider",
]
