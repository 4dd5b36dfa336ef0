"""
Persistence package for the Gateway.

Record types for content items, refresh logs and API keys, the storage
interfaces they flow through, and the in-memory and PostgreSQL backends.
"""

from .base import ApiKeyStore, LedgerStore
from .memory import InMemoryApiKeyStore, InMemoryLedgerStore
from .models import ApiKeyRecord, ApiUsageEntry, ContentItem, RefreshLogEntry, RefreshStatus

__all__ = [
    "ApiKeyStore",
    "LedgerStore",
    "InMemoryApiKeyStore",
    "InMemoryLedgerStore",
    "ApiKeyRecord",
    "ApiUsageEntry",
    "ContentItem",
    "RefreshLogEntry",
    "RefreshStatus",
]
