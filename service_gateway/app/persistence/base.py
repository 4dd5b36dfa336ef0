"""
Storage interfaces for the freshness ledger and API keys.

Two backends implement them: in-memory (tests, single-node dev) and
PostgreSQL via asyncpg.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from ..ratelimit.fixed_window import QuotaDecision, apply_quota, resolve_limits
from .models import ApiKeyRecord, ApiUsageEntry, ContentItem, RefreshLogEntry


class LedgerStore(ABC):
    """Persistence for content items and the refresh log."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def replace_active(self, item: ContentItem, entry: RefreshLogEntry) -> ContentItem:
        """Deactivate the current active item of item's pair, insert item and append entry.

        Must be atomic per (module, section): two concurrent calls for the same
        pair never leave two active items.
        """

    @abstractmethod
    async def append_log(self, entry: RefreshLogEntry) -> None:
        ...

    @abstractmethod
    async def list_items(self, module: str, section: Optional[str] = None,
                         active_only: bool = True) -> List[ContentItem]:
        ...

    @abstractmethod
    async def list_modules(self) -> List[str]:
        ...

    @abstractmethod
    async def deactivate_expired(self, now: datetime, module: Optional[str] = None) -> int:
        """Turn off active items whose expires_at has passed. Returns the count."""

    @abstractmethod
    async def delete_logs_before(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    async def recent_logs(self, limit: int = 50, module: Optional[str] = None) -> List[RefreshLogEntry]:
        ...


class ApiKeyStore(ABC):
    """Persistence for issued API keys and their quota counters."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        ...

    @abstractmethod
    async def get_by_hash(self, key_hash: str) -> Optional[ApiKeyRecord]:
        ...

    @abstractmethod
    async def consume(self, key_id: str, now: float) -> QuotaDecision:
        """Atomically check and, when allowed, count one request for the key."""

    @abstractmethod
    async def touch(self, key_id: str, used_at: datetime) -> None:
        ...

    @abstractmethod
    async def revoke(self, key_id: str, revoked_at: datetime) -> bool:
        ...

    @abstractmethod
    async def record_usage(self, entry: ApiUsageEntry) -> None:
        ...

    @abstractmethod
    async def list_usage(self, key_id: str, limit: int = 50) -> List[ApiUsageEntry]:
        """Most recent usage entries for the key, newest first."""


def evaluate_quota(record: ApiKeyRecord, now: float) -> Tuple[QuotaDecision, ApiKeyRecord]:
    """Run the fixed-window check for a key and return its updated record."""
    limits = resolve_limits(record.tier, record.monthly_limit, record.per_minute_limit)
    decision, counters = apply_quota(record.tier, record.counters, now, limits)
    return decision, record.with_counters(counters)
