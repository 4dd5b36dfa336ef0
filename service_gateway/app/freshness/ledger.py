"""
Content freshness ledger.

Tracks which ingested payload is current for each (module, section) pair and
keeps an append-only audit trail of ingestion attempts. The ledger itself is
generic over the payload; readers that know a module's shape can ask for the
data to be parsed into a pydantic model.
"""

import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from shared.logging import get_logger
from ..persistence.base import LedgerStore
from ..persistence.models import ContentItem, RefreshLogEntry, RefreshStatus, utc_from_timestamp
from .policies import get_expires_at, get_policy, is_expired, is_stale

M = TypeVar("M", bound=BaseModel)

DEFAULT_RETENTION_DAYS = 30


class FreshnessLedger:
    """Active/stale lifecycle of ingested content."""

    def __init__(self, store: LedgerStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock
        self.logger = get_logger("gateway.freshness_ledger")

    def _now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    async def record_ingestion(self,
                               module: str,
                               section: str,
                               data: Any,
                               source_tag: str,
                               expires_at: Optional[datetime] = None) -> ContentItem:
        """Make data the active item for (module, section) and log a success."""
        section = section or ""
        now = self._now()
        item = ContentItem(
            module=module,
            section=section,
            data=data,
            source_tag=source_tag,
            fetched_at=now,
            expires_at=expires_at or get_expires_at(module, now),
        )
        entry = RefreshLogEntry(
            module=module,
            section=section,
            status=RefreshStatus.SUCCESS,
            timestamped_at=now,
            details={"item_id": item.id, "source": source_tag},
        )
        stored = await self.store.replace_active(item, entry)
        self.logger.info("Recorded ingestion", module=module, section=section, source=source_tag)
        return stored

    async def record_failure(self, module: str, section: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Append a failure entry. Content rows are left untouched."""
        entry = RefreshLogEntry(
            module=module,
            section=section or "",
            status=RefreshStatus.FAILURE,
            timestamped_at=self._now(),
            details=details or {},
        )
        await self.store.append_log(entry)
        self.logger.warning("Recorded ingestion failure", module=module, section=section, details=details)

    async def get_module_content(self,
                                 module: str,
                                 section: Optional[str] = None,
                                 model: Optional[Type[M]] = None) -> List[ContentItem]:
        """Active items for module, optionally narrowed to a section."""
        items = await self.store.list_items(module, section, active_only=True)
        if model is None:
            return items
        return [replace(item, data=model.model_validate(item.data)) for item in items]

    async def get_module_freshness(self, module: str) -> Dict[str, Any]:
        now = self._now()
        items = await self.store.list_items(module, active_only=False)

        source_breakdown: Dict[str, int] = {}
        active = stale = expired = 0
        last_refreshed: Optional[datetime] = None

        for item in items:
            if item.is_active:
                active += 1
                source_breakdown[item.source_tag] = source_breakdown.get(item.source_tag, 0) + 1
                if item.is_past_expiry(now):
                    stale += 1
            elif item.is_past_expiry(now):
                expired += 1
            if last_refreshed is None or item.fetched_at > last_refreshed:
                last_refreshed = item.fetched_at

        policy = get_policy(module)
        return {
            "module": module,
            "total": len(items),
            "active": active,
            "stale": stale,
            "expired": expired,
            "last_refreshed": last_refreshed.isoformat() if last_refreshed else None,
            "source_breakdown": source_breakdown,
            "refresh_priority": policy.refresh_priority.value,
            "refresh_source": policy.refresh_source.value,
            "ttl_hours": policy.ttl_hours,
            "needs_refresh": last_refreshed is None or is_stale(module, last_refreshed, now),
            "overdue": last_refreshed is not None and is_expired(module, last_refreshed, now),
        }

    async def get_all_module_freshness(self) -> Dict[str, Dict[str, Any]]:
        return {
            module: await self.get_module_freshness(module)
            for module in await self.store.list_modules()
        }

    async def get_recent_refresh_logs(self, limit: int = 50, module: Optional[str] = None) -> List[RefreshLogEntry]:
        return await self.store.recent_logs(limit, module)

    async def expire_stale_content(self, module: Optional[str] = None) -> int:
        """Deactivate active items past expires_at. Safe to re-run."""
        count = await self.store.deactivate_expired(self._now(), module)
        if count:
            self.logger.info("Expired stale content items", count=count, module=module or "all")
        return count

    async def prune_refresh_logs(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = self._now() - timedelta(days=retention_days)
        count = await self.store.delete_logs_before(cutoff)
        if count:
            self.logger.info("Pruned refresh logs", count=count, retention_days=retention_days)
        return count
