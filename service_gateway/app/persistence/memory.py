"""
In-memory storage backends.
"""

import asyncio
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from shared.logging import get_logger
from ..ratelimit.fixed_window import QuotaDecision
from .base import ApiKeyStore, LedgerStore, evaluate_quota
from .models import ApiKeyRecord, ApiUsageEntry, ContentItem, RefreshLogEntry


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger. One asyncio.Lock per (module, section)."""

    def __init__(self):
        self.logger = get_logger("gateway.persistence.memory")
        self._items: Dict[Tuple[str, str], List[ContentItem]] = defaultdict(list)
        self._logs: List[RefreshLogEntry] = []
        self._pair_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, module: str, section: str) -> asyncio.Lock:
        key = (module, section)
        lock = self._pair_locks.get(key)
        if lock is None:
            lock = self._pair_locks.setdefault(key, asyncio.Lock())
        return lock

    async def replace_active(self, item: ContentItem, entry: RefreshLogEntry) -> ContentItem:
        async with self._lock_for(item.module, item.section):
            for existing in self._items[(item.module, item.section)]:
                if existing.is_active:
                    existing.is_active = False
            self._items[(item.module, item.section)].append(replace(item))
            self._logs.append(entry)
        return item

    async def append_log(self, entry: RefreshLogEntry) -> None:
        self._logs.append(entry)

    async def list_items(self, module: str, section: Optional[str] = None,
                         active_only: bool = True) -> List[ContentItem]:
        found: List[ContentItem] = []
        for (item_module, item_section), items in list(self._items.items()):
            if item_module != module:
                continue
            if section is not None and item_section != section:
                continue
            found.extend(i for i in items if i.is_active or not active_only)
        found.sort(key=lambda i: i.fetched_at, reverse=True)
        return [replace(i) for i in found]

    async def list_modules(self) -> List[str]:
        return sorted({module for module, _ in self._items.keys()})

    async def deactivate_expired(self, now: datetime, module: Optional[str] = None) -> int:
        count = 0
        for (item_module, _), items in list(self._items.items()):
            if module is not None and item_module != module:
                continue
            for item in items:
                if item.is_active and item.is_past_expiry(now):
                    item.is_active = False
                    count += 1
        return count

    async def delete_logs_before(self, cutoff: datetime) -> int:
        before = len(self._logs)
        self._logs = [entry for entry in self._logs if entry.timestamped_at >= cutoff]
        return before - len(self._logs)

    async def recent_logs(self, limit: int = 50, module: Optional[str] = None) -> List[RefreshLogEntry]:
        entries = [e for e in self._logs if module is None or e.module == module]
        entries.sort(key=lambda e: e.timestamped_at, reverse=True)
        return entries[:limit]


class InMemoryApiKeyStore(ApiKeyStore):
    """Process-local key store with one threading.Lock per key."""

    def __init__(self):
        self.logger = get_logger("gateway.persistence.memory")
        self._by_hash: Dict[str, ApiKeyRecord] = {}
        self._hash_by_id: Dict[str, str] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._usage: Dict[str, List[ApiUsageEntry]] = defaultdict(list)

    def _lock_for(self, key_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key_id)
            if lock is None:
                lock = self._key_locks[key_id] = threading.Lock()
            return lock

    def _record(self, key_id: str) -> Optional[ApiKeyRecord]:
        key_hash = self._hash_by_id.get(key_id)
        return self._by_hash.get(key_hash) if key_hash else None

    async def create(self, record: ApiKeyRecord) -> ApiKeyRecord:
        with self._registry_lock:
            if record.key_hash in self._by_hash:
                raise ValueError("API key hash already exists")
            self._by_hash[record.key_hash] = record
            self._hash_by_id[record.key_id] = record.key_hash
        return replace(record)

    async def get_by_hash(self, key_hash: str) -> Optional[ApiKeyRecord]:
        record = self._by_hash.get(key_hash)
        return replace(record) if record is not None else None

    async def consume(self, key_id: str, now: float) -> QuotaDecision:
        with self._lock_for(key_id):
            record = self._record(key_id)
            if record is None:
                raise KeyError(key_id)
            decision, updated = evaluate_quota(record, now)
            self._by_hash[record.key_hash] = updated
        return decision

    async def touch(self, key_id: str, used_at: datetime) -> None:
        with self._lock_for(key_id):
            record = self._record(key_id)
            if record is not None:
                self._by_hash[record.key_hash] = replace(record, last_used_at=used_at)

    async def revoke(self, key_id: str, revoked_at: datetime) -> bool:
        with self._lock_for(key_id):
            record = self._record(key_id)
            if record is None:
                return False
            self._by_hash[record.key_hash] = replace(record, is_active=False, revoked_at=revoked_at)
        return True

    async def record_usage(self, entry: ApiUsageEntry) -> None:
        with self._lock_for(entry.key_id):
            self._usage[entry.key_id].append(entry)

    async def list_usage(self, key_id: str, limit: int = 50) -> List[ApiUsageEntry]:
        with self._lock_for(key_id):
            entries = list(reversed(self._usage.get(key_id, ())))
        entries.sort(key=lambda e: e.requested_at, reverse=True)
        return entries[:limit]
