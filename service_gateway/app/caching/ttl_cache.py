"""
In-process TTL cache with an explicit stale-read accessor.

Entries expire lazily: ``get`` ignores anything past its TTL while
``get_stale`` still returns it, flagged, so ingestion can serve the last
good payload when an upstream is down. ``cleanup`` only drops entries that
have been expired for a long time (``stale_grace`` multiples of their TTL).
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

T = TypeVar("T")

DEFAULT_STALE_GRACE = 10


@dataclass
class CacheEntry:
    """One stored value. Replaced wholesale by the next set() on its key."""
    key: str
    value: Any
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class StaleRead(Generic[T]):
    """Result of a stale read."""
    value: T
    is_stale: bool
    stored_at: float


class TTLCache:
    """Thread-safe key/value cache with per-entry TTL."""

    def __init__(self,
                 default_ttl: float = 300.0,
                 stale_grace: int = DEFAULT_STALE_GRACE,
                 clock: Callable[[], float] = time.time,
                 metrics: Optional["MetricsCollector"] = None,
                 name: str = "ttl"):
        self.default_ttl = default_ttl
        self.stale_grace = stale_grace
        self.clock = clock
        self.metrics = metrics
        self.name = name
        self.logger = get_logger("gateway.ttl_cache")

        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._stale_reads = 0

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key, expiring ttl seconds from now."""
        effective_ttl = self.default_ttl if ttl is None else ttl
        if effective_ttl < 0:
            raise ValueError("ttl must be >= 0")
        entry = CacheEntry(key=key, value=value, stored_at=self.clock(), ttl=effective_ttl)
        with self._lock:
            self._entries[key] = entry

    def get(self, key: str) -> Optional[Any]:
        """Return the value only while it is fresh."""
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: str) -> Optional[StaleRead]:
        """Fresh entry for key, or None on a miss. A stored None is still a hit."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_expired(now):
                self._hits += 1
                found: Optional[StaleRead] = StaleRead(value=entry.value, is_stale=False,
                                                       stored_at=entry.stored_at)
            else:
                self._misses += 1
                found = None

        if self.metrics is not None:
            metric = "cache_hits_total" if found is not None else "cache_misses_total"
            self.metrics.increment_counter(metric, cache_type=self.name)
        return found

    def get_stale(self, key: str) -> Optional[StaleRead]:
        """Return the value regardless of expiry, flagged with is_stale."""
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stale = entry.is_expired(now)
            if stale:
                self._stale_reads += 1
            return StaleRead(value=entry.value, is_stale=stale, stored_at=entry.stored_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry and reset counters."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._stale_reads = 0

    def cleanup(self) -> int:
        """Evict entries that have been expired for longer than the stale grace."""
        now = self.clock()
        with self._lock:
            doomed = [
                key for key, entry in self._entries.items()
                if now - entry.stored_at >= entry.ttl * self.stale_grace
            ]
            for key in doomed:
                del self._entries[key]

        if doomed:
            self.logger.info("Evicted long-expired cache entries", count=len(doomed))
        return len(doomed)

    def get_stats(self) -> Dict[str, Any]:
        """Read-only snapshot for health checks."""
        now = self.clock()
        with self._lock:
            entries: List[Dict[str, Any]] = [
                {
                    "key": entry.key,
                    "is_stale": entry.is_expired(now),
                    "age_seconds": round(now - entry.stored_at, 3),
                }
                for entry in self._entries.values()
            ]
            hits, misses, stale_reads = self._hits, self._misses, self._stale_reads

        lookups = hits + misses
        return {
            "entry_count": len(entries),
            "hit_count": hits,
            "miss_count": misses,
            "stale_read_count": stale_reads,
            "hit_rate": round(hits / lookups, 4) if lookups else 0.0,
            "entries": entries,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
