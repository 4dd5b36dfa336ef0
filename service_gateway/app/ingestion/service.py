"""
Ingestion routine and degraded-mode read path.

``ingest`` calls a provider through its circuit breaker with a bounded
timeout. Success refreshes the TTL cache and the freshness ledger; failure is
recorded and answered from the best fallback available:

1. the TTL cache stale read,
2. the ledger's last known good content,
3. an explicit empty payload with a warning.

Nothing raised by a provider escapes this module.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TYPE_CHECKING

from shared.circuit_breaker import CircuitBreakerOpenError, CircuitBreakerRegistry
from shared.logging import get_logger
from ..caching.coalescer import RequestCoalescer
from ..caching.ttl_cache import TTLCache
from ..freshness.ledger import FreshnessLedger
from ..persistence.models import utc_from_timestamp

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


SOURCE_LIVE = "live"
SOURCE_CACHE = "cache"
SOURCE_LEDGER = "ledger"
SOURCE_NONE = "none"


class Provider(Protocol):
    """What ingestion needs from an upstream provider."""
    name: str
    module: str
    section: str
    source_tag: str
    ttl_seconds: float

    @property
    def cache_key(self) -> str: ...

    def fetch(self) -> Awaitable[Any]: ...


@dataclass
class ContentEnvelope:
    """Payload plus provenance, served unchanged by read endpoints."""
    data: Any
    cached: bool
    stale: bool
    cached_at: Optional[str]
    source: str
    source_breakdown: Dict[str, int] = field(default_factory=dict)
    warning: Optional[str] = None

    @property
    def meta(self) -> Dict[str, Any]:
        meta = {
            "cached": self.cached,
            "stale": self.stale,
            "cached_at": self.cached_at,
            "source": self.source,
            "source_breakdown": self.source_breakdown,
        }
        if self.warning:
            meta["warning"] = self.warning
        return meta

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "meta": self.meta}


@dataclass
class IngestionResult:
    """Outcome of one ingestion attempt."""
    provider: str
    module: str
    section: str
    success: bool
    envelope: ContentEnvelope
    error: Optional[str] = None
    error_type: Optional[str] = None
    breaker_state: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "module": self.module,
            "section": self.section,
            "success": self.success,
            "error": self.error,
            "error_type": self.error_type,
            "breaker_state": self.breaker_state,
            "duration_ms": self.duration_ms,
            "meta": self.envelope.meta,
        }


def _record_count(data: Any) -> int:
    if isinstance(data, list):
        return len(data)
    return 0 if data is None else 1


class IngestionService:
    """Runs provider calls and serves content with fallbacks."""

    def __init__(self,
                 cache: TTLCache,
                 breakers: CircuitBreakerRegistry,
                 ledger: FreshnessLedger,
                 metrics: Optional["MetricsCollector"] = None,
                 upstream_timeout: float = 10.0,
                 refresh_log_retention_days: int = 30,
                 coalescer: Optional[RequestCoalescer] = None,
                 clock: Callable[[], float] = time.time):
        self.cache = cache
        self.breakers = breakers
        self.ledger = ledger
        self.metrics = metrics
        self.upstream_timeout = upstream_timeout
        self.refresh_log_retention_days = refresh_log_retention_days
        self.coalescer = coalescer
        self.clock = clock
        self.providers: Dict[str, Provider] = {}
        self.logger = get_logger("gateway.ingestion")

    def register(self, provider: Provider) -> None:
        self.providers[provider.module] = provider

    def get_provider(self, module: str) -> Optional[Provider]:
        return self.providers.get(module)

    def _iso(self, ts: float) -> str:
        return utc_from_timestamp(ts).isoformat()

    async def ingest(self, provider: Provider) -> IngestionResult:
        """Fetch from the provider and record the outcome. Never raises."""
        started = self.clock()
        error_type: Optional[str] = None

        try:
            data = await self.breakers.call(provider.name, provider.fetch, timeout=self.upstream_timeout)
        except CircuitBreakerOpenError as e:
            error, error_type = str(e), "breaker_open"
        except asyncio.TimeoutError:
            error, error_type = f"timeout after {self.upstream_timeout}s", "timeout"
        except Exception as e:
            error, error_type = str(e) or type(e).__name__, type(e).__name__
        else:
            return await self._on_success(provider, data, started)

        return await self._on_failure(provider, error, error_type, started)

    async def _on_success(self, provider: Provider, data: Any, started: float) -> IngestionResult:
        now = self.clock()
        self.cache.set(provider.cache_key, data, provider.ttl_seconds)
        try:
            await self.ledger.record_ingestion(provider.module, provider.section, data, provider.source_tag)
        except Exception as e:
            # The fresh payload is already cached; a ledger outage only loses history
            self.logger.error("Failed to record ingestion", provider=provider.name, error=str(e))

        self._count("ingestion_attempts_total", provider=provider.name, status="success")
        if self.metrics is not None:
            self.metrics.observe_histogram("ingestion_duration_seconds", now - started, provider=provider.name)

        envelope = ContentEnvelope(
            data=data,
            cached=False,
            stale=False,
            cached_at=self._iso(now),
            source=SOURCE_LIVE,
            source_breakdown={provider.source_tag: _record_count(data)},
        )
        return IngestionResult(
            provider=provider.name,
            module=provider.module,
            section=provider.section,
            success=True,
            envelope=envelope,
            breaker_state=self.breakers.get_circuit_breaker(provider.name).state.value,
            duration_ms=round((now - started) * 1000, 2),
        )

    async def _on_failure(self, provider: Provider, error: str, error_type: str, started: float) -> IngestionResult:
        breaker_state = self.breakers.get_circuit_breaker(provider.name).state.value
        self.logger.warning("Ingestion failed, falling back", provider=provider.name,
                            module=provider.module, error=error, error_type=error_type,
                            breaker_state=breaker_state)
        try:
            await self.ledger.record_failure(provider.module, provider.section, {
                "error": error,
                "error_type": error_type,
                "breaker_state": breaker_state,
            })
        except Exception as e:
            self.logger.error("Failed to record ingestion failure", provider=provider.name, error=str(e))

        if error_type == "breaker_open":
            self._count("circuit_breaker_rejections_total", dependency=provider.name)
            self._count("ingestion_attempts_total", provider=provider.name, status="rejected")
        else:
            self._count("ingestion_attempts_total", provider=provider.name, status="failure")

        envelope = await self.fallback(provider, error)
        return IngestionResult(
            provider=provider.name,
            module=provider.module,
            section=provider.section,
            success=False,
            envelope=envelope,
            error=error,
            error_type=error_type,
            breaker_state=breaker_state,
            duration_ms=round((self.clock() - started) * 1000, 2),
        )

    async def fallback(self, provider: Provider, error: Optional[str] = None) -> ContentEnvelope:
        """Best available content when the provider cannot be reached."""
        stale = self.cache.get_stale(provider.cache_key)
        if stale is not None:
            self._count("fallback_reads_total", module=provider.module, source=SOURCE_CACHE)
            return ContentEnvelope(
                data=stale.value,
                cached=True,
                stale=stale.is_stale,
                cached_at=self._iso(stale.stored_at),
                source=SOURCE_CACHE,
                source_breakdown={provider.source_tag: _record_count(stale.value)},
                warning="Upstream unavailable; serving cached data" if stale.is_stale else None,
            )

        try:
            items = await self.ledger.get_module_content(provider.module, provider.section)
        except Exception as e:
            self.logger.error("Ledger fallback failed", module=provider.module, error=str(e))
            items = []

        if items:
            latest = items[0]
            self._count("fallback_reads_total", module=provider.module, source=SOURCE_LEDGER)
            is_stale = latest.is_past_expiry(utc_from_timestamp(self.clock()))
            return ContentEnvelope(
                data=latest.data,
                cached=True,
                stale=is_stale,
                cached_at=latest.fetched_at.isoformat(),
                source=SOURCE_LEDGER,
                source_breakdown={latest.source_tag: _record_count(latest.data)},
                warning="Upstream unavailable; serving last known good data",
            )

        self._count("fallback_reads_total", module=provider.module, source=SOURCE_NONE)
        return ContentEnvelope(
            data=[],
            cached=False,
            stale=False,
            cached_at=None,
            source=SOURCE_NONE,
            warning=f"No {provider.module} data available right now" + (f" ({error})" if error else ""),
        )

    async def read(self, provider: Provider) -> ContentEnvelope:
        """Serve fresh cache when possible, otherwise ingest (with fallback)."""
        entry = self.cache.get_entry(provider.cache_key)
        if entry is not None:
            return ContentEnvelope(
                data=entry.value,
                cached=True,
                stale=False,
                cached_at=self._iso(entry.stored_at),
                source=SOURCE_CACHE,
                source_breakdown={provider.source_tag: _record_count(entry.value)},
            )

        if self.coalescer is not None:
            result = await self.coalescer.run(provider.cache_key, lambda: self.ingest(provider))
        else:
            result = await self.ingest(provider)
        return result.envelope

    async def run_cleanup(self) -> Dict[str, int]:
        """Expire stale ledger content, prune old logs and drop long-expired cache entries."""
        expired = await self.ledger.expire_stale_content()
        pruned = await self.ledger.prune_refresh_logs(self.refresh_log_retention_days)
        evicted = self.cache.cleanup()
        self.logger.info("Cleanup complete", expired=expired, pruned=pruned, evicted=evicted)
        return {"expired_items": expired, "pruned_logs": pruned, "evicted_cache_entries": evicted}

    def _count(self, metric: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric, **labels)
