"""
API Gateway service for the SpaceNexus Access Layer.
"""

import os
import platform
import secrets
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from shared.background import drain, pending_task_count
from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerRegistry, CircuitBreakerState
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, ValidationError

from .adapters.providers import (
    HttpProvider,
    LaunchScheduleProvider,
    MarketDataProvider,
    NewsWireProvider,
    OpportunitiesProvider,
    SpaceWeatherProvider,
)
from .caching.coalescer import RequestCoalescer
from .caching.ttl_cache import TTLCache
from .domain.api_key_gateway import ApiKeyGateway, AuthFailure
from .freshness.ledger import FreshnessLedger
from .freshness.policies import get_modules_needing_refresh
from .ingestion.scheduler import IngestionScheduler, provider_job_label
from .ingestion.service import ContentEnvelope, IngestionService, Provider, SOURCE_NONE
from .persistence.base import ApiKeyStore, LedgerStore
from .persistence.memory import InMemoryApiKeyStore, InMemoryLedgerStore
from .ratelimit.fixed_window import Tier

try:
    import resource
except ImportError:  # pragma: no cover - not available on Windows
    resource = None


DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


def _validation_details(error: PydanticValidationError) -> Dict[str, Any]:
    return {"errors": [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in error.errors()
    ]}


class RefreshRequest(BaseModel):
    """Body of POST /admin/data-freshness."""
    module: str = Field(..., min_length=1)


class IssueKeyRequest(BaseModel):
    """Body of POST /admin/api-keys."""
    tier: Tier
    name: str = ""
    monthly_limit: Optional[int] = Field(default=None, ge=1)
    per_minute_limit: Optional[int] = Field(default=None, ge=1)


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 *,
                 ledger_store: Optional[LedgerStore] = None,
                 api_key_store: Optional[ApiKeyStore] = None,
                 providers: Optional[List[Provider]] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__("gateway", 8000, config or get_config("gateway", 8000))
        self.clock = clock
        self.persistence = None

        if ledger_store is None or api_key_store is None:
            default_ledger, default_keys = self._build_stores()
            ledger_store = ledger_store or default_ledger
            api_key_store = api_key_store or default_keys
        self.ledger_store = ledger_store
        self.api_key_store = api_key_store

        self.cache = TTLCache(
            default_ttl=self.config.cache_default_ttl_seconds,
            stale_grace=self.config.cache_stale_grace,
            clock=clock,
            metrics=self.metrics,
            name="content",
        )
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=self.config.breaker_failure_threshold,
            recovery_timeout=self.config.breaker_recovery_timeout,
            default_timeout=self.config.upstream_timeout_seconds,
            clock=clock,
            on_state_change=self._on_breaker_state_change,
        )
        self.ledger = FreshnessLedger(ledger_store, clock=clock)
        self.ingestion = IngestionService(
            cache=self.cache,
            breakers=self.breakers,
            ledger=self.ledger,
            metrics=self.metrics,
            upstream_timeout=self.config.upstream_timeout_seconds,
            refresh_log_retention_days=self.config.refresh_log_retention_days,
            coalescer=RequestCoalescer() if self.config.cache_coalesce_misses else None,
            clock=clock,
        )
        self.api_key_gateway = ApiKeyGateway(
            api_key_store,
            metrics=self.metrics,
            clock=clock,
            key_prefix=self.config.api_key_prefix,
        )

        for provider in (providers if providers is not None else self._build_providers()):
            self.ingestion.register(provider)

        self.scheduler = IngestionScheduler(self.ingestion, clock=clock)
        self._schedule_jobs()

        self.app.state.gateway_service = self

        @self.app.on_event("startup")
        async def _startup():
            await self.ledger_store.start()
            await self.api_key_store.start()
            if self.config.enable_scheduler:
                await self.scheduler.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.scheduler.stop()
            await drain()
            await self.api_key_store.stop()
            await self.ledger_store.stop()

        self._setup_public_routes()
        self._setup_admin_routes()

    # -- wiring ---------------------------------------------------------

    def _build_stores(self) -> Tuple[LedgerStore, ApiKeyStore]:
        if not self.config.postgres_dsn:
            self.logger.info("Using in-memory ledger and API key stores")
            return InMemoryLedgerStore(), InMemoryApiKeyStore()

        from .persistence.postgres import (
            PostgreSQLApiKeyStore,
            PostgreSQLLedgerStore,
            PostgreSQLPersistence,
        )
        self.persistence = PostgreSQLPersistence(self.config.postgres_dsn)
        return PostgreSQLLedgerStore(self.persistence), PostgreSQLApiKeyStore(self.persistence)

    def _build_providers(self) -> List[HttpProvider]:
        timeout = self.config.upstream_timeout_seconds
        providers: List[HttpProvider] = [
            LaunchScheduleProvider(self.config.launch_library_url, timeout=timeout,
                                   ttl_seconds=self.config.launches_interval_seconds),
            NewsWireProvider(self.config.spaceflight_news_url, timeout=timeout,
                             ttl_seconds=self.config.news_interval_seconds),
            SpaceWeatherProvider(self.config.noaa_swpc_url, timeout=timeout,
                                 ttl_seconds=self.config.space_weather_interval_seconds),
        ]
        if self.config.market_data_url:
            providers.append(MarketDataProvider(self.config.market_data_url, timeout=timeout,
                                                ttl_seconds=self.config.market_data_interval_seconds))
        if self.config.opportunities_url:
            providers.append(OpportunitiesProvider(self.config.opportunities_url, timeout=timeout,
                                                   ttl_seconds=self.config.opportunities_interval_seconds))
        return providers

    def _schedule_jobs(self):
        intervals = {
            "launches": self.config.launches_interval_seconds,
            "news": self.config.news_interval_seconds,
            "space-weather": self.config.space_weather_interval_seconds,
            "market-data": self.config.market_data_interval_seconds,
            "opportunities": self.config.opportunities_interval_seconds,
        }
        # Jobs start in registration order, so the most urgent feeds refresh first
        urgency = {module: rank for rank, module in enumerate(get_modules_needing_refresh())}
        modules = sorted(self.ingestion.providers, key=lambda m: (urgency.get(m, len(urgency)), m))
        for module in modules:
            interval = intervals.get(module, self.config.news_interval_seconds)
            self.scheduler.add_provider_job(self.ingestion.providers[module], interval)

        self.scheduler.add_cleanup_job(self.config.cleanup_interval_seconds)

    def _on_breaker_state_change(self, name: str, old: CircuitBreakerState, new: CircuitBreakerState):
        self.metrics.record_breaker_state(name, new.value)

    # -- helpers --------------------------------------------------------

    def _parse_pagination(self, request: Request) -> Tuple[int, int]:
        """limit in [1, 100] (default 20) and offset >= 0."""
        raw_limit = request.query_params.get("limit")
        raw_offset = request.query_params.get("offset")
        try:
            limit = DEFAULT_PAGE_LIMIT if raw_limit in (None, "") else int(raw_limit)
            offset = 0 if raw_offset in (None, "") else int(raw_offset)
        except ValueError:
            raise ValidationError("limit and offset must be integers",
                                  {"limit": raw_limit, "offset": raw_offset})
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}", {"limit": limit})
        if offset < 0:
            raise ValidationError("offset must be >= 0", {"offset": offset})
        return limit, offset

    async def _serve_module(self, request: Request, module: str,
                            required_tier: Optional[Tier] = None):
        """Authenticate, read module content with fallbacks, paginate."""
        auth = await self.api_key_gateway.authenticate(request, required_tier)
        if isinstance(auth, AuthFailure):
            return auth.response

        try:
            limit, offset = self._parse_pagination(request)
        except ValidationError as e:
            # The call already counted against quota, so report where it stands
            self.metrics.record_error(e.code)
            response = self._error_response(request, e)
            self.api_key_gateway.record_usage(request, auth, response.status_code)
            return self.api_key_gateway.add_rate_limit_headers(response, auth.request_id, auth.tier, auth.quota)

        provider = self.ingestion.get_provider(module)
        if provider is None:
            envelope = ContentEnvelope(
                data=[], cached=False, stale=False, cached_at=None, source=SOURCE_NONE,
                warning=f"The {module} feed is not configured",
            )
        else:
            envelope = await self.ingestion.read(provider)

        records = envelope.data if isinstance(envelope.data, list) else (
            [] if envelope.data is None else [envelope.data]
        )
        response = JSONResponse(content={
            "success": True,
            "data": records[offset:offset + limit],
            "pagination": {"limit": limit, "offset": offset, "total": len(records)},
            "meta": envelope.meta,
        })
        self.api_key_gateway.record_usage(request, auth, response.status_code)
        return self.api_key_gateway.add_rate_limit_headers(response, auth.request_id, auth.tier, auth.quota)

    def _require_admin(self, request: Request) -> None:
        expected = self.config.admin_token
        header = request.headers.get("Authorization", "")
        presented = header[7:].strip() if header.startswith("Bearer ") else ""
        if not expected or not presented or not secrets.compare_digest(presented, expected):
            raise AuthenticationError("Admin token required")

    def _process_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "pid": os.getpid(),
            "python_version": platform.python_version(),
            "background_tasks": pending_task_count(),
        }
        if resource is not None:
            stats["max_rss_kb"] = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        return stats

    async def _read_json_body(self, request: Request) -> Any:
        try:
            return await request.json()
        except ValueError:
            raise ValidationError("Request body must be valid JSON")

    # -- health ---------------------------------------------------------

    async def _check_dependencies(self) -> Dict[str, str]:
        if self.persistence is None:
            return {"storage": "memory"}
        healthy = await self.persistence.health_check()
        return {"postgres": "ok" if healthy else "error"}

    async def _health_report(self) -> Dict[str, Any]:
        freshness = await self.ledger.get_all_module_freshness()
        degraded = any(summary["stale"] > 0 for summary in freshness.values())
        return {
            "status": "degraded" if degraded else "ok",
            "dependencies": await self._check_dependencies(),
            "cache": self.cache.get_stats(),
            "breakers": self.breakers.get_status(),
            "freshness": freshness,
            "process": self._process_stats(),
        }

    # -- routes ---------------------------------------------------------

    def _setup_public_routes(self):
        """Versioned public API. Every route goes through the API key gateway first."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "gateway",
                "message": "SpaceNexus Access Layer - API Gateway",
                "version": self.config.version,
                "modules": sorted(self.ingestion.providers),
            }

        @self.app.get("/v1/launches")
        async def list_launches(request: Request):
            """Upcoming launches."""
            return await self._serve_module(request, "launches")

        @self.app.get("/v1/news")
        async def list_news(request: Request):
            """Latest news wire articles."""
            return await self._serve_module(request, "news")

        @self.app.get("/v1/space-weather")
        async def list_space_weather(request: Request):
            """Planetary K-index readings."""
            return await self._serve_module(request, "space-weather")

        @self.app.get("/v1/market-data")
        async def list_market_data(request: Request):
            """Space-sector market snapshot."""
            return await self._serve_module(request, "market-data")

        @self.app.get("/v1/opportunities")
        async def list_opportunities(request: Request):
            """Contracts and solicitations. Enterprise tier only."""
            return await self._serve_module(request, "opportunities", required_tier=Tier.ENTERPRISE)

    def _setup_admin_routes(self):
        """Operator routes guarded by the admin bearer token."""

        @self.app.get("/admin/data-freshness")
        async def data_freshness(request: Request):
            self._require_admin(request)
            logs = await self.ledger.get_recent_refresh_logs(limit=50)
            return {
                "success": True,
                "data": {
                    "modules": await self.ledger.get_all_module_freshness(),
                    "breakers": self.breakers.get_status(),
                    "cache": self.cache.get_stats(),
                    "scheduler": self.scheduler.get_job_status(),
                    "recent_logs": [entry.to_dict() for entry in logs],
                },
            }

        @self.app.post("/admin/data-freshness")
        async def trigger_refresh(request: Request):
            self._require_admin(request)
            try:
                body = RefreshRequest.model_validate(await self._read_json_body(request))
            except PydanticValidationError as e:
                raise ValidationError("Invalid refresh request", _validation_details(e))

            label = provider_job_label(body.module)
            job = self.scheduler.jobs.get(label)
            if job is None:
                raise ValidationError(f"Unknown module '{body.module}'",
                                      {"modules": sorted(self.ingestion.providers)})

            status = await self.scheduler.run_job(label)
            result = job.last_result.to_dict() if job.last_result is not None else {"success": False}
            return {"success": True, "data": {**result, "job": status}}

        @self.app.post("/admin/refresh/cleanup")
        async def run_cleanup(request: Request):
            self._require_admin(request)
            return {"success": True, "data": await self.ingestion.run_cleanup()}

        @self.app.post("/admin/api-keys")
        async def issue_api_key(request: Request):
            self._require_admin(request)
            try:
                body = IssueKeyRequest.model_validate(await self._read_json_body(request))
            except PydanticValidationError as e:
                raise ValidationError("Invalid API key request", _validation_details(e))

            raw_key, record = await self.api_key_gateway.issue_api_key(
                body.tier,
                name=body.name,
                monthly_limit=body.monthly_limit,
                per_minute_limit=body.per_minute_limit,
            )
            return JSONResponse(status_code=201, content={
                "success": True,
                "data": {
                    "key_id": record.key_id,
                    "api_key": raw_key,
                    "tier": record.tier.value,
                    "name": record.name,
                },
            })

        @self.app.delete("/admin/api-keys/{key_id}")
        async def revoke_api_key(key_id: str, request: Request):
            self._require_admin(request)
            revoked = await self.api_key_gateway.revoke_api_key(key_id)
            if not revoked:
                raise ValidationError(f"Unknown API key '{key_id}'")
            return {"success": True, "data": {"key_id": key_id, "revoked": True}}

        @self.app.get("/admin/api-keys/{key_id}/usage")
        async def api_key_usage(key_id: str, request: Request):
            self._require_admin(request)
            raw_limit = request.query_params.get("limit") or "50"
            if not raw_limit.isdigit() or not 1 <= int(raw_limit) <= 500:
                raise ValidationError("limit must be between 1 and 500", {"limit": raw_limit})
            entries = await self.api_key_gateway.get_usage(key_id, int(raw_limit))
            return {"success": True, "data": [entry.to_dict() for entry in entries]}


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
