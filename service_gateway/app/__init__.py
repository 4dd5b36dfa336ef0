"""
API Gateway Service package for the SpaceNexus Access Layer.

The gateway fronts the public /v1 API, enforcing:
- Authentication: hashed API keys with revocation and expiry
- Capabilities and quotas: tier checks plus fixed-window monthly/per-minute limits
- Degraded reads: TTL cache, circuit breakers and the freshness ledger

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.adapters: HTTP clients for upstream data providers.
- app.caching: TTL cache with stale reads and an optional miss coalescer.
- app.ratelimit: Tiers and fixed-window quota accounting.
- app.domain: API key gateway.
- app.freshness: Per-module freshness policies and the ledger.
- app.ingestion: Breaker-guarded ingestion and the interval scheduler.
- app.persistence: In-memory and PostgreSQL stores.
"""
