"""
Shared utilities for the SpaceNexus Access Layer.

This package aggregates common building blocks consumed by the gateway:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators and management
- circuit_breaker: Resilient upstream call protection
- background: Fire-and-forget task helper
- base_service: FastAPI service skeleton

Any cross-cutting logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
