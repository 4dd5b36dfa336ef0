"""
Shared configuration management for the SpaceNexus Access Layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Root log level")
    version: str = Field(default="1.0.0")

    # Persistence (in-memory stores when unset)
    postgres_dsn: Optional[str] = Field(default=None, description="PostgreSQL DSN for ledger and API keys")

    # Admin surface
    admin_token: Optional[str] = Field(default=None, description="Bearer token for /admin routes")

    # Circuit breakers
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_recovery_timeout: float = Field(default=60.0, gt=0)
    upstream_timeout_seconds: float = Field(default=10.0, gt=0)

    # TTL cache
    cache_default_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_stale_grace: int = Field(default=10, ge=1)
    cache_coalesce_misses: bool = Field(default=False)

    # Freshness ledger
    refresh_log_retention_days: int = Field(default=30, ge=1)

    # Scheduler
    enable_scheduler: bool = Field(default=True)
    news_interval_seconds: int = Field(default=300, ge=1)
    launches_interval_seconds: int = Field(default=900, ge=1)
    space_weather_interval_seconds: int = Field(default=1800, ge=1)
    market_data_interval_seconds: int = Field(default=900, ge=1)
    opportunities_interval_seconds: int = Field(default=86400, ge=1)
    cleanup_interval_seconds: int = Field(default=86400, ge=1)

    # Upstream providers
    launch_library_url: str = Field(default="https://ll.thespacedevs.com/2.2.0")
    spaceflight_news_url: str = Field(default="https://api.spaceflightnewsapi.net/v4")
    noaa_swpc_url: str = Field(default="https://services.swpc.noaa.gov")
    market_data_url: Optional[str] = Field(default=None)
    opportunities_url: Optional[str] = Field(default=None)

    # Public API keys
    api_key_prefix: str = Field(default="snx_")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
