"""
Adapters package for the Gateway Service.

Contains HTTP clients for the upstream data providers (launch schedules,
news wire, space weather, market data, opportunities). These adapters
encapsulate:

- Base URLs and request shapes
- Retry policies for transient upstream errors
- Normalization into per-module payload models

Circuit breaking happens one level up, in ingestion, so that every provider
call carries the same breaker and timeout accounting.
"""

from .models import MODULE_MODELS
from .providers import (
    HttpProvider,
    LaunchScheduleProvider,
    MarketDataProvider,
    NewsWireProvider,
    OpportunitiesProvider,
    SpaceWeatherProvider,
)

__all__ = [
    "MODULE_MODELS",
    "HttpProvider",
    "LaunchScheduleProvider",
    "MarketDataProvider",
    "NewsWireProvider",
    "OpportunitiesProvider",
    "SpaceWeatherProvider",
]
