"""
Upstream data providers for ingestion.

Each provider knows its breaker dependency name, the (module, section) it
feeds, its cache TTL, and how to turn raw upstream JSON into normalized
payload models. Transient failures (transport errors, 429 and 5xx) are retried
with backoff; other non-2xx responses fail immediately.
"""

from typing import Any, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.retry import retry_on_exception, RetryConfig
from .models import (
    Launch,
    MarketSnapshot,
    NewsArticle,
    Opportunity,
    SpaceWeatherReading,
    storm_level_for,
)


class TransientUpstreamError(ExternalServiceError):
    """Upstream failure worth retrying."""


RETRYABLE_ERRORS = (httpx.TransportError, TransientUpstreamError)

DEFAULT_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0, exponential_base=2.0, jitter=True)


class HttpProvider:
    """Base class for JSON-over-HTTP providers."""

    name: str = "provider"
    module: str = ""
    section: str = ""
    source_tag: str = "api"
    model: Type[BaseModel] = BaseModel
    default_ttl_seconds: float = 300.0

    def __init__(self,
                 base_url: str,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0,
                 ttl_seconds: Optional[float] = None,
                 retry_config: Optional[RetryConfig] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        self.retry_config = retry_config or DEFAULT_RETRY
        self.logger = get_logger(f"gateway.provider.{self.name}")

    @property
    def cache_key(self) -> str:
        return f"{self.module}:{self.section}" if self.section else self.module

    async def fetch(self) -> List[Dict[str, Any]]:
        """Fetch and normalize the provider's current payload."""
        raw = await self._get_json_with_retry()
        records = self.normalize(raw)
        self.logger.info("Provider fetch succeeded", provider=self.name, count=len(records))
        return [record.model_dump(mode="json") for record in records]

    def request_path(self) -> str:
        return ""

    def request_params(self) -> Dict[str, Any]:
        return {}

    def normalize(self, raw: Any) -> List[BaseModel]:
        """Turn raw JSON into payload models. Override per provider."""
        return [self.model.model_validate(item) for item in _results(raw)]

    async def _get_json_with_retry(self) -> Any:
        fetcher = retry_on_exception(RETRYABLE_ERRORS, config=self.retry_config)(self._get_json)
        return await fetcher()

    async def _get_json(self) -> Any:
        url = f"{self.base_url}{self.request_path()}"
        params = self.request_params()

        if self.client is not None:
            response = await self.client.get(url, params=params, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params)

        if response.status_code == 200:
            try:
                return response.json()
            except ValueError as e:
                raise ExternalServiceError(self.name, "Invalid JSON payload", {"url": url}) from e

        details = {"status_code": response.status_code, "url": url}
        if response.status_code == 429 or response.status_code >= 500:
            self.logger.warning("Transient upstream error", provider=self.name, **details)
            raise TransientUpstreamError(self.name, f"Unexpected status {response.status_code}", details)

        self.logger.error("Upstream request failed", provider=self.name, body=response.text[:500], **details)
        raise ExternalServiceError(self.name, f"Unexpected status {response.status_code}", details)


def _results(raw: Any) -> List[Any]:
    """Unwrap the common {"results": [...]} / {"data": [...]} envelopes."""
    if isinstance(raw, dict):
        for key in ("results", "data", "items"):
            if isinstance(raw.get(key), list):
                return raw[key]
        return [raw]
    if isinstance(raw, list):
        return raw
    return []


def _nested(item: Dict[str, Any], *path: str) -> Optional[Any]:
    current: Any = item
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class LaunchScheduleProvider(HttpProvider):
    """Launch Library 2 upcoming launches."""

    name = "launch_library"
    module = "launches"
    source_tag = "launch_library"
    model = Launch
    default_ttl_seconds = 900.0

    def __init__(self, base_url: str, limit: int = 25, **kwargs):
        super().__init__(base_url, **kwargs)
        self.limit = limit

    def request_path(self) -> str:
        return "/launch/upcoming/"

    def request_params(self) -> Dict[str, Any]:
        return {"limit": self.limit, "mode": "normal"}

    def normalize(self, raw: Any) -> List[BaseModel]:
        launches = []
        for item in _results(raw):
            launches.append(Launch(
                id=str(item.get("id")),
                name=item.get("name") or "Unknown launch",
                net=item.get("net"),
                status=_nested(item, "status", "name"),
                provider=_nested(item, "launch_service_provider", "name"),
                rocket=_nested(item, "rocket", "configuration", "name"),
                pad=_nested(item, "pad", "name"),
                location=_nested(item, "pad", "location", "name"),
                mission_description=_nested(item, "mission", "description"),
                image_url=item.get("image") if isinstance(item.get("image"), str) else None,
            ))
        return launches


class NewsWireProvider(HttpProvider):
    """Spaceflight News API articles."""

    name = "spaceflight_news"
    module = "news"
    source_tag = "spaceflight_news"
    model = NewsArticle
    default_ttl_seconds = 300.0

    def __init__(self, base_url: str, limit: int = 30, **kwargs):
        super().__init__(base_url, **kwargs)
        self.limit = limit

    def request_path(self) -> str:
        return "/articles/"

    def request_params(self) -> Dict[str, Any]:
        return {"limit": self.limit, "ordering": "-published_at"}

    def normalize(self, raw: Any) -> List[BaseModel]:
        return [
            NewsArticle(
                id=str(item.get("id")),
                title=item.get("title") or "",
                url=item.get("url") or "",
                summary=item.get("summary") or "",
                news_site=item.get("news_site"),
                published_at=item.get("published_at"),
                image_url=item.get("image_url"),
            )
            for item in _results(raw)
        ]


class SpaceWeatherProvider(HttpProvider):
    """NOAA SWPC planetary K-index."""

    name = "noaa_swpc"
    module = "space-weather"
    section = "kp-index"
    source_tag = "noaa_swpc"
    model = SpaceWeatherReading
    default_ttl_seconds = 1800.0

    def __init__(self, base_url: str, max_readings: int = 24, **kwargs):
        super().__init__(base_url, **kwargs)
        self.max_readings = max_readings

    def request_path(self) -> str:
        return "/products/noaa-planetary-k-index.json"

    def normalize(self, raw: Any) -> List[BaseModel]:
        rows = _results(raw)
        if rows and isinstance(rows[0], list):
            # Table format: first row is the header
            header = [str(col) for col in rows[0]]
            rows = [dict(zip(header, row)) for row in rows[1:]]

        readings = []
        for row in rows[-self.max_readings:]:
            try:
                kp = float(row.get("Kp", row.get("kp_index")))
            except (TypeError, ValueError):
                self.logger.debug("Skipping K-index row without a value", row=row)
                continue
            station_count = row.get("station_count")
            readings.append(SpaceWeatherReading(
                time_tag=row.get("time_tag"),
                kp_index=kp,
                storm_level=storm_level_for(kp),
                station_count=int(station_count) if station_count not in (None, "") else None,
            ))
        return readings


class MarketDataProvider(HttpProvider):
    """Space-sector market snapshot from a configurable JSON endpoint."""

    name = "market_data"
    module = "market-data"
    section = "quotes"
    source_tag = "market_feed"
    model = MarketSnapshot
    default_ttl_seconds = 900.0

    def normalize(self, raw: Any) -> List[BaseModel]:
        records = []
        for item in _results(raw):
            try:
                records.append(MarketSnapshot.model_validate(item))
            except PydanticValidationError as e:
                self.logger.warning("Dropping malformed market row", error=str(e))
        return records


class OpportunitiesProvider(HttpProvider):
    """Contracts and solicitations from a configurable JSON endpoint."""

    name = "opportunities"
    module = "opportunities"
    source_tag = "opportunities_feed"
    model = Opportunity
    default_ttl_seconds = 86400.0
