"""
Unit tests for the upstream provider adapters.
"""

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.adapters.providers import (
    LaunchScheduleProvider,
    MarketDataProvider,
    NewsWireProvider,
    OpportunitiesProvider,
    SpaceWeatherProvider,
)
from shared.errors import ExternalServiceError
from shared.retry import RetryConfig, RetryError
from shared.test_helpers import SampleData


NO_WAIT = RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestProviders:
    """Test cases for the HTTP providers."""

    @pytest.mark.asyncio
    async def test_launch_schedule_normalization(self):
        """Nested Launch Library fields are flattened."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(200, json=SampleData.launch_library_upcoming())

        async with mock_client(handler) as client:
            provider = LaunchScheduleProvider("https://ll.example/2.2.0/", client=client, retry_config=NO_WAIT)
            launches = await provider.fetch()

        assert seen["url"].startswith("https://ll.example/2.2.0/launch/upcoming/")
        assert "limit=25" in seen["url"]
        assert len(launches) == 2
        assert launches[0]["provider"] == "SpaceX"
        assert launches[0]["rocket"] == "Falcon 9"
        assert launches[0]["location"] == "Cape Canaveral SFS, FL, USA"
        assert launches[1]["mission_description"] is None
        assert provider.cache_key == "launches"
        assert provider.ttl_seconds == 900.0

    @pytest.mark.asyncio
    async def test_news_wire(self):
        def handler(request):
            return httpx.Response(200, json=SampleData.spaceflight_news_articles())

        async with mock_client(handler) as client:
            articles = await NewsWireProvider("https://news.example", client=client,
                                              ttl_seconds=120).fetch()

        assert articles[0]["id"] == "24512"
        assert articles[0]["news_site"] == "SpaceNews"

    @pytest.mark.asyncio
    async def test_space_weather_table_format(self):
        """The header row is used for keys and rows without a Kp value are skipped."""
        def handler(request):
            return httpx.Response(200, json=SampleData.planetary_k_index_table())

        async with mock_client(handler) as client:
            provider = SpaceWeatherProvider("https://swpc.example", client=client)
            readings = await provider.fetch()

        assert [r["kp_index"] for r in readings] == [2.33, 5.67]
        assert [r["storm_level"] for r in readings] == ["G0", "G1"]
        assert readings[0]["station_count"] == 8
        assert provider.cache_key == "space-weather:kp-index"

    @pytest.mark.asyncio
    async def test_market_data_drops_malformed_rows(self):
        def handler(request):
            return httpx.Response(200, json=SampleData.market_quotes())

        async with mock_client(handler) as client:
            quotes = await MarketDataProvider("https://market.example", client=client).fetch()

        assert [q["symbol"] for q in quotes] == ["RKLB"]

    @pytest.mark.asyncio
    async def test_opportunities_default_model(self):
        def handler(request):
            return httpx.Response(200, json={"items": [{"id": "FA8650", "title": "Launch services IDIQ"}]})

        async with mock_client(handler) as client:
            records = await OpportunitiesProvider("https://opps.example", client=client).fetch()

        assert records[0]["title"] == "Launch services IDIQ"

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        """503 then 200: the retry succeeds on the second attempt."""
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json=SampleData.spaceflight_news_articles())

        async with mock_client(handler) as client:
            articles = await NewsWireProvider("https://news.example", client=client,
                                              retry_config=NO_WAIT).fetch()

        assert calls["count"] == 2
        assert len(articles) == 1

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_retries(self):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            return httpx.Response(429)

        async with mock_client(handler) as client:
            with pytest.raises(RetryError):
                await NewsWireProvider("https://news.example", client=client, retry_config=NO_WAIT).fetch()

        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        """A 404 fails immediately with ExternalServiceError."""
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            return httpx.Response(404, text="not found")

        async with mock_client(handler) as client:
            with pytest.raises(ExternalServiceError) as exc_info:
                await NewsWireProvider("https://news.example", client=client, retry_config=NO_WAIT).fetch()

        assert calls["count"] == 1
        assert exc_info.value.status_code == 502
        assert exc_info.value.details["status_code"] == 404
