"""
Unit tests for Gateway main service.
"""

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.main import GatewayService
from shared.config import get_config
from shared.test_helpers import FakeProvider, ManualClock, TestEnvironment


ADMIN = {"Authorization": "Bearer admin-secret"}


class TestGatewayService:
    """Test cases for GatewayService."""

    @pytest.fixture
    def clock(self):
        """Manual clock twenty seconds into a minute."""
        return ManualClock(start=1_792_152_020.0)

    @pytest.fixture
    def news_provider(self):
        """News feed with thirty articles, then an outage."""
        articles = [{"id": str(n), "title": f"Article {n}"} for n in range(30)]
        return FakeProvider(name="spaceflight_news", module="news", source_tag="spaceflight_news",
                            ttl_seconds=60, responses=[articles, RuntimeError("upstream 503")])

    @pytest.fixture
    def opportunities_provider(self):
        """Enterprise-only opportunities feed."""
        return FakeProvider(name="opportunities", module="opportunities", source_tag="opportunities_feed",
                            responses=[[{"id": "FA8650", "title": "Launch services IDIQ"}]])

    @pytest.fixture
    def config(self):
        """In-memory, scheduler-less configuration."""
        return get_config("gateway", 8000, **TestEnvironment.get_mock_config())

    @pytest.fixture
    def gateway_service(self, config, clock, news_provider, opportunities_provider):
        """GatewayService wired with fake providers."""
        return GatewayService(config, providers=[news_provider, opportunities_provider], clock=clock)

    @pytest.fixture
    def client(self, gateway_service):
        """Test client with startup and shutdown hooks."""
        with TestClient(gateway_service.app) as test_client:
            yield test_client

    @staticmethod
    def issue_key(client, tier, **limits):
        response = client.post("/admin/api-keys", json={"tier": tier, "name": "test", **limits}, headers=ADMIN)
        assert response.status_code == 201
        return response.json()["data"]

    def test_root_endpoint(self, client):
        """Root lists the configured modules."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["modules"] == ["news", "opportunities"]

    def test_health_ok(self, client):
        """Health reports cache, breakers, freshness and process details."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["status"] == "ok"
        assert data["freshness"] == {}
        assert data["dependencies"] == {"storage": "memory"}
        assert data["cache"]["entry_count"] == 0
        assert "pid" in data["process"]
        assert "background_tasks" in data["process"]

    def test_health_degraded_with_stale_content(self, client, clock):
        """Content past its freshness TTL degrades health."""
        key = self.issue_key(client, "developer")
        client.get("/v1/news", headers={"X-API-Key": key["api_key"]})

        clock.advance(3601)
        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["freshness"]["news"]["stale"] == 1

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_missing_key_is_401(self, client):
        """Requests without a key get the standard error envelope."""
        response = client.get("/v1/news", headers={"X-Request-Id": "req-abc"})
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["request_id"] == "req-abc"
        assert response.headers["X-Request-Id"] == "req-abc"

    def test_missing_key_beats_bad_pagination(self, client):
        """Authentication is checked before query validation."""
        response = client.get("/v1/news?limit=0")
        assert response.status_code == 401

    def test_news_with_pagination_and_headers(self, client):
        """A developer key reads a page with quota headers."""
        key = self.issue_key(client, "developer")

        response = client.get("/v1/news?limit=5&offset=10", headers={"Authorization": f"Bearer {key['api_key']}"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert [article["id"] for article in body["data"]] == ["10", "11", "12", "13", "14"]
        assert body["pagination"] == {"limit": 5, "offset": 10, "total": 30}
        assert body["meta"]["source"] == "live"
        assert body["meta"]["cached"] is False
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert response.headers["X-RateLimit-Reset"] == "40"

    def test_default_pagination(self, client):
        key = self.issue_key(client, "business")
        body = client.get("/v1/news", headers={"X-API-Key": key["api_key"]}).json()
        assert body["pagination"] == {"limit": 20, "offset": 0, "total": 30}
        assert len(body["data"]) == 20

    @pytest.mark.parametrize("query", ["limit=0", "limit=101", "offset=-1", "limit=abc"])
    def test_invalid_pagination_is_400(self, client, query):
        key = self.issue_key(client, "business")
        response = client.get(f"/v1/news?{query}", headers={"X-API-Key": key["api_key"]})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_invalid_pagination_still_reports_quota(self, client):
        """A rejected page request has consumed quota and says so."""
        key = self.issue_key(client, "developer")
        response = client.get("/v1/news?limit=0", headers={"X-API-Key": key["api_key"]})

        assert response.status_code == 400
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert response.headers["X-Request-Id"]

    def test_usage_trail_per_key(self, client):
        """Served and rejected calls both land in the key's usage trail."""
        key = self.issue_key(client, "developer")
        headers = {"X-API-Key": key["api_key"], "User-Agent": "mission-control/2.1"}
        client.get("/v1/news", headers=headers)
        client.get("/v1/news?limit=0", headers=headers)

        response = client.get(f"/admin/api-keys/{key['key_id']}/usage", headers=ADMIN)

        assert response.status_code == 200
        entries = response.json()["data"]
        assert sorted(entry["status_code"] for entry in entries) == [200, 400]
        assert all(entry["endpoint"] == "/v1/news" for entry in entries)
        assert all(entry["method"] == "GET" for entry in entries)
        assert entries[0]["user_agent"] == "mission-control/2.1"

    @pytest.mark.parametrize("limit", ["0", "501", "ten"])
    def test_usage_trail_limit_validation(self, client, limit):
        response = client.get(f"/admin/api-keys/anything/usage?limit={limit}", headers=ADMIN)
        assert response.status_code == 400

    def test_stale_cache_served_during_outage(self, client, clock, news_provider):
        """After the TTL an upstream failure serves the stale cached payload."""
        key = self.issue_key(client, "business")
        headers = {"X-API-Key": key["api_key"]}

        assert client.get("/v1/news", headers=headers).json()["meta"]["source"] == "live"
        cached = client.get("/v1/news", headers=headers).json()
        assert cached["meta"]["cached"] is True
        assert cached["meta"]["stale"] is False

        clock.advance(61)
        stale = client.get("/v1/news", headers=headers).json()

        assert news_provider.calls == 2
        assert stale["meta"]["cached"] is True
        assert stale["meta"]["stale"] is True
        assert stale["meta"]["source"] == "cache"
        assert "warning" in stale["meta"]
        assert stale["pagination"]["total"] == 30

    def test_unconfigured_module_returns_empty_payload(self, client):
        key = self.issue_key(client, "developer")
        response = client.get("/v1/market-data", headers={"X-API-Key": key["api_key"]})

        assert response.status_code == 200
        body = response.json()
        assert body["data"] == []
        assert body["meta"]["source"] == "none"
        assert "not configured" in body["meta"]["warning"]

    def test_opportunities_requires_enterprise(self, client):
        """Developer keys are forbidden; enterprise keys are served until their cap."""
        developer = self.issue_key(client, "developer")
        enterprise = self.issue_key(client, "enterprise", monthly_limit=1)

        forbidden = client.get("/v1/opportunities", headers={"X-API-Key": developer["api_key"]})
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "FORBIDDEN"

        allowed = client.get("/v1/opportunities", headers={"X-API-Key": enterprise["api_key"]})
        assert allowed.status_code == 200
        assert allowed.json()["data"][0]["id"] == "FA8650"
        assert allowed.headers["X-RateLimit-Monthly-Remaining"] == "0"

        throttled = client.get("/v1/opportunities", headers={"X-API-Key": enterprise["api_key"]})
        assert throttled.status_code == 429
        assert throttled.json()["error"]["code"] == "RATE_LIMITED"
        assert int(throttled.headers["Retry-After"]) > 0

    def test_developer_per_minute_limit(self, client):
        key = self.issue_key(client, "developer")
        headers = {"X-API-Key": key["api_key"]}

        statuses = [client.get("/v1/news", headers=headers).status_code for _ in range(11)]

        assert statuses == [200] * 10 + [429]

    def test_revoked_key_is_401(self, client):
        key = self.issue_key(client, "business")
        response = client.delete(f"/admin/api-keys/{key['key_id']}", headers=ADMIN)
        assert response.status_code == 200

        response = client.get("/v1/news", headers={"X-API-Key": key["api_key"]})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "API key has been revoked."

    def test_revoke_unknown_key(self, client):
        response = client.delete("/admin/api-keys/does-not-exist", headers=ADMIN)
        assert response.status_code == 400

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "admin-secret"}])
    def test_admin_requires_token(self, client, headers):
        response = client.get("/admin/data-freshness", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_admin_disabled_without_configured_token(self, clock, news_provider):
        """With no admin token configured every admin call is refused."""
        overrides = dict(TestEnvironment.get_mock_config(), admin_token=None)
        service = GatewayService(get_config("gateway", 8000, **overrides), providers=[news_provider], clock=clock)

        with TestClient(service.app) as client:
            response = client.get("/admin/data-freshness", headers=ADMIN)
        assert response.status_code == 401

    def test_admin_freshness_view(self, client):
        key = self.issue_key(client, "developer")
        client.get("/v1/news", headers={"X-API-Key": key["api_key"]})

        data = client.get("/admin/data-freshness", headers=ADMIN).json()["data"]

        assert data["modules"]["news"]["active"] == 1
        assert "spaceflight_news" in data["breakers"]
        assert data["recent_logs"][0]["status"] == "success"
        labels = {job["label"] for job in data["scheduler"]["jobs"]}
        assert labels == {"news-refresh", "opportunities-refresh", "staleness-cleanup"}

    def test_admin_manual_refresh(self, client):
        response = client.post("/admin/data-freshness", json={"module": "news"}, headers=ADMIN)

        assert response.status_code == 200
        result = response.json()["data"]
        assert result["success"] is True
        assert result["module"] == "news"
        assert result["job"]["label"] == "news-refresh"
        assert result["job"]["total_runs"] == 1
        assert result["job"]["last_success_at"] is not None

        view = client.get("/admin/data-freshness", headers=ADMIN).json()["data"]
        job = next(j for j in view["scheduler"]["jobs"] if j["label"] == "news-refresh")
        assert job["total_runs"] == 1

    def test_admin_manual_refresh_failure_is_reported(self, client, news_provider):
        """A failed manual run shows up in the job's failure count."""
        client.post("/admin/data-freshness", json={"module": "news"}, headers=ADMIN)
        response = client.post("/admin/data-freshness", json={"module": "news"}, headers=ADMIN)

        result = response.json()["data"]
        assert result["success"] is False
        assert result["job"]["total_failures"] == 1
        assert news_provider.calls == 2

    def test_refresh_jobs_registered_by_urgency(self, config, clock, news_provider):
        """Higher-priority feeds are scheduled ahead of lower ones."""
        weather = FakeProvider(name="noaa_swpc", module="space-weather", source_tag="noaa_swpc",
                               responses=[{"kp_index": 3.0}])
        service = GatewayService(config, providers=[news_provider, weather], clock=clock)

        labels = list(service.scheduler.jobs)

        assert labels.index("space-weather-refresh") < labels.index("news-refresh")

    @pytest.mark.parametrize("payload", [{"module": "asteroids"}, {}])
    def test_admin_manual_refresh_rejects_bad_module(self, client, payload):
        response = client.post("/admin/data-freshness", json=payload, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_admin_cleanup(self, client):
        response = client.post("/admin/refresh/cleanup", headers=ADMIN)
        assert response.status_code == 200
        assert set(response.json()["data"]) == {"expired_items", "pruned_logs", "evicted_cache_entries"}

    def test_admin_issue_key_validation(self, client):
        response = client.post("/admin/api-keys", json={"tier": "platinum"}, headers=ADMIN)
        assert response.status_code == 400
