"""
Unit tests for the API key gateway.
"""

import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from fastapi import Request
from fastapi.responses import JSONResponse

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.domain.api_key_gateway import (
    ApiKeyGateway,
    AuthFailure,
    AuthSuccess,
    generate_api_key,
    hash_api_key,
)
from service_gateway.app.persistence.memory import InMemoryApiKeyStore
from service_gateway.app.persistence.models import utc_from_timestamp
from service_gateway.app.ratelimit.fixed_window import Tier
from shared.background import drain
from shared.test_helpers import ManualClock


def make_request(headers=None, query: str = "", request_id: str = "req-123") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/v1/news",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": query.encode(),
    }
    request = Request(scope)
    request.state.request_id = request_id
    return request


def body_of(response: JSONResponse) -> dict:
    return json.loads(response.body)


class TestKeyFormat:
    """Test cases for key generation and hashing."""

    def test_generated_key_shape(self):
        key = generate_api_key()
        assert key.startswith("snx_")
        assert len(key) == 44

    def test_hash_is_stable_sha256(self):
        assert hash_api_key("snx_abc") == hash_api_key("snx_abc")
        assert len(hash_api_key("snx_abc")) == 64


class TestApiKeyGateway:
    """Test cases for ApiKeyGateway."""

    @pytest.fixture
    def clock(self):
        """Manual clock twenty seconds into a minute."""
        return ManualClock(start=1_792_152_020.0)

    @pytest.fixture
    def store(self):
        """In-memory key store."""
        return InMemoryApiKeyStore()

    @pytest.fixture
    def metrics(self):
        """Mock metrics collector."""
        return MagicMock()

    @pytest.fixture
    def gateway(self, store, metrics, clock):
        """Gateway over the in-memory store."""
        return ApiKeyGateway(store, metrics=metrics, clock=clock)

    @pytest.mark.asyncio
    async def test_valid_key_via_bearer(self, gateway):
        """A valid developer key authenticates and consumes one request."""
        raw_key, record = await gateway.issue_api_key(Tier.DEVELOPER, name="ci")

        result = await gateway.authenticate(make_request({"Authorization": f"Bearer {raw_key}"}))
        await drain()

        assert isinstance(result, AuthSuccess)
        assert result.tier == Tier.DEVELOPER
        assert result.key_id == record.key_id
        assert result.request_id == "req-123"
        assert result.quota.remaining == 9

    @pytest.mark.asyncio
    async def test_key_via_header_and_query(self, gateway):
        """X-API-Key and ?api_key= are accepted too."""
        raw_key, _ = await gateway.issue_api_key(Tier.BUSINESS)

        via_header = await gateway.authenticate(make_request({"X-API-Key": raw_key}))
        via_query = await gateway.authenticate(make_request(query=f"api_key={raw_key}"))
        await drain()

        assert via_header.success and via_query.success

    @pytest.mark.asyncio
    async def test_session_bearer_does_not_shadow_header_key(self, gateway):
        """A non-key Bearer token falls through to X-API-Key."""
        raw_key, record = await gateway.issue_api_key(Tier.DEVELOPER)

        result = await gateway.authenticate(make_request({
            "Authorization": "Bearer some-session-jwt",
            "X-API-Key": raw_key,
        }))
        await drain()

        assert isinstance(result, AuthSuccess)
        assert result.key_id == record.key_id

    @pytest.mark.asyncio
    async def test_invalid_key_message_names_configured_prefix(self, store, clock):
        gateway = ApiKeyGateway(store, clock=clock, key_prefix="tst_")

        result = await gateway.authenticate(make_request({"X-API-Key": "snx_" + "a" * 40}))

        message = body_of(result.response)["error"]["message"]
        assert "Bearer tst_..." in message
        assert "snx_" not in message

    @pytest.mark.asyncio
    async def test_usage_is_recorded_in_background(self, gateway):
        """record_usage appends an entry with path, status and client details."""
        raw_key, record = await gateway.issue_api_key(Tier.DEVELOPER)
        request = make_request({
            "X-API-Key": raw_key,
            "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
            "User-Agent": "mission-control/2.1",
        })
        auth = await gateway.authenticate(request)

        gateway.record_usage(request, auth, 200)
        await drain()

        usage = await gateway.get_usage(record.key_id)
        assert len(usage) == 1
        entry = usage[0]
        assert entry.endpoint == "/v1/news"
        assert entry.method == "GET"
        assert entry.status_code == 200
        assert entry.response_time_ms >= 0
        assert entry.ip_address == "203.0.113.7"
        assert entry.user_agent == "mission-control/2.1"

    @pytest.mark.asyncio
    async def test_last_used_is_touched(self, gateway, store):
        """Successful calls update last_used_at in the background."""
        raw_key, _ = await gateway.issue_api_key(Tier.DEVELOPER)
        await gateway.authenticate(make_request({"X-API-Key": raw_key}))
        await drain()

        record = await store.get_by_hash(hash_api_key(raw_key))
        assert record.last_used_at is not None

    @pytest.mark.asyncio
    async def test_missing_key(self, gateway, metrics):
        """No key at all is a 401."""
        result = await gateway.authenticate(make_request())

        assert isinstance(result, AuthFailure)
        assert result.status_code == 401
        assert body_of(result.response)["error"]["message"] == gateway.invalid_key_message
        assert "Bearer snx_..." in gateway.invalid_key_message
        metrics.increment_counter.assert_called_with("auth_failures_total", reason="missing")

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_keys_are_indistinguishable(self, gateway):
        """A malformed key and a well-formed unknown key produce the same error."""
        malformed = await gateway.authenticate(make_request({"X-API-Key": "not-a-key"}))
        unknown = await gateway.authenticate(make_request({"X-API-Key": generate_api_key()}))

        assert malformed.status_code == unknown.status_code == 401
        assert body_of(malformed.response)["error"] == body_of(unknown.response)["error"]
        assert body_of(malformed.response)["success"] is False

    @pytest.mark.asyncio
    async def test_revoked_key(self, gateway):
        """Revoked keys are rejected with 401."""
        raw_key, record = await gateway.issue_api_key(Tier.ENTERPRISE)
        assert await gateway.revoke_api_key(record.key_id) is True

        result = await gateway.authenticate(make_request({"X-API-Key": raw_key}))

        assert result.status_code == 401
        assert body_of(result.response)["error"]["message"] == "API key has been revoked."

    @pytest.mark.asyncio
    async def test_expired_key(self, gateway, clock):
        """Keys past expires_at are rejected with 401."""
        raw_key, _ = await gateway.issue_api_key(
            Tier.BUSINESS, expires_at=utc_from_timestamp(clock()) + timedelta(seconds=30)
        )
        clock.advance(31)

        result = await gateway.authenticate(make_request({"X-API-Key": raw_key}))

        assert result.status_code == 401
        assert body_of(result.response)["error"]["message"] == "API key has expired."

    @pytest.mark.asyncio
    async def test_insufficient_tier_is_403_and_consumes_nothing(self, gateway, store):
        """A developer key on an enterprise endpoint gets 403 without touching quota."""
        raw_key, _ = await gateway.issue_api_key(Tier.DEVELOPER)

        for _ in range(15):
            result = await gateway.authenticate(make_request({"X-API-Key": raw_key}), Tier.ENTERPRISE)
            assert result.status_code == 403
            assert result.code == "FORBIDDEN"

        record = await store.get_by_hash(hash_api_key(raw_key))
        assert record.requests_this_minute == 0
        assert record.requests_this_month == 0

    @pytest.mark.asyncio
    async def test_per_minute_quota_returns_429_with_headers(self, gateway, clock):
        """The eleventh developer call in a minute is throttled."""
        raw_key, _ = await gateway.issue_api_key(Tier.DEVELOPER)
        request_headers = {"X-API-Key": raw_key}

        for _ in range(10):
            assert (await gateway.authenticate(make_request(request_headers))).success
        result = await gateway.authenticate(make_request(request_headers))
        await drain()

        assert result.status_code == 429
        headers = result.response.headers
        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["X-RateLimit-Reset"] == "40"
        assert headers["Retry-After"] == "40"
        assert body_of(result.response)["error"]["code"] == "RATE_LIMITED"

        clock.advance(40)
        assert (await gateway.authenticate(make_request(request_headers))).success
        await drain()

    @pytest.mark.asyncio
    async def test_enterprise_with_monthly_cap(self, gateway):
        """Enterprise keys reach /opportunities; a contract cap still throttles them."""
        raw_key, _ = await gateway.issue_api_key(Tier.ENTERPRISE, monthly_limit=2)
        request_headers = {"Authorization": f"Bearer {raw_key}"}

        first = await gateway.authenticate(make_request(request_headers), Tier.ENTERPRISE)
        second = await gateway.authenticate(make_request(request_headers), Tier.ENTERPRISE)
        third = await gateway.authenticate(make_request(request_headers), Tier.ENTERPRISE)
        await drain()

        assert first.success and second.success
        assert third.status_code == 429
        assert third.response.headers["X-RateLimit-Limit"] == "2"
        assert "Monthly API limit exceeded" in body_of(third.response)["error"]["message"]

    @pytest.mark.asyncio
    async def test_store_failure_is_500(self, metrics, clock):
        """A broken key store is the one non-4xx gateway failure."""
        store = MagicMock()
        store.get_by_hash = AsyncMock(side_effect=RuntimeError("connection refused"))
        gateway = ApiKeyGateway(store, metrics=metrics, clock=clock)

        result = await gateway.authenticate(make_request({"X-API-Key": generate_api_key()}))

        assert result.status_code == 500
        assert body_of(result.response)["error"]["code"] == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_rate_limit_headers_on_success(self, gateway):
        """Successful responses carry quota headers."""
        raw_key, _ = await gateway.issue_api_key(Tier.BUSINESS)
        auth = await gateway.authenticate(make_request({"X-API-Key": raw_key}))
        await drain()

        response = gateway.add_rate_limit_headers(JSONResponse({}), auth.request_id, auth.tier, auth.quota)

        assert response.headers["X-Request-Id"] == "req-123"
        assert response.headers["X-RateLimit-Limit"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "59"
        assert response.headers["X-RateLimit-Reset"] == "40"
        assert response.headers["X-RateLimit-Monthly-Remaining"] == "49999"
