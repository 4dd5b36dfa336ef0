"""
API key authentication and quota gate for the public /v1 API.
"""

import hashlib
import math
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple, Union, TYPE_CHECKING

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shared.background import fire_and_forget
from shared.errors import (
    AccessLayerException,
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ServiceError,
)
from shared.logging import get_logger, set_api_key_context
from ..persistence.base import ApiKeyStore
from ..persistence.models import ApiKeyRecord, ApiUsageEntry, utc_from_timestamp
from ..ratelimit.fixed_window import MONTH_WINDOW, TIER_LIMITS, QuotaDecision, Tier

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_KEY_PREFIX = "snx_"
KEY_BODY_LENGTH = 40
INVALID_KEY_MESSAGE = (
    "Missing or invalid API key. Provide a valid key via "
    "Authorization: Bearer {prefix}... or X-API-Key header."
)


def hash_api_key(raw_key: str) -> str:
    """One-way SHA-256 hex digest of a raw key."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(prefix: str = DEFAULT_KEY_PREFIX) -> str:
    # token_urlsafe(30) yields exactly 40 characters
    return prefix + secrets.token_urlsafe(30)


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


@dataclass
class AuthSuccess:
    """Authenticated and within quota."""
    tier: Tier
    request_id: str
    key_id: str
    quota: QuotaDecision
    # perf_counter reading taken when authentication began
    started: float = 0.0
    success: bool = True


@dataclass
class AuthFailure:
    """Rejected request with the response to return as-is."""
    response: Response
    status_code: int
    code: str
    success: bool = False


AuthResult = Union[AuthSuccess, AuthFailure]


class ApiKeyGateway:
    """Resolves a presented key to a tier and enforces its quota."""

    def __init__(self,
                 store: ApiKeyStore,
                 metrics: Optional["MetricsCollector"] = None,
                 clock: Callable[[], float] = time.time,
                 key_prefix: str = DEFAULT_KEY_PREFIX):
        self.store = store
        self.metrics = metrics
        self.clock = clock
        self.key_prefix = key_prefix
        self.logger = get_logger("gateway.api_key_gateway")
        self._key_pattern = re.compile(
            re.escape(key_prefix) + r"[A-Za-z0-9_\-]{%d}" % KEY_BODY_LENGTH
        )
        self.invalid_key_message = INVALID_KEY_MESSAGE.format(prefix=key_prefix)

    # -- key extraction -------------------------------------------------

    def extract_key(self, request: Request) -> Optional[str]:
        """Presented key from Bearer header, X-API-Key, or the api_key query parameter.

        A Bearer value only counts when it carries the key prefix, so a session
        token sent alongside X-API-Key does not shadow the key.
        """
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            candidate = auth_header[7:].strip()
            if candidate.startswith(self.key_prefix):
                return candidate

        header_key = request.headers.get("X-API-Key")
        if header_key and header_key.strip():
            return header_key.strip()

        query_key = request.query_params.get("api_key")
        if query_key and query_key.strip():
            return query_key.strip()
        return None

    def is_well_formed(self, raw_key: Optional[str]) -> bool:
        return bool(raw_key) and self._key_pattern.fullmatch(raw_key) is not None

    # -- authentication -------------------------------------------------

    async def authenticate(self, request: Request, required_tier: Optional[Tier] = None) -> AuthResult:
        """Authenticate the request, check capability, then consume quota."""
        started = time.perf_counter()
        request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())

        raw_key = self.extract_key(request)
        if not self.is_well_formed(raw_key):
            # Malformed and unknown keys must be indistinguishable
            return self._reject(AuthenticationError(self.invalid_key_message), request_id,
                                reason="missing" if not raw_key else "malformed")

        try:
            record = await self.store.get_by_hash(hash_api_key(raw_key))
        except Exception as e:
            self.logger.error("API key lookup failed", error=str(e))
            return self._reject(ServiceError("Authentication service unavailable"), request_id,
                                reason="store_error")

        if record is None:
            return self._reject(AuthenticationError(self.invalid_key_message), request_id, reason="unknown")

        if record.is_revoked():
            return self._reject(AuthenticationError("API key has been revoked."), request_id,
                                reason="revoked")

        if record.is_expired(utc_from_timestamp(self.clock())):
            return self._reject(AuthenticationError("API key has expired."), request_id,
                                reason="expired")

        set_api_key_context(record.key_id)

        if required_tier is not None and not record.tier.satisfies(required_tier):
            self.logger.info("API key lacks required tier", key_id=record.key_id,
                             tier=record.tier.value, required_tier=required_tier.value)
            return self._reject(
                AuthorizationError(
                    f"This endpoint requires the {required_tier.value} tier.",
                    {"tier": record.tier.value, "required_tier": required_tier.value}
                ),
                request_id,
                reason="tier"
            )

        try:
            quota = await self.store.consume(record.key_id, self.clock())
        except KeyError:
            return self._reject(AuthenticationError(self.invalid_key_message), request_id, reason="unknown")
        except Exception as e:
            self.logger.error("Quota update failed", key_id=record.key_id, error=str(e))
            return self._reject(ServiceError("Authentication service unavailable"), request_id,
                                reason="store_error")

        if not quota.allowed:
            return self._reject_quota(record, quota, request_id)

        fire_and_forget(
            self.store.touch(record.key_id, utc_from_timestamp(self.clock())),
            name=f"touch_api_key:{record.key_id}"
        )

        return AuthSuccess(tier=record.tier, request_id=request_id, key_id=record.key_id, quota=quota,
                           started=started)

    def _reject(self, error: AccessLayerException, request_id: str, reason: str) -> AuthFailure:
        if self.metrics is not None:
            self.metrics.increment_counter("auth_failures_total", reason=reason)
        self.logger.info("API key rejected", reason=reason, status_code=error.status_code)
        response = JSONResponse(
            status_code=error.status_code,
            content=error.to_response(request_id).model_dump(),
            headers={"X-Request-Id": request_id}
        )
        return AuthFailure(response=response, status_code=error.status_code, code=error.code)

    def _reject_quota(self, record: ApiKeyRecord, quota: QuotaDecision, request_id: str) -> AuthFailure:
        window = quota.exceeded_window
        if window == MONTH_WINDOW:
            limit = quota.monthly_limit
            message = (f"Monthly API limit exceeded ({limit} calls/month). "
                       "Resets at the start of next month.")
        else:
            limit = quota.limit
            message = f"Per-minute rate limit exceeded ({limit} calls/minute). Please slow down."

        if self.metrics is not None:
            self.metrics.increment_counter("rate_limit_hits_total", tier=record.tier.value, window=window)
        self.logger.warning("API quota exhausted", key_id=record.key_id, tier=record.tier.value,
                            window=window, limit=limit)

        error = RateLimitError(message, {"window": window, "limit": limit,
                                         "retry_after": quota.retry_after})
        response = JSONResponse(
            status_code=error.status_code,
            content=error.to_response(request_id).model_dump(),
            headers={
                "X-Request-Id": request_id,
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(quota.retry_after),
                "Retry-After": str(quota.retry_after),
            }
        )
        return AuthFailure(response=response, status_code=error.status_code, code=error.code)

    # -- response decoration --------------------------------------------

    def add_rate_limit_headers(self,
                               response: Response,
                               request_id: str,
                               tier: Tier,
                               quota: Optional[QuotaDecision] = None) -> Response:
        """Attach request id and quota headers to a successful response."""
        response.headers["X-Request-Id"] = request_id
        limit = quota.limit if quota is not None else TIER_LIMITS[Tier(tier)].per_minute
        response.headers["X-RateLimit-Limit"] = str(limit)
        if quota is not None:
            reset_in = max(0, math.ceil(quota.reset_at - self.clock()))
            response.headers["X-RateLimit-Remaining"] = str(quota.remaining)
            response.headers["X-RateLimit-Reset"] = str(reset_in)
            response.headers["X-RateLimit-Monthly-Remaining"] = (
                "unlimited" if quota.monthly_remaining is None else str(quota.monthly_remaining)
            )
        return response

    # -- usage trail ----------------------------------------------------

    def record_usage(self, request: Request, auth: AuthSuccess, status_code: int) -> None:
        """Append a usage entry for an authenticated call without blocking the response."""
        entry = ApiUsageEntry(
            key_id=auth.key_id,
            endpoint=request.url.path,
            method=request.method,
            status_code=status_code,
            response_time_ms=max(0, int((time.perf_counter() - auth.started) * 1000)),
            requested_at=utc_from_timestamp(self.clock()),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        fire_and_forget(self.store.record_usage(entry), name=f"record_api_usage:{auth.key_id}")

    async def get_usage(self, key_id: str, limit: int = 50):
        return await self.store.list_usage(key_id, limit)

    # -- key management -------------------------------------------------

    async def issue_api_key(self,
                            tier: Tier,
                            name: str = "",
                            monthly_limit: Optional[int] = None,
                            per_minute_limit: Optional[int] = None,
                            expires_at: Optional[datetime] = None) -> Tuple[str, ApiKeyRecord]:
        """Create a key. The raw key is returned once and never stored."""
        raw_key = generate_api_key(self.key_prefix)
        record = ApiKeyRecord(
            key_hash=hash_api_key(raw_key),
            key_prefix=raw_key[:len(self.key_prefix) + 4],
            tier=Tier(tier),
            name=name,
            monthly_limit=monthly_limit,
            per_minute_limit=per_minute_limit,
            created_at=utc_from_timestamp(self.clock()),
            expires_at=expires_at,
        )
        stored = await self.store.create(record)
        self.logger.info("Issued API key", key_id=stored.key_id, tier=stored.tier.value, name=name)
        return raw_key, stored

    async def revoke_api_key(self, key_id: str) -> bool:
        revoked = await self.store.revoke(key_id, utc_from_timestamp(self.clock()))
        if revoked:
            self.logger.info("Revoked API key", key_id=key_id)
        return revoked
