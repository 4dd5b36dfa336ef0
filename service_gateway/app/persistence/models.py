"""
Persisted record types for the gateway.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..ratelimit.fixed_window import QuotaCounters, Tier


def utc_from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class RefreshStatus(str, Enum):
    """Outcome of an ingestion attempt."""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ContentItem:
    """One ingested payload for a (module, section) pair.

    Superseded by the next successful ingestion of the same pair: the old row
    is marked inactive, never deleted by reads.
    """
    module: str
    section: str
    data: Any
    source_tag: str
    fetched_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "module": self.module,
            "section": self.section,
            "data": self.data,
            "source_tag": self.source_tag,
            "is_active": self.is_active,
            "fetched_at": self.fetched_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class RefreshLogEntry:
    """Append-only audit record of one ingestion attempt."""
    module: str
    section: str
    status: RefreshStatus
    timestamped_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "module": self.module,
            "section": self.section,
            "status": self.status.value,
            "timestamped_at": self.timestamped_at.isoformat(),
            "details": self.details,
        }


@dataclass
class ApiKeyRecord:
    """An issued API key. Only the SHA-256 hash of the raw key is kept."""
    key_hash: str
    tier: Tier
    name: str = ""
    key_id: str = field(default_factory=new_id)
    key_prefix: str = ""
    monthly_limit: Optional[int] = None
    per_minute_limit: Optional[int] = None
    requests_this_minute: int = 0
    minute_window_started_at: Optional[float] = None
    requests_this_month: int = 0
    month_window_started_at: Optional[float] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    @property
    def counters(self) -> QuotaCounters:
        return QuotaCounters(
            requests_this_minute=self.requests_this_minute,
            minute_window_started_at=self.minute_window_started_at,
            requests_this_month=self.requests_this_month,
            month_window_started_at=self.month_window_started_at,
        )

    def with_counters(self, counters: QuotaCounters) -> "ApiKeyRecord":
        return replace(
            self,
            requests_this_minute=counters.requests_this_minute,
            minute_window_started_at=counters.minute_window_started_at,
            requests_this_month=counters.requests_this_month,
            month_window_started_at=counters.month_window_started_at,
        )

    def is_revoked(self) -> bool:
        return not self.is_active or self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass
class ApiUsageEntry:
    """One served /v1 call for a key, kept for per-key usage reporting."""
    key_id: str
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    requested_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key_id": self.key_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "requested_at": self.requested_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }
