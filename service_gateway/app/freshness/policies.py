"""
Per-module freshness policies: TTL, refresh priority and refresh source.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


class RefreshPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MODERATE = "moderate"
    LOW = "low"


class RefreshSource(str, Enum):
    API = "api"
    RESEARCH = "research"
    BOTH = "both"


PRIORITY_ORDER = {
    RefreshPriority.CRITICAL: 0,
    RefreshPriority.HIGH: 1,
    RefreshPriority.MODERATE: 2,
    RefreshPriority.LOW: 3,
}


@dataclass(frozen=True)
class FreshnessPolicy:
    """How long a module's content stays current."""
    ttl_hours: float
    refresh_priority: RefreshPriority
    refresh_source: RefreshSource

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)


FRESHNESS_POLICIES: Dict[str, FreshnessPolicy] = {
    # Critical: upstream changes within hours
    "space-weather": FreshnessPolicy(3, RefreshPriority.CRITICAL, RefreshSource.API),
    "launches": FreshnessPolicy(6, RefreshPriority.CRITICAL, RefreshSource.API),
    "space-stations": FreshnessPolicy(24, RefreshPriority.CRITICAL, RefreshSource.BOTH),

    # High: news cycle and market hours
    "news": FreshnessPolicy(1, RefreshPriority.HIGH, RefreshSource.API),
    "market-data": FreshnessPolicy(24, RefreshPriority.HIGH, RefreshSource.API),
    "constellations": FreshnessPolicy(168, RefreshPriority.HIGH, RefreshSource.RESEARCH),

    # Moderate / low: reference data
    "opportunities": FreshnessPolicy(168, RefreshPriority.MODERATE, RefreshSource.API),
    "patents": FreshnessPolicy(720, RefreshPriority.LOW, RefreshSource.RESEARCH),
    "ground-stations": FreshnessPolicy(1440, RefreshPriority.LOW, RefreshSource.RESEARCH),
}

DEFAULT_POLICY = FreshnessPolicy(720, RefreshPriority.MODERATE, RefreshSource.RESEARCH)


def get_policy(module: str) -> FreshnessPolicy:
    return FRESHNESS_POLICIES.get(module, DEFAULT_POLICY)


def get_expires_at(module: str, from_time: Optional[datetime] = None) -> datetime:
    start = from_time or datetime.now(timezone.utc)
    return start + get_policy(module).ttl


def is_stale(module: str, last_refreshed: datetime, now: Optional[datetime] = None) -> bool:
    """Older than one TTL."""
    now = now or datetime.now(timezone.utc)
    return now - last_refreshed > get_policy(module).ttl


def is_expired(module: str, last_refreshed: datetime, now: Optional[datetime] = None) -> bool:
    """Older than two TTLs."""
    now = now or datetime.now(timezone.utc)
    return now - last_refreshed > get_policy(module).ttl * 2


def get_modules_needing_refresh() -> List[str]:
    """All policy modules, most urgent first."""
    ordered = sorted(FRESHNESS_POLICIES.items(), key=lambda kv: PRIORITY_ORDER[kv[1].refresh_priority])
    return [module for module, _ in ordered]
