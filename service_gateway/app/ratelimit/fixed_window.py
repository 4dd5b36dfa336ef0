"""
Fixed-window quota accounting for public API keys.

Each key carries two independent counters: one for the current UTC minute and
one for the current UTC calendar month. A counter resets as soon as ``now``
falls into a later window than the one it was started in. The monthly limit is
checked first; a rejected request does not increment either counter.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple


class Tier(str, Enum):
    """API key tiers, lowest to highest."""
    DEVELOPER = "developer"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def satisfies(self, required: "Tier") -> bool:
        """True when this tier includes the capabilities of ``required``."""
        return self.rank >= required.rank


TIER_ORDER = [Tier.DEVELOPER, Tier.BUSINESS, Tier.ENTERPRISE]


@dataclass(frozen=True)
class TierLimits:
    """Request budget for a tier. ``monthly=None`` means unlimited."""
    monthly: Optional[int]
    per_minute: int


TIER_LIMITS: Dict[Tier, TierLimits] = {
    Tier.DEVELOPER: TierLimits(monthly=1_000, per_minute=10),
    Tier.BUSINESS: TierLimits(monthly=50_000, per_minute=60),
    Tier.ENTERPRISE: TierLimits(monthly=None, per_minute=300),
}


def resolve_limits(tier: Tier,
                   monthly_override: Optional[int] = None,
                   per_minute_override: Optional[int] = None) -> TierLimits:
    """Tier defaults, with any per-key contract limits applied on top."""
    defaults = TIER_LIMITS[tier]
    return TierLimits(
        monthly=monthly_override if monthly_override is not None else defaults.monthly,
        per_minute=per_minute_override if per_minute_override is not None else defaults.per_minute,
    )


MINUTE_WINDOW = "minute"
MONTH_WINDOW = "month"


def minute_window_start(now: float) -> float:
    """Epoch seconds of the top of the UTC minute containing now."""
    return math.floor(now / 60.0) * 60.0


def month_window_start(now: float) -> float:
    """Epoch seconds of 00:00 UTC on the first day of now's month."""
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0).timestamp()


def next_month_start(now: float) -> float:
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    if current.month == 12:
        following = datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        following = datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)
    return following.timestamp()


@dataclass(frozen=True)
class QuotaCounters:
    """The mutable quota state persisted on each API key."""
    requests_this_minute: int = 0
    minute_window_started_at: Optional[float] = None
    requests_this_month: int = 0
    month_window_started_at: Optional[float] = None


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of one quota check."""
    allowed: bool
    tier: Tier
    limit: int
    remaining: int
    reset_at: float
    monthly_limit: Optional[int]
    monthly_remaining: Optional[int]
    exceeded_window: Optional[str] = None
    retry_after: int = 0


def roll_windows(counters: QuotaCounters, now: float) -> QuotaCounters:
    """Reset whichever counters belong to a window that has ended."""
    minute_start = minute_window_start(now)
    month_start = month_window_start(now)
    rolled = counters

    if rolled.month_window_started_at is None or rolled.month_window_started_at < month_start:
        rolled = replace(rolled, requests_this_month=0, month_window_started_at=month_start)
    if rolled.minute_window_started_at is None or rolled.minute_window_started_at < minute_start:
        rolled = replace(rolled, requests_this_minute=0, minute_window_started_at=minute_start)
    return rolled


def apply_quota(tier: Tier,
                counters: QuotaCounters,
                now: float,
                limits: Optional[TierLimits] = None) -> Tuple[QuotaDecision, QuotaCounters]:
    """Check one request against the tier's limits.

    Returns the decision and the counters to persist. Counters are only
    incremented when the request is allowed; window rollovers are applied
    either way.
    """
    if limits is None:
        limits = TIER_LIMITS[tier]
    rolled = roll_windows(counters, now)
    minute_reset = minute_window_start(now) + 60.0

    exceeded: Optional[str] = None
    if limits.monthly is not None and rolled.requests_this_month >= limits.monthly:
        exceeded = MONTH_WINDOW
    elif rolled.requests_this_minute >= limits.per_minute:
        exceeded = MINUTE_WINDOW

    if exceeded is None:
        rolled = replace(
            rolled,
            requests_this_minute=rolled.requests_this_minute + 1,
            requests_this_month=rolled.requests_this_month + 1,
        )

    reset_at = next_month_start(now) if exceeded == MONTH_WINDOW else minute_reset
    monthly_remaining = (
        None if limits.monthly is None
        else max(0, limits.monthly - rolled.requests_this_month)
    )
    remaining = 0 if exceeded else max(0, limits.per_minute - rolled.requests_this_minute)

    decision = QuotaDecision(
        allowed=exceeded is None,
        tier=tier,
        limit=limits.per_minute,
        remaining=remaining,
        reset_at=reset_at,
        monthly_limit=limits.monthly,
        monthly_remaining=monthly_remaining,
        exceeded_window=exceeded,
        retry_after=max(1, math.ceil(reset_at - now)) if exceeded else 0,
    )
    return decision, rolled
