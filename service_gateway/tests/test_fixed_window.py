"""
Unit tests for fixed-window quota accounting.
"""

import pytest
from datetime import datetime, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.ratelimit.fixed_window import (
    MINUTE_WINDOW,
    MONTH_WINDOW,
    QuotaCounters,
    TIER_LIMITS,
    Tier,
    TierLimits,
    apply_quota,
    minute_window_start,
    month_window_start,
    next_month_start,
    resolve_limits,
)


def ts(*args) -> float:
    return datetime(*args, tzinfo=timezone.utc).timestamp()


def run_requests(tier, count, now, counters=None, limits=None):
    """Apply ``count`` requests at the same instant; return all decisions and final counters."""
    counters = counters or QuotaCounters()
    decisions = []
    for _ in range(count):
        decision, counters = apply_quota(tier, counters, now, limits)
        decisions.append(decision)
    return decisions, counters


class TestTiers:
    """Test cases for tier ordering and limits."""

    def test_tier_ordering(self):
        assert Tier.ENTERPRISE.satisfies(Tier.BUSINESS)
        assert Tier.BUSINESS.satisfies(Tier.BUSINESS)
        assert not Tier.DEVELOPER.satisfies(Tier.ENTERPRISE)

    def test_default_limits(self):
        assert TIER_LIMITS[Tier.DEVELOPER] == TierLimits(monthly=1_000, per_minute=10)
        assert TIER_LIMITS[Tier.BUSINESS] == TierLimits(monthly=50_000, per_minute=60)
        assert TIER_LIMITS[Tier.ENTERPRISE].monthly is None

    def test_per_key_overrides(self):
        limits = resolve_limits(Tier.ENTERPRISE, monthly_override=5)
        assert limits == TierLimits(monthly=5, per_minute=300)
        assert resolve_limits(Tier.DEVELOPER) == TIER_LIMITS[Tier.DEVELOPER]


class TestWindows:
    """Test cases for window boundaries."""

    def test_minute_window_start(self):
        assert minute_window_start(ts(2026, 10, 19, 12, 0, 59)) == ts(2026, 10, 19, 12, 0, 0)

    def test_month_window_start(self):
        assert month_window_start(ts(2026, 10, 19, 12, 30)) == ts(2026, 10, 1)

    def test_next_month_start_wraps_year(self):
        assert next_month_start(ts(2026, 12, 31, 23, 59)) == ts(2027, 1, 1)


class TestApplyQuota:
    """Test cases for apply_quota."""

    @pytest.fixture
    def now(self):
        """Twenty seconds into a minute."""
        return ts(2026, 10, 19, 12, 0, 20)

    def test_per_minute_limit_plus_one_is_rejected(self, now):
        """The eleventh developer request in one minute is rejected."""
        decisions, counters = run_requests(Tier.DEVELOPER, 11, now)

        assert all(d.allowed for d in decisions[:10])
        rejected = decisions[10]
        assert not rejected.allowed
        assert rejected.exceeded_window == MINUTE_WINDOW
        assert rejected.remaining == 0
        assert rejected.reset_at == ts(2026, 10, 19, 12, 1, 0)
        assert rejected.retry_after == 40
        assert counters.requests_this_minute == 10
        assert counters.requests_this_month == 10

    def test_remaining_counts_down(self, now):
        decisions, _ = run_requests(Tier.DEVELOPER, 3, now)
        assert [d.remaining for d in decisions] == [9, 8, 7]
        assert [d.monthly_remaining for d in decisions] == [999, 998, 997]

    def test_minute_rollover_resets_count(self, now):
        """A new minute starts a fresh per-minute count."""
        _, counters = run_requests(Tier.DEVELOPER, 10, now)
        decision, counters = apply_quota(Tier.DEVELOPER, counters, now + 40)

        assert decision.allowed
        assert counters.requests_this_minute == 1
        assert counters.requests_this_month == 11

    def test_monthly_checked_first(self, now):
        """With both windows exhausted the monthly rejection wins."""
        limits = TierLimits(monthly=3, per_minute=3)
        decisions, _ = run_requests(Tier.BUSINESS, 4, now, limits=limits)

        rejected = decisions[3]
        assert rejected.exceeded_window == MONTH_WINDOW
        assert rejected.reset_at == ts(2026, 11, 1)
        assert rejected.monthly_remaining == 0

    def test_month_rollover_resets_count(self):
        """Crossing into the next month restores the monthly budget."""
        end_of_month = ts(2026, 10, 31, 23, 59, 30)
        limits = TierLimits(monthly=2, per_minute=100)
        decisions, counters = run_requests(Tier.ENTERPRISE, 3, end_of_month, limits=limits)
        assert not decisions[2].allowed
        assert decisions[2].retry_after == 30

        decision, counters = apply_quota(Tier.ENTERPRISE, counters, ts(2026, 11, 1, 0, 0, 1), limits)

        assert decision.allowed
        assert counters.requests_this_month == 1
        assert counters.month_window_started_at == ts(2026, 11, 1)

    def test_rejections_do_not_consume(self, now):
        """Rejected calls leave the counters untouched."""
        _, counters = run_requests(Tier.DEVELOPER, 10, now)
        _, after = run_requests(Tier.DEVELOPER, 5, now, counters=counters)
        assert after == counters

    def test_enterprise_has_no_monthly_cap(self, now):
        decisions, _ = run_requests(Tier.ENTERPRISE, 2, now)
        assert decisions[-1].monthly_limit is None
        assert decisions[-1].monthly_remaining is None
