"""
Unit tests for the ingestion scheduler.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.caching.ttl_cache import TTLCache
from service_gateway.app.freshness.ledger import FreshnessLedger
from service_gateway.app.ingestion.scheduler import IngestionScheduler
from service_gateway.app.ingestion.service import IngestionService
from service_gateway.app.persistence.memory import InMemoryLedgerStore
from shared.circuit_breaker import CircuitBreakerRegistry
from shared.test_helpers import FakeProvider, ManualClock


class TestIngestionScheduler:
    """Test cases for IngestionScheduler."""

    @pytest.fixture
    def clock(self):
        """Manual clock."""
        return ManualClock()

    @pytest.fixture
    def ingestion(self, clock):
        """Ingestion service over in-memory components."""
        return IngestionService(
            TTLCache(clock=clock),
            CircuitBreakerRegistry(failure_threshold=10, clock=clock),
            FreshnessLedger(InMemoryLedgerStore(), clock=clock),
            clock=clock,
        )

    @pytest.fixture
    def scheduler(self, ingestion, clock):
        """Scheduler with no jobs yet."""
        return IngestionScheduler(ingestion, clock=clock)

    @pytest.mark.asyncio
    async def test_provider_job_success(self, scheduler):
        """A successful run records the success and resets failures."""
        provider = FakeProvider(responses=[[1]])
        scheduler.add_provider_job(provider, interval_seconds=300)

        status = await scheduler.run_job("news-refresh")

        assert status["total_runs"] == 1
        assert status["consecutive_failures"] == 0
        assert status["last_success_at"] is not None
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_consecutive_failures_tracked(self, scheduler, clock):
        """Failed ingestions count up until the next success."""
        provider = FakeProvider(responses=[RuntimeError("down"), RuntimeError("down"), [1]])
        scheduler.add_provider_job(provider, interval_seconds=300)

        await scheduler.run_job("news-refresh")
        clock.advance(300)
        status = await scheduler.run_job("news-refresh")
        assert status["consecutive_failures"] == 2
        assert status["total_failures"] == 2
        assert "down" in status["last_error"]

        clock.advance(300)
        status = await scheduler.run_job("news-refresh")
        assert status["consecutive_failures"] == 0
        assert status["total_failures"] == 2
        assert status["total_runs"] == 3

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler):
        assert await scheduler.run_job("nope") is None

    def test_duplicate_label_rejected(self, scheduler):
        provider = FakeProvider()
        scheduler.add_provider_job(provider, 60)
        with pytest.raises(ValueError):
            scheduler.add_provider_job(provider, 60)

    @pytest.mark.asyncio
    async def test_stale_job_detection(self, scheduler, clock):
        """A job with no success for max_stale_minutes is reported stale."""
        provider = FakeProvider(responses=[RuntimeError("down")])
        scheduler.add_provider_job(provider, interval_seconds=60, max_stale_minutes=5)
        scheduler.started_at = clock()

        clock.advance(299)
        assert scheduler.get_job_status()["stale_jobs"] == []

        clock.advance(2)
        await scheduler.run_job("news-refresh")
        status = scheduler.get_job_status()
        assert status["stale_jobs"] == ["news-refresh"]
        assert status["jobs"][0]["is_stale"] is True

    def test_default_max_stale(self, scheduler):
        job = scheduler.add_cleanup_job(interval_seconds=600)
        assert job.label == "staleness-cleanup"
        assert job.status.max_stale_minutes == 40
        assert job.run_on_start is False

    @pytest.mark.asyncio
    async def test_start_runs_jobs_and_stop_cancels(self, scheduler):
        """start() runs run_on_start jobs immediately; stop() cancels the loops."""
        ran = asyncio.Event()

        async def action():
            ran.set()

        scheduler.add_job("one-off", 3600, action)
        await scheduler.start()
        await asyncio.wait_for(ran.wait(), timeout=1)

        status = scheduler.get_job_status()
        assert status["running"] is True

        await scheduler.stop()
        assert scheduler.get_job_status()["running"] is False
        assert scheduler.jobs["one-off"].task is None

    @pytest.mark.asyncio
    async def test_cleanup_job_runs_sweeps(self, scheduler, ingestion):
        scheduler.add_cleanup_job(interval_seconds=86400)
        status = await scheduler.run_job("staleness-cleanup")
        assert status["consecutive_failures"] == 0
