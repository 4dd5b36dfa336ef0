"""
Periodic ingestion and cleanup jobs.

Each job runs in its own asyncio task on a fixed interval. Per-job run
history is tracked so the admin surface can show which feeds have gone
quiet, and any job can be triggered by hand.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.logging import get_logger
from .service import IngestionResult, IngestionService, Provider


class JobFailedError(Exception):
    """A job ran but reported an unsuccessful outcome."""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result



def provider_job_label(module: str) -> str:
    return f"{module}-refresh"


@dataclass
class JobStatus:
    """Run history for one scheduled job."""
    label: str
    interval_seconds: float
    max_stale_minutes: float
    last_attempt_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    total_runs: int = 0
    total_failures: int = 0

    def is_stale(self, now: float, started_at: Optional[float]) -> bool:
        """No success within max_stale_minutes, counting from scheduler start."""
        reference = self.last_success_at or started_at
        if reference is None:
            return False
        return now - reference > self.max_stale_minutes * 60

    def to_dict(self, now: float, started_at: Optional[float]) -> Dict[str, Any]:
        return {
            "label": self.label,
            "interval_seconds": self.interval_seconds,
            "max_stale_minutes": self.max_stale_minutes,
            "last_attempt_at": self.last_attempt_at,
            "last_success_at": self.last_success_at,
            "last_failure_at": self.last_failure_at,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "total_runs": self.total_runs,
            "total_failures": self.total_failures,
            "is_stale": self.is_stale(now, started_at),
        }


@dataclass
class ScheduledJob:
    label: str
    interval_seconds: float
    action: Callable[[], Awaitable[Any]]
    status: JobStatus
    run_on_start: bool = True
    last_result: Any = field(default=None, repr=False)
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)


class IngestionScheduler:
    """Runs ingestion and cleanup jobs on fixed intervals."""

    def __init__(self, ingestion: IngestionService, clock: Callable[[], float] = time.time):
        self.ingestion = ingestion
        self.clock = clock
        self.logger = get_logger("gateway.scheduler")
        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self.started_at: Optional[float] = None

    def add_job(self,
                label: str,
                interval_seconds: float,
                action: Callable[[], Awaitable[Any]],
                max_stale_minutes: Optional[float] = None,
                run_on_start: bool = True) -> ScheduledJob:
        if label in self.jobs:
            raise ValueError(f"Job '{label}' already registered")
        if max_stale_minutes is None:
            # Tolerate three missed runs before flagging
            max_stale_minutes = interval_seconds * 4 / 60.0
        job = ScheduledJob(
            label=label,
            interval_seconds=interval_seconds,
            action=action,
            status=JobStatus(label=label, interval_seconds=interval_seconds,
                             max_stale_minutes=max_stale_minutes),
            run_on_start=run_on_start,
        )
        self.jobs[label] = job
        return job

    def add_provider_job(self, provider: Provider, interval_seconds: float,
                         max_stale_minutes: Optional[float] = None) -> ScheduledJob:
        async def _ingest() -> IngestionResult:
            result = await self.ingestion.ingest(provider)
            if not result.success:
                raise JobFailedError(result.error or "ingestion failed", result)
            return result

        return self.add_job(provider_job_label(provider.module), interval_seconds, _ingest, max_stale_minutes)

    def add_cleanup_job(self, interval_seconds: float) -> ScheduledJob:
        return self.add_job("staleness-cleanup", interval_seconds, self.ingestion.run_cleanup,
                            run_on_start=False)

    async def start(self):
        """Start one task per job."""
        if self.running:
            return
        self.running = True
        self.started_at = self.clock()
        for job in self.jobs.values():
            job.task = asyncio.create_task(self._job_loop(job), name=f"job:{job.label}")
        self.logger.info("Scheduler started", jobs=list(self.jobs))

    async def stop(self):
        """Cancel all job tasks."""
        self.running = False
        tasks = [job.task for job in self.jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self.jobs.values():
            job.task = None
        self.logger.info("Scheduler stopped")

    async def _job_loop(self, job: ScheduledJob):
        if job.run_on_start:
            await self._execute(job)
        while self.running:
            await asyncio.sleep(job.interval_seconds)
            await self._execute(job)

    async def _execute(self, job: ScheduledJob) -> bool:
        status = job.status
        status.last_attempt_at = self.clock()
        status.total_runs += 1
        try:
            job.last_result = await job.action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_result = getattr(e, "result", None)
            status.last_failure_at = self.clock()
            status.last_error = str(e) or type(e).__name__
            status.consecutive_failures += 1
            status.total_failures += 1
            self.logger.warning("Scheduled job failed", job=job.label, error=status.last_error,
                                consecutive_failures=status.consecutive_failures)
            return False

        status.last_success_at = self.clock()
        status.consecutive_failures = 0
        self.logger.info("Scheduled job succeeded", job=job.label)
        return True

    async def run_job(self, label: str) -> Optional[Dict[str, Any]]:
        """Run a job immediately. Returns its status, or None for an unknown label."""
        job = self.jobs.get(label)
        if job is None:
            return None
        await self._execute(job)
        return job.status.to_dict(self.clock(), self.started_at)

    def get_job_status(self) -> Dict[str, Any]:
        now = self.clock()
        jobs: List[Dict[str, Any]] = [
            job.status.to_dict(now, self.started_at) for job in self.jobs.values()
        ]
        return {
            "running": self.running,
            "started_at": self.started_at,
            "jobs": jobs,
            "stale_jobs": [job["label"] for job in jobs if job["is_stale"]],
        }
