"""Background sync scheduler.

Pull-only: there are no webhooks.  The scheduler decides which connections
are due according to their provider's interval and runs the resulting jobs
through ``SyncOrchestrator.sync_one``:

1. ``enqueue_due`` picks every active connection whose interval has elapsed
2. ``run_all`` executes the queue with bounded concurrency
3. Each job yields a ``SyncJobResult`` (success or error, never raised)

Sync intervals come from ``sync_config.yaml`` (``sync_intervals``):
    Fitbit, Google Fit, Garmin, Withings:  hourly
    Apple Health, Samsung Health:          daily (placeholder data)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID

from healthsync.integrations.base import Provider
from healthsync.integrations.config_loader import SyncConfig
from healthsync.integrations.connections import Connection
from healthsync.integrations.errors import SyncError
from healthsync.integrations.sync.orchestrator import SyncOrchestrator
from healthsync.models.base import utc_now
from healthsync.models.sync import SyncCounts

logger = logging.getLogger("healthsync.integrations.sync.scheduler")

DEFAULT_SYNC_INTERVAL = 3600


@dataclass
class SyncJob:
    """A scheduled sync job for one user + provider.

    Attributes:
        user_id:    Internal user UUID.
        provider:   Provider to sync.
        start:      Window start (None = orchestrator default).
        end:        Window end (None = now).
        priority:   Lower = higher priority. 1–10.
        created_at: When the job was created.
    """

    user_id: UUID
    provider: Provider
    start: datetime | None = None
    end: datetime | None = None
    priority: int = 5
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SyncJobResult:
    """Result of a single sync job execution.

    Attributes:
        user_id:   Internal user UUID.
        provider:  Provider synced.
        status:    'success' or 'error'.
        counts:    Records written, when successful.
        error:     Error message if status == 'error'.
        synced_at: UTC timestamp of completion.
    """

    user_id: UUID
    provider: Provider
    status: str = "success"
    counts: SyncCounts | None = None
    error: str | None = None
    synced_at: datetime = field(default_factory=utc_now)


class SyncScheduler:
    """Schedule and execute provider sync jobs.

    The scheduler maintains a queue of pending sync jobs and processes them
    concurrently up to ``max_concurrent`` at a time.

    Usage::

        scheduler = SyncScheduler(orchestrator, config)
        scheduler.enqueue_due(await manager.list_for_user(user_id))
        results = await scheduler.run_all()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        config: SyncConfig | None = None,
        *,
        max_concurrent: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the scheduler.

        Args:
            orchestrator:   Runs each job's sync.
            config:         Source of per-provider intervals (None = defaults).
            max_concurrent: Maximum number of simultaneous sync jobs.
            clock:          UTC clock used for due checks.
        """
        self._orchestrator = orchestrator
        self._config = config
        self._max_concurrent = max_concurrent
        self._clock = clock
        self._queue: list[SyncJob] = []
        self._results: list[SyncJobResult] = []

    @property
    def pending(self) -> list[SyncJob]:
        return list(self._queue)

    def enqueue(self, job: SyncJob) -> None:
        """Add a sync job to the queue.

        Jobs are sorted by priority (ascending = higher priority).
        """
        self._queue.append(job)
        self._queue.sort(key=lambda j: j.priority)
        logger.debug(
            "Enqueued sync job: %s/%s (priority=%d)", job.user_id, job.provider, job.priority
        )

    def enqueue_due(
        self, connections: Iterable[Connection], now: datetime | None = None
    ) -> int:
        """Enqueue a job for every active connection that is due.

        Returns:
            Number of jobs enqueued.
        """
        now = now or self._clock()
        queued = 0
        for connection in connections:
            if not connection.is_active:
                continue
            if self.should_sync(connection.provider, connection.last_synced_at, now):
                self.enqueue(SyncJob(user_id=connection.user_id, provider=connection.provider))
                queued += 1
        return queued

    async def run_all(self) -> list[SyncJobResult]:
        """Execute all queued sync jobs.

        Processes jobs with max_concurrent parallelism.

        Returns:
            One SyncJobResult per executed job, in queue order.
        """
        if not self._queue:
            logger.debug("SyncScheduler: no jobs in queue")
            return []

        jobs = list(self._queue)
        self._queue.clear()
        logger.info("SyncScheduler: running %d jobs", len(jobs))
        semaphore = asyncio.Semaphore(self._max_concurrent)
        outcomes = await asyncio.gather(
            *(self._run_job(job, semaphore) for job in jobs), return_exceptions=True
        )

        self._results = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Sync job %s/%s failed with exception: %s",
                    job.user_id, job.provider, outcome,
                )
                outcome = SyncJobResult(
                    user_id=job.user_id,
                    provider=job.provider,
                    status="error",
                    error=str(outcome) or type(outcome).__name__,
                    synced_at=self._clock(),
                )
            self._results.append(outcome)

        logger.info(
            "SyncScheduler: %d jobs complete, %d errors",
            len(self._results),
            sum(1 for r in self._results if r.status == "error"),
        )
        return self._results

    async def _run_job(self, job: SyncJob, semaphore: asyncio.Semaphore) -> SyncJobResult:
        async with semaphore:
            return await self._execute(job)

    async def _execute(self, job: SyncJob) -> SyncJobResult:
        try:
            counts = await self._orchestrator.sync_one(
                job.user_id, job.provider, job.start, job.end
            )
        except SyncError as exc:
            logger.warning("Sync error for %s/%s: %s", job.user_id, job.provider, exc)
            return SyncJobResult(
                user_id=job.user_id,
                provider=job.provider,
                status="error",
                error=exc.message,
                synced_at=self._clock(),
            )
        return SyncJobResult(
            user_id=job.user_id,
            provider=job.provider,
            counts=counts,
            synced_at=self._clock(),
        )

    def get_interval(self, provider: Provider | str) -> int:
        """Return the sync interval in seconds for a given provider."""
        if self._config is None:
            return DEFAULT_SYNC_INTERVAL
        return self._config.sync_interval(str(provider))

    def should_sync(
        self,
        provider: Provider | str,
        last_synced_at: datetime | None,
        now: datetime | None = None,
    ) -> bool:
        """Return True if a provider connection is due for a sync.

        Args:
            provider:       Provider slug.
            last_synced_at: UTC datetime of last successful sync (None = never).
            now:            Reference time (default: the scheduler clock).
        """
        if last_synced_at is None:
            return True
        elapsed = ((now or self._clock()) - last_synced_at).total_seconds()
        return elapsed >= self.get_interval(provider)
