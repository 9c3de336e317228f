"""APScheduler adapter driving the sync layer's timers on the asyncio event loop."""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger


logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[object]]


class ApschedulerTimer:
    """One-shot and interval timers backed by an AsyncIOScheduler.

    Each timer is a job ID; scheduling it again replaces the previous run, so a
    component only ever has one pending run per timer. Cancelling removes jobs,
    it never touches work that is already running.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone=UTC)
        self._owns_scheduler = scheduler is None
        self._job_ids: set[str] = set()

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the underlying scheduler (must be called with a running event loop)."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Sync scheduler started")

    def schedule_once(self, job_id: str, delay_seconds: float, callback: JobCallback) -> datetime:
        """Run callback once after delay_seconds, replacing any pending run of job_id.

        Returns:
            The planned run time
        """
        run_date = datetime.now(UTC) + timedelta(seconds=max(delay_seconds, 0))
        self._scheduler.add_job(
            callback,
            trigger=DateTrigger(run_date=run_date),
            id=job_id,
            name=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._job_ids.add(job_id)
        logger.debug("Scheduled %s at %s", job_id, run_date.isoformat())
        return run_date

    def schedule_interval(self, job_id: str, seconds: float, callback: JobCallback) -> None:
        """Run callback every `seconds`, replacing any existing job_id."""
        self._scheduler.add_job(
            callback,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._job_ids.add(job_id)
        logger.info("Scheduled %s every %ss", job_id, seconds)

    def cancel(self, job_id: str) -> None:
        """Remove a pending job; unknown IDs are ignored."""
        self._job_ids.discard(job_id)
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug("No pending job %s to cancel", job_id)

    def shutdown(self) -> None:
        """Cancel every timer and stop the scheduler if this adapter created it."""
        for job_id in list(self._job_ids):
            self.cancel(job_id)
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")
