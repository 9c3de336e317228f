"""SyncClient: the UI-facing entry point wiring every sync component together."""

import asyncio
import logging
from collections.abc import Callable
from datetime import date
from typing import Any

from calsync.core.config import Settings, settings
from calsync.core.errors import ErrorResponse, classify_error
from calsync.core.events import Listeners
from calsync.core.logging import configure_logfire, instrument_httpx
from calsync.core.remote import RemoteStore
from calsync.core.scheduler import ApschedulerTimer
from calsync.domain.date_range import DateRange
from calsync.domain.mutation import PendingMutation
from calsync.domain.sync_status import SyncStatus
from calsync.domain.task import Task, TaskCreate, TaskUpdate
from calsync.interface.api_client import HttpRemoteStore
from calsync.services.conflict_service import ConflictService
from calsync.services.mutation_engine import MutationEngine
from calsync.services.poller import AdaptivePoller
from calsync.services.progressive_loader import ProgressiveLoader
from calsync.services.range_ledger import RangeLedger
from calsync.services.sync_status import SyncStatusAggregator
from calsync.services.task_cache import TaskCache, TaskListener


logger = logging.getLogger(__name__)

CONFLICT_POLL_JOB_ID = "calsync.conflicts"


class SyncClient:
    """Client-side sync layer for calendar tasks.

    Owns one task cache and one range ledger and composes the progressive
    loader, adaptive poller, mutation engine, conflict service and sync
    status aggregator around them. All methods must be called from the event
    loop thread.

    Example:
        client = SyncClient(HttpRemoteStore())
        await client.start()
        await client.ensure_covered(date(2024, 3, 1), date(2024, 3, 8))
        client.mutate(task_id, {"title": "Renamed"})
    """

    def __init__(
        self,
        remote: RemoteStore,
        *,
        config: Settings | None = None,
        timer: ApschedulerTimer | None = None,
    ) -> None:
        self._settings = config or settings
        self._remote = remote
        self._timer = timer or ApschedulerTimer()

        self.cache = TaskCache()
        self.loader = ProgressiveLoader(
            remote,
            self.cache,
            RangeLedger(),
            margin_days=self._settings.range_margin_days,
            prefetch_days=self._settings.prefetch_block_days,
            initial_window_days=self._settings.initial_window_days,
        )
        self.engine = MutationEngine(
            remote,
            self.cache,
            refresh=self.loader.refresh_all_ranges,
            refresh_after_mutation=self._settings.refresh_after_mutation,
        )
        self.conflicts = ConflictService(remote, self.cache)
        self.poller = AdaptivePoller(
            self._poll,
            self._timer,
            active_interval=self._settings.active_poll_seconds,
            inactive_interval=self._settings.inactive_poll_seconds,
            reactivation_threshold=self._settings.reactivation_threshold_seconds,
        )
        self.status = SyncStatusAggregator(
            engine=self.engine,
            loader=self.loader,
            conflicts=self.conflicts,
            remote=remote,
            next_sync=lambda: self.poller.next_run_at,
        )

        self._error_listeners: Listeners[[ErrorResponse]] = Listeners("sync errors")
        self.loader.on_error(self._report_error)
        self.engine.on_error(self._report_mutation_error)
        self._started = False

    # Lifecycle

    async def start(self, today: date | None = None) -> None:
        """Load the initial window, then start polling tasks and conflicts."""
        if self._started:
            return
        self._started = True
        self._timer.start()
        await self.loader.initial_load(today)
        await self.conflicts.refresh()
        self.poller.start()
        self._timer.schedule_interval(CONFLICT_POLL_JOB_ID, self._settings.conflict_poll_seconds, self._poll_conflicts)
        self.status.recompute()
        logger.info("Sync client started with %d tasks", len(self.cache))

    async def close(self) -> None:
        """Cancel timers. Requests already in flight are left to settle on their own."""
        self.poller.stop()
        self._timer.cancel(CONFLICT_POLL_JOB_ID)
        self._timer.shutdown()
        self._started = False
        logger.info("Sync client closed")

    async def _poll(self) -> bool:
        refreshed = await self.loader.refresh_all_ranges()
        await self.status.refresh_remote()
        return refreshed

    async def _poll_conflicts(self) -> None:
        await self.conflicts.refresh()

    # Reads

    @property
    def tasks(self) -> list[Task]:
        return self.cache.tasks

    @property
    def schedulable_tasks(self) -> list[Task]:
        """Tasks with a work period, the only ones that can be placed on the grid."""
        return [t for t in self.cache.tasks if t.is_schedulable]

    def tasks_between(self, start: date, end: date) -> list[Task]:
        return self.cache.tasks_between(start, end)

    def subscribe(self, listener: TaskListener) -> Callable[[], None]:
        """Register a listener called with the full task list after every cache change."""
        return self.cache.subscribe(listener)

    @property
    def loaded_ranges(self) -> list[DateRange]:
        return self.loader.loaded_ranges

    @property
    def sync_status(self) -> SyncStatus:
        return self.status.status

    def subscribe_status(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        return self.status.subscribe(callback)

    def on_error(self, callback: Callable[[ErrorResponse], None]) -> Callable[[], None]:
        """Register a callback receiving a classified error for every background failure."""
        return self._error_listeners.add(callback)

    @property
    def is_read_only(self) -> bool:
        return self.status.is_read_only

    # Loading

    async def ensure_covered(self, start: date, end: date) -> int:
        return await self.loader.ensure_covered(start, end)

    async def fetch_additional_range(self, start: date, end: date) -> bool:
        return await self.loader.fetch_additional_range(start, end)

    async def refresh_all_ranges(self) -> bool:
        return await self.loader.refresh_all_ranges()

    def clear_cache(self) -> None:
        self.loader.clear_cache()

    # Mutations

    def mutate(self, task_id: str, diff: dict[str, Any] | TaskUpdate) -> asyncio.Task[Task | None]:
        return self.engine.mutate(task_id, diff)

    def create_optimistic(self, payload: dict[str, Any] | TaskCreate) -> tuple[Task, asyncio.Task[Task]]:
        return self.engine.create_optimistic(payload)

    def delete_optimistic(self, task_id: str) -> asyncio.Task[None]:
        return self.engine.delete_optimistic(task_id)

    def retry_failed(self) -> list[asyncio.Task[Task | None]]:
        return self.engine.retry_failed()

    # Connectivity

    def on_visibility_change(self, is_visible: bool) -> bool:
        return self.poller.on_visibility_change(is_visible)

    def set_online(self, online: bool) -> None:
        self.status.set_online(online)

    # Error reporting

    def _report_error(self, error: Exception) -> None:
        self._error_listeners.emit(classify_error(error))

    def _report_mutation_error(self, error: Exception, mutation: PendingMutation) -> None:
        logger.debug("Reporting failed %s of task %s", mutation.kind, mutation.task_id)
        self._error_listeners.emit(classify_error(error))


def create_client(config: Settings | None = None) -> SyncClient:
    """Build a SyncClient for the configured backend with Logfire enabled."""
    config = config or settings
    configure_logfire(config)
    instrument_httpx()
    return SyncClient(HttpRemoteStore(config), config=config)
