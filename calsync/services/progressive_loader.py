"""Progressive range loader that expands task coverage as the user navigates."""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

from calsync.core.config import Constants
from calsync.core.events import Listeners
from calsync.core.logging import log_with_context, span
from calsync.core.remote import RemoteStore
from calsync.domain.date_range import DateRange
from calsync.domain.task import Task
from calsync.services.range_ledger import RangeLedger
from calsync.services.task_cache import TaskCache, merge_by_id


logger = logging.getLogger(__name__)


class ProgressiveLoader:
    """Fetch-on-demand loader feeding the task cache and the range ledger.

    Background loads (ensure_covered, refresh_all_ranges) never raise; their
    failures are recorded in last_error and reported to error listeners.
    Explicit loads (fetch_additional_range) re-raise so the caller can react.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: TaskCache,
        ledger: RangeLedger | None = None,
        *,
        margin_days: int = 7,
        prefetch_days: int = 30,
        initial_window_days: int = 30,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._ledger = ledger or RangeLedger()
        self._margin = timedelta(days=margin_days)
        self._margin_days = margin_days
        self._prefetch = timedelta(days=prefetch_days)
        self._initial_window = timedelta(days=initial_window_days)

        self._in_flight: set[str] = set()
        self._refreshes_in_flight = 0
        self._late_arrivals: set[str] = set()

        self.last_error: Exception | None = None
        self.last_sync: datetime | None = None

        self._activity_listeners: Listeners[[]] = Listeners("loader activity")
        self._error_listeners: Listeners[[Exception]] = Listeners("loader error")

    @property
    def ledger(self) -> RangeLedger:
        return self._ledger

    @property
    def loaded_ranges(self) -> list[DateRange]:
        return self._ledger.ranges

    @property
    def in_flight_keys(self) -> set[str]:
        return set(self._in_flight)

    @property
    def is_loading_background(self) -> bool:
        return bool(self._in_flight) or self._refreshes_in_flight > 0

    def on_activity(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback for loading start/stop and sync time changes."""
        return self._activity_listeners.add(callback)

    def on_error(self, callback: Callable[[Exception], None]) -> Callable[[], None]:
        """Register a callback for fetch failures."""
        return self._error_listeners.add(callback)

    # Planning

    def _edge_blocks(self, window: DateRange) -> list[DateRange]:
        """Blocks to prefetch when the window approaches a covered boundary."""
        blocks = []

        forward = self._ledger.range_containing(window.start)
        if forward is not None and forward.end - window.end < self._margin:
            blocks.append(DateRange(start=forward.end, end=forward.end + self._prefetch))

        backward = self._ledger.range_containing(window.end)
        if backward is not None and window.start - backward.start < self._margin:
            blocks.append(DateRange(start=backward.start - self._prefetch, end=backward.start))

        return blocks

    def plan(self, window_start: date, window_end: date) -> list[DateRange]:
        """Return the ranges ensure_covered would fetch for a window, ignoring in-flight keys."""
        window = DateRange(start=window_start, end=window_end)
        requests = []
        if not self._ledger.covers(window.start, window.end):
            requests.append(window.padded(self._margin_days))
        requests.extend(self._edge_blocks(window))
        return requests

    def _reserve(self, ranges: list[DateRange]) -> list[DateRange]:
        """Claim in-flight slots for ranges whose key is not already being fetched."""
        reserved = []
        for date_range in ranges:
            if date_range.key in self._in_flight:
                logger.debug("Fetch already in progress for %s", date_range.key)
                continue
            self._in_flight.add(date_range.key)
            reserved.append(date_range)
        if reserved:
            self._activity_listeners.emit()
        return reserved

    # Loading

    async def ensure_covered(self, window_start: date, window_end: date) -> int:
        """Make sure the visible window is loaded, prefetching near coverage edges.

        If the window is not fully covered, the window padded by the margin is
        fetched. Independently, when the window comes within the margin of a
        covered boundary, a prefetch block beyond that boundary is fetched.

        Args:
            window_start: First visible day
            window_end: Day after the last visible day

        Returns:
            Number of ranges successfully fetched
        """
        reserved = self._reserve(self.plan(window_start, window_end))
        if not reserved:
            return 0

        results = await asyncio.gather(*(self._load(r) for r in reserved), return_exceptions=True)
        loaded = 0
        for date_range, result in zip(reserved, results, strict=True):
            if isinstance(result, Exception):
                self._record_failure(date_range, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                loaded += 1
        return loaded

    async def fetch_additional_range(self, start: date, end: date) -> bool:
        """Fetch an explicit range unless it is already loaded or being loaded.

        Returns:
            True if a fetch was performed

        Raises:
            Exception: Whatever the remote store raised; the ledger is left unchanged
        """
        date_range = DateRange(start=start, end=end)
        if date_range.key in self._in_flight:
            logger.debug("Fetch already in progress for %s", date_range.key)
            return False
        if self._ledger.covers(start, end):
            logger.debug("Range already loaded %s", date_range.key)
            return False

        self._reserve([date_range])
        try:
            await self._load(date_range)
        except Exception as e:
            self._record_failure(date_range, e)
            raise
        return True

    async def initial_load(self, today: date | None = None) -> int:
        """Load the window around today used when the client starts."""
        today = today or datetime.now(UTC).date()
        return await self.ensure_covered(today - self._initial_window, today + self._initial_window)

    async def _load(self, date_range: DateRange) -> None:
        """Fetch one reserved range, merge it into the cache and record it."""
        start = date_range.start.strftime(Constants.DATE_FORMAT)
        end = date_range.end.strftime(Constants.DATE_FORMAT)
        with self._cache.fetching() as mark:
            try:
                with span("loader.fetch_range", range_key=date_range.key):
                    tasks = await self._remote.fetch_tasks_in_range(start, end)
            finally:
                self._in_flight.discard(date_range.key)
            merged = self._cache.ingest(tasks, since=mark)

        if self._refreshes_in_flight:
            self._late_arrivals.update(t.id for t in tasks)
        self._ledger.add(date_range)
        self.last_sync = datetime.now(UTC)
        self.last_error = None
        log_with_context(
            logger,
            "info",
            f"Loaded {merged} tasks for {date_range.key}, total: {len(self._cache)}",
            range_key=date_range.key,
            task_count=merged,
        )
        self._activity_listeners.emit()

    def _record_failure(self, date_range: DateRange, error: Exception) -> None:
        self.last_error = error
        logger.warning("Failed to fetch range %s: %s", date_range.key, error)
        self._activity_listeners.emit()
        self._error_listeners.emit(error)

    async def refresh_all_ranges(self) -> bool:
        """Re-fetch every covered range and swap the cache in one step.

        Fetched tasks accumulate into a fresh map; the live cache is replaced
        only when every range succeeded, so the UI never sees a partial state.

        Returns:
            True if the cache was replaced
        """
        ranges = self._ledger.ranges
        if not ranges:
            logger.debug("No covered ranges to refresh")
            return False

        self._refreshes_in_flight += 1
        self._activity_listeners.emit()
        with self._cache.fetching() as mark:
            try:
                with span("loader.refresh_all", range_count=len(ranges)):
                    results = await asyncio.gather(
                        *(
                            self._remote.fetch_tasks_in_range(
                                r.start.strftime(Constants.DATE_FORMAT), r.end.strftime(Constants.DATE_FORMAT)
                            )
                            for r in ranges
                        ),
                        return_exceptions=True,
                    )
            finally:
                self._refreshes_in_flight -= 1
                late_arrivals = self._late_arrivals
                if not self._refreshes_in_flight:
                    self._late_arrivals = set()

            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, Exception):
                    raise result
            failures = [r for r in results if isinstance(r, Exception)]
            if failures:
                self._record_failure(DateRange(start=ranges[0].start, end=ranges[-1].end), failures[0])
                return False

            # Ranges loaded while the refresh was running are kept as already merged; refreshed data wins per ID
            fresh: dict[str, Task] = merge_by_id({}, (t for t in map(self._cache.get, late_arrivals) if t))
            for tasks in results:
                fresh = merge_by_id(fresh, tasks)  # type: ignore[arg-type]
            self._cache.replace_all(fresh, since=mark)
        self.last_sync = datetime.now(UTC)
        self.last_error = None
        logger.info("Refreshed %d ranges, %d tasks", len(ranges), len(fresh))
        self._activity_listeners.emit()
        return True

    def clear_cache(self) -> None:
        """Drop all cached tasks, loaded ranges and in-flight keys."""
        self._cache.clear()
        self._ledger.clear()
        self._in_flight.clear()
        self._late_arrivals = set()
        logger.info("Task cache cleared")
        self._activity_listeners.emit()
