"""Adaptive poller refreshing covered ranges at a visibility-dependent interval."""

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Protocol


logger = logging.getLogger(__name__)

POLL_JOB_ID = "calsync.poll"


class PollRegime(StrEnum):
    """Interval regime of the poller."""

    ACTIVE = "active"  # Client is visible
    INACTIVE = "inactive"  # Client is hidden


class Timer(Protocol):
    """Platform timer able to run a coroutine function once after a delay."""

    def schedule_once(self, job_id: str, delay_seconds: float, callback: Callable[[], Awaitable[object]]) -> datetime:
        """Replace any pending run of job_id and return the planned run time."""
        ...

    def cancel(self, job_id: str) -> None:
        """Remove a pending run."""
        ...


class AdaptivePoller:
    """Two-regime polling state machine driven by visibility signals and ticks.

    The poller holds no platform state of its own: the host reports visibility
    through on_visibility_change() and a Timer calls tick(). Refresh failures
    are recorded and logged; tick() never raises.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[bool]],
        timer: Timer | None = None,
        *,
        active_interval: float = 120,
        inactive_interval: float = 600,
        reactivation_threshold: float = 120,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._refresh = refresh
        self._timer = timer
        self.active_interval = active_interval
        self.inactive_interval = inactive_interval
        self.reactivation_threshold = reactivation_threshold
        self._clock = clock

        self._visible = True
        self._hidden_since: float | None = None
        self._running = False

        self.next_run_at: datetime | None = None
        self.last_refresh_at: datetime | None = None
        self.last_error: Exception | None = None
        self.refresh_count = 0
        self.failure_count = 0

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def running(self) -> bool:
        return self._running

    @property
    def regime(self) -> PollRegime:
        return PollRegime.ACTIVE if self._visible else PollRegime.INACTIVE

    @property
    def next_delay(self) -> float:
        """Interval of the current regime in seconds."""
        return self.active_interval if self._visible else self.inactive_interval

    def start(self) -> None:
        """Begin periodic refreshes using the current regime."""
        self._running = True
        self._schedule(self.next_delay)
        logger.info("Poller started in %s regime (%ss)", self.regime, self.next_delay)

    def stop(self) -> None:
        """Cancel the pending timer. Refreshes already running are not interrupted."""
        self._running = False
        self.next_run_at = None
        if self._timer is not None:
            self._timer.cancel(POLL_JOB_ID)
        logger.info("Poller stopped")

    def on_visibility_change(self, is_visible: bool) -> bool:
        """Switch regime on a visibility signal.

        Becoming visible after being hidden longer than the reactivation
        threshold schedules an immediate refresh.

        Returns:
            True if an immediate refresh was scheduled
        """
        if is_visible == self._visible:
            return False

        self._visible = is_visible
        if not is_visible:
            self._hidden_since = self._clock()
            logger.debug("Client hidden, switching to %s regime", self.regime)
            self._schedule(self.next_delay)
            return False

        hidden_for = self._clock() - self._hidden_since if self._hidden_since is not None else 0.0
        self._hidden_since = None
        if hidden_for > self.reactivation_threshold:
            logger.info("Client visible again after %.0fs, refreshing now", hidden_for)
            self._schedule(0)
            return True

        self._schedule(self.next_delay)
        return False

    async def tick(self) -> bool:
        """Run one refresh cycle and schedule the next one.

        Returns:
            True if the refresh succeeded
        """
        try:
            succeeded = bool(await self._refresh())
            if succeeded:
                self.last_error = None
        except Exception as e:
            succeeded = False
            self.failure_count += 1
            self.last_error = e
            logger.warning("Scheduled refresh failed: %s", e)
        finally:
            self.refresh_count += 1
            self.last_refresh_at = datetime.now(UTC)
            self._schedule(self.next_delay)
        return succeeded

    def _schedule(self, delay: float) -> None:
        if not self._running:
            return
        if self._timer is None:
            self.next_run_at = datetime.now(UTC) + timedelta(seconds=delay)
            return
        self.next_run_at = self._timer.schedule_once(POLL_JOB_ID, delay, self.tick)
