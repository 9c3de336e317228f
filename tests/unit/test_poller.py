"""Tests for the adaptive poller and its APScheduler timer."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.jobstores.base import JobLookupError

from calsync.core.scheduler import ApschedulerTimer
from calsync.services.poller import POLL_JOB_ID, AdaptivePoller, PollRegime


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def refresh():
    return AsyncMock(return_value=True)


@pytest.fixture
def poller(refresh, timer, clock):
    return AdaptivePoller(
        refresh,
        timer,
        active_interval=120,
        inactive_interval=600,
        reactivation_threshold=120,
        clock=clock,
    )


@pytest.mark.unit
class TestAdaptivePoller:
    def test_start_uses_active_interval(self, poller, timer):
        poller.start()

        assert poller.regime == PollRegime.ACTIVE
        assert timer.delay_of(POLL_JOB_ID) == 120
        assert poller.next_run_at is not None

    def test_hidden_switches_to_inactive_interval(self, poller, timer):
        poller.start()

        assert poller.on_visibility_change(False) is False

        assert poller.regime == PollRegime.INACTIVE
        assert timer.delay_of(POLL_JOB_ID) == 600

    def test_short_absence_resumes_active_interval(self, poller, timer, clock):
        poller.start()
        poller.on_visibility_change(False)
        clock.now += 60

        assert poller.on_visibility_change(True) is False
        assert timer.delay_of(POLL_JOB_ID) == 120

    def test_long_absence_refreshes_immediately(self, poller, timer, clock):
        poller.start()
        poller.on_visibility_change(False)
        clock.now += 121

        assert poller.on_visibility_change(True) is True
        assert timer.delay_of(POLL_JOB_ID) == 0

    def test_repeated_signal_is_ignored(self, poller, timer):
        poller.start()
        timer.once.clear()

        assert poller.on_visibility_change(True) is False
        assert timer.once == {}

    def test_stop_cancels_timer(self, poller, timer):
        poller.start()
        poller.stop()

        assert timer.once == {}
        assert poller.next_run_at is None
        poller.on_visibility_change(False)
        assert timer.once == {}

    async def test_tick_refreshes_and_reschedules(self, poller, timer, refresh):
        poller.start()

        assert await poller.tick() is True

        refresh.assert_awaited_once()
        assert poller.refresh_count == 1
        assert poller.last_refresh_at is not None
        assert timer.delay_of(POLL_JOB_ID) == 120

    async def test_tick_never_raises(self, poller, timer, refresh):
        refresh.side_effect = RuntimeError("backend down")
        poller.start()
        poller.on_visibility_change(False)

        assert await poller.tick() is False

        assert poller.failure_count == 1
        assert isinstance(poller.last_error, RuntimeError)
        assert timer.delay_of(POLL_JOB_ID) == 600

    async def test_tick_without_timer(self, refresh):
        poller = AdaptivePoller(refresh)
        poller.start()

        await poller.tick()

        assert poller.next_run_at is not None


@pytest.mark.unit
class TestApschedulerTimer:
    def test_schedule_once_replaces_existing_job(self):
        scheduler = MagicMock()
        timer = ApschedulerTimer(scheduler)
        callback = AsyncMock()

        timer.schedule_once("job", 5, callback)

        kwargs = scheduler.add_job.call_args.kwargs
        assert scheduler.add_job.call_args.args[0] is callback
        assert kwargs["id"] == "job"
        assert kwargs["replace_existing"] is True

    def test_schedule_interval(self):
        scheduler = MagicMock()
        timer = ApschedulerTimer(scheduler)

        timer.schedule_interval("conflicts", 60, AsyncMock())

        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["trigger"].interval.total_seconds() == 60
        assert kwargs["max_instances"] == 1

    def test_cancel_unknown_job_is_ignored(self):
        scheduler = MagicMock()
        scheduler.remove_job.side_effect = JobLookupError("job")
        timer = ApschedulerTimer(scheduler)

        timer.cancel("job")

        scheduler.remove_job.assert_called_once_with("job")

    def test_shutdown_cancels_jobs_but_not_shared_scheduler(self):
        scheduler = MagicMock()
        scheduler.running = True
        timer = ApschedulerTimer(scheduler)
        timer.schedule_once("job", 5, AsyncMock())

        timer.shutdown()

        scheduler.remove_job.assert_called_once_with("job")
        scheduler.shutdown.assert_not_called()
