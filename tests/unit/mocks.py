"""In-memory remote store for unit testing."""

import asyncio
import itertools
from collections import defaultdict, deque
from datetime import UTC, date, datetime, timedelta
from typing import Any

from calsync.core.errors import RemoteStoreError
from calsync.domain.conflict import (
    Conflict,
    ConflictFilters,
    ConflictStats,
    ConflictStatus,
    EntityType,
    ResolutionStrategy,
)
from calsync.domain.sync_status import RemoteQueueStatus
from calsync.domain.task import Task, TaskCreate, WorkPeriod


def make_task(
    task_id: str,
    *,
    title: str | None = None,
    start: date | datetime = date(2024, 3, 1),
    days: float = 1,
    **fields: Any,
) -> Task:
    """Build a task whose work period starts at `start` and lasts `days` days."""
    if not isinstance(start, datetime):
        start = datetime(start.year, start.month, start.day, 9, tzinfo=UTC)
    period = WorkPeriod(start_date=start, end_date=start + timedelta(days=days))
    return Task(id=task_id, title=title or f"Task {task_id}", work_period=period, **fields)


def make_conflict(
    conflict_id: str,
    entity_id: str,
    *,
    local_data: dict[str, Any] | None = None,
    remote_data: dict[str, Any] | None = None,
    **fields: Any,
) -> Conflict:
    """Build a pending task conflict."""
    return Conflict(
        id=conflict_id,
        entity_type=fields.pop("entity_type", EntityType.TASK),
        entity_id=entity_id,
        local_data=local_data,
        remote_data=remote_data,
        detected_at=fields.pop("detected_at", datetime(2024, 3, 1, tzinfo=UTC)),
        **fields,
    )


class FakeRemoteStore:
    """Pure Python in-memory remote store for unit testing.

    Tests can hold the next call of an operation in flight with hold() and
    release it later by setting the returned event, in any order. Failures
    are injected per operation with fail_next(). Responses are snapshots taken
    when the call arrives, like a server answering from the state it had
    when it handled the request.
    """

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self.tasks: dict[str, Task] = {t.id: t for t in tasks or []}
        self.conflicts: dict[str, Conflict] = {}
        self.queue_status: RemoteQueueStatus | None = None
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.echo_updates = True
        # Conflict IDs the server refuses to resolve in a batch
        self.unresolvable: set[str] = set()

        self._gates: dict[str, deque[asyncio.Event]] = defaultdict(deque)
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)
        self._ids = itertools.count(1)

    # Test controls

    def hold(self, operation: str) -> asyncio.Event:
        """Hold the next call of `operation` until the returned event is set."""
        gate = asyncio.Event()
        self._gates[operation].append(gate)
        return gate

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        """Make the next call of `operation` raise."""
        self._failures[operation].append(error or RemoteStoreError(f"{operation} failed", status_code=500))

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    async def _enter(self, operation: str, *args: Any) -> tuple[asyncio.Event | None, Exception | None]:
        self.calls.append((operation, args))
        gate = self._gates[operation].popleft() if self._gates[operation] else None
        failure = self._failures[operation].popleft() if self._failures[operation] else None
        return gate, failure

    @staticmethod
    async def _leave(gate: asyncio.Event | None, failure: Exception | None) -> None:
        if gate is not None:
            await gate.wait()
        if failure is not None:
            raise failure

    # Tasks

    async def fetch_tasks_in_range(self, start_date: str, end_date: str) -> list[Task]:
        gate, failure = await self._enter("fetch_tasks_in_range", start_date, end_date)
        start, end = date.fromisoformat(start_date), date.fromisoformat(end_date)
        snapshot = [
            t.model_copy(deep=True)
            for t in self.tasks.values()
            if t.work_period is not None and t.work_period.overlaps(start, end)
        ]
        await self._leave(gate, failure)
        return snapshot

    async def create_task(self, payload: TaskCreate) -> Task:
        gate, failure = await self._enter("create_task", payload)
        created = None
        if failure is None:
            created = Task(id=f"task-{next(self._ids)}", **payload.model_dump())
            self.tasks[created.id] = created
        await self._leave(gate, failure)
        return created.model_copy(deep=True)  # type: ignore[union-attr]

    async def update_task(self, task_id: str, diff: dict[str, Any]) -> Task | None:
        gate, failure = await self._enter("update_task", task_id, dict(diff))
        echo = None
        if failure is None:
            if task_id not in self.tasks:
                failure = RemoteStoreError(f"Task {task_id} not found", status_code=404)
            else:
                self.tasks[task_id] = self.tasks[task_id].model_copy(update=diff)
                echo = self.tasks[task_id].model_copy(deep=True)
        await self._leave(gate, failure)
        return echo if self.echo_updates else None

    async def delete_task(self, task_id: str) -> None:
        gate, failure = await self._enter("delete_task", task_id)
        if failure is None:
            self.tasks.pop(task_id, None)
        await self._leave(gate, failure)

    # Conflicts

    async def list_conflicts(self, filters: ConflictFilters | None = None) -> list[Conflict]:
        gate, failure = await self._enter("list_conflicts", filters)
        conflicts = [
            c.model_copy(deep=True)
            for c in self.conflicts.values()
            if filters is None or filters.status is None or c.status == filters.status
        ]
        await self._leave(gate, failure)
        return conflicts

    async def get_conflict_stats(self) -> ConflictStats:
        gate, failure = await self._enter("get_conflict_stats")
        by_status: dict[str, int] = defaultdict(int)
        by_severity: dict[str, int] = defaultdict(int)
        by_entity_type: dict[str, int] = defaultdict(int)
        for conflict in self.conflicts.values():
            by_status[conflict.status.value] += 1
            by_severity[conflict.severity.value] += 1
            by_entity_type[conflict.entity_type.value] += 1
        await self._leave(gate, failure)
        return ConflictStats(
            total=len(self.conflicts),
            by_status=dict(by_status),
            by_severity=dict(by_severity),
            by_entity_type=dict(by_entity_type),
        )

    def _mark_resolved(self, conflict_id: str, strategy: ResolutionStrategy) -> None:
        self.conflicts[conflict_id] = self.conflicts[conflict_id].model_copy(
            update={"status": ConflictStatus.RESOLVED, "resolution_strategy": strategy}
        )

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        merged_payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        gate, failure = await self._enter("resolve_conflict", conflict_id, strategy, merged_payload, reason)
        if failure is None and conflict_id in self.conflicts:
            self._mark_resolved(conflict_id, strategy)
        await self._leave(gate, failure)

    async def batch_resolve_conflicts(
        self,
        conflict_ids: list[str],
        strategy: ResolutionStrategy,
        reason: str | None = None,
    ) -> int:
        gate, failure = await self._enter("batch_resolve_conflicts", list(conflict_ids), strategy, reason)
        resolved = 0
        if failure is None:
            for conflict_id in conflict_ids:
                if conflict_id in self.conflicts and conflict_id not in self.unresolvable:
                    self._mark_resolved(conflict_id, strategy)
                    resolved += 1
        await self._leave(gate, failure)
        return resolved

    async def get_sync_queue_status(self) -> RemoteQueueStatus | None:
        gate, failure = await self._enter("get_sync_queue_status")
        await self._leave(gate, failure)
        return self.queue_status


class FakeTimer:
    """Timer that records scheduled jobs instead of running them."""

    def __init__(self) -> None:
        self.once: dict[str, tuple[float, Any]] = {}
        self.intervals: dict[str, tuple[float, Any]] = {}
        self.started = False
        self.shut_down = False

    def start(self) -> None:
        self.started = True

    def schedule_once(self, job_id: str, delay_seconds: float, callback: Any) -> datetime:
        self.once[job_id] = (delay_seconds, callback)
        return datetime.now(UTC) + timedelta(seconds=delay_seconds)

    def schedule_interval(self, job_id: str, seconds: float, callback: Any) -> None:
        self.intervals[job_id] = (seconds, callback)

    def cancel(self, job_id: str) -> None:
        self.once.pop(job_id, None)
        self.intervals.pop(job_id, None)

    def shutdown(self) -> None:
        self.once.clear()
        self.intervals.clear()
        self.shut_down = True

    def delay_of(self, job_id: str) -> float | None:
        entry = self.once.get(job_id)
        return entry[0] if entry else None
