"""RemoteStore Protocol defining the operations the sync layer consumes."""

from typing import Any, Protocol

from calsync.domain.conflict import Conflict, ConflictFilters, ConflictStats, ResolutionStrategy
from calsync.domain.sync_status import RemoteQueueStatus
from calsync.domain.task import Task, TaskCreate


class RemoteStore(Protocol):
    """Protocol for the slow, eventually consistent backend holding the durable task copy.

    Every operation is a suspension point. Implementations raise
    RemoteStoreError (or let transport exceptions propagate) on failure.
    """

    async def fetch_tasks_in_range(self, start_date: str, end_date: str) -> list[Task]:
        """Return tasks whose work period intersects the range (dates as YYYY-MM-DD)."""
        ...

    async def create_task(self, payload: TaskCreate) -> Task:
        """Create a task and return it with its server-assigned ID."""
        ...

    async def update_task(self, task_id: str, diff: dict[str, Any]) -> Task | None:
        """Apply a partial update of changed top-level fields; may echo the stored task."""
        ...

    async def delete_task(self, task_id: str) -> None:
        """Delete a task."""
        ...

    async def list_conflicts(self, filters: ConflictFilters | None = None) -> list[Conflict]:
        """List conflicts matching the filters."""
        ...

    async def get_conflict_stats(self) -> ConflictStats:
        """Return conflict counts."""
        ...

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        merged_payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        """Resolve one conflict."""
        ...

    async def batch_resolve_conflicts(
        self,
        conflict_ids: list[str],
        strategy: ResolutionStrategy,
        reason: str | None = None,
    ) -> int:
        """Resolve several conflicts with one strategy and return how many were resolved."""
        ...

    async def get_sync_queue_status(self) -> RemoteQueueStatus | None:
        """Return server queue telemetry, or None when unavailable."""
        ...
