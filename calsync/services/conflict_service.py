"""Conflict service for divergences detected by the remote store."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from calsync.core.errors import ConflictResolutionError
from calsync.core.events import Listeners
from calsync.core.logging import span
from calsync.core.remote import RemoteStore
from calsync.domain.conflict import (
    SEVERITY_RANK,
    Conflict,
    ConflictFilters,
    ConflictStats,
    ConflictStatus,
    EntityType,
    FieldDiff,
    ResolutionStrategy,
)
from calsync.domain.task import Task
from calsync.services.task_cache import TaskCache


logger = logging.getLogger(__name__)

# Bookkeeping fields that differ on every sync and never make a conflict
_IGNORED_FIELDS = {"updatedAt", "syncedAt", "updated_at", "synced_at"}


def field_diffs(conflict: Conflict) -> list[FieldDiff]:
    """List the fields that differ between the local and remote snapshots.

    A snapshot that is missing (entity deleted on that side) makes every field
    of the other side a difference.

    Args:
        conflict: Conflict to inspect

    Returns:
        Differences sorted by field name
    """
    local = conflict.local_data or {}
    remote = conflict.remote_data or {}
    diffs = []
    for name in sorted(set(local) | set(remote)):
        if name in _IGNORED_FIELDS:
            continue
        if local.get(name) != remote.get(name):
            diffs.append(FieldDiff(field_name=name, local_value=local.get(name), remote_value=remote.get(name)))
    return diffs


def sort_by_severity(conflicts: list[Conflict]) -> list[Conflict]:
    """Order conflicts for display: most severe first, then oldest first."""
    return sorted(conflicts, key=lambda c: (SEVERITY_RANK[c.severity], c.detected_at))


class ConflictService:
    """Tracks open conflicts and applies resolutions.

    Conflicts are never created client-side; they are polled from the remote
    store. A resolved conflict ID is remembered and never re-enters the open
    set, even if a stale listing still reports it as pending.
    """

    def __init__(self, remote: RemoteStore, cache: TaskCache) -> None:
        self._remote = remote
        self._cache = cache
        self._open: dict[str, Conflict] = {}
        self._resolved_ids: set[str] = set()
        self.last_error: Exception | None = None
        self.last_checked: datetime | None = None
        self._listeners: Listeners[[]] = Listeners("conflicts")

    @property
    def open_conflicts(self) -> list[Conflict]:
        return sort_by_severity(list(self._open.values()))

    @property
    def open_count(self) -> int:
        return len(self._open)

    def get(self, conflict_id: str) -> Conflict | None:
        return self._open.get(conflict_id)

    def is_resolved(self, conflict_id: str) -> bool:
        return conflict_id in self._resolved_ids

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback for open-set changes."""
        return self._listeners.add(callback)

    async def list_conflicts(self, filters: ConflictFilters | None = None) -> list[Conflict]:
        """List conflicts from the remote store.

        Conflicts resolved through this service are reported as resolved even
        if the listing lags behind.
        """
        with span("conflicts.list"):
            conflicts = await self._remote.list_conflicts(filters)
        return [
            c.model_copy(update={"status": ConflictStatus.RESOLVED})
            if c.id in self._resolved_ids and c.is_open
            else c
            for c in conflicts
        ]

    async def get_stats(self) -> ConflictStats:
        """Get conflict counts by status, severity and entity type."""
        return await self._remote.get_conflict_stats()

    async def refresh(self) -> int:
        """Poll open conflicts and replace the open set.

        Failures are logged and leave the current open set untouched.

        Returns:
            Number of open conflicts
        """
        try:
            conflicts = await self.list_conflicts(ConflictFilters(status=ConflictStatus.PENDING))
        except Exception as e:
            self.last_error = e
            logger.warning("Failed to poll conflicts: %s", e)
            return self.open_count

        self._replace_open(conflicts)
        self.last_error = None
        self.last_checked = datetime.now(UTC)
        return self.open_count

    def _replace_open(self, conflicts: list[Conflict]) -> None:
        fresh = {c.id: c for c in conflicts if c.is_open and c.id not in self._resolved_ids}
        changed = fresh.keys() != self._open.keys()
        self._open = fresh
        if changed:
            logger.info("Open conflicts: %d", len(fresh))
        self._listeners.emit()

    async def resolve(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        merged_payload: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> Conflict | None:
        """Resolve a conflict with the given strategy.

        - local_wins: the remote store pushes the local snapshot and drops its own
        - remote_wins: the remote snapshot is accepted into the task cache
        - merged: the caller's field-level merge is applied on both sides

        Args:
            conflict_id: Detection ID
            strategy: Resolution strategy
            merged_payload: Required for the merged strategy
            reason: Free-text reason recorded with the resolution

        Returns:
            The resolved conflict if it was in the open set, else None

        Raises:
            ConflictResolutionError: If the conflict is already resolved or the
                merged payload is missing
            Exception: Whatever the remote store raised; the conflict stays open
        """
        if conflict_id in self._resolved_ids:
            msg = f"Conflict {conflict_id} is already resolved"
            raise ConflictResolutionError(msg)
        if strategy == ResolutionStrategy.MERGED and not merged_payload:
            msg = "A merged resolution requires a merged payload"
            raise ConflictResolutionError(msg)

        with span("conflicts.resolve", conflict_id=conflict_id, strategy=strategy.value):
            await self._remote.resolve_conflict(conflict_id, strategy, merged_payload, reason)

        conflict = self._open.pop(conflict_id, None)
        self._resolved_ids.add(conflict_id)
        logger.info("Resolved conflict %s with %s", conflict_id, strategy)

        if conflict is not None:
            self._apply_to_cache(conflict, strategy, merged_payload)
            conflict = conflict.model_copy(
                update={
                    "status": ConflictStatus.RESOLVED,
                    "resolution_strategy": strategy,
                    "resolved_at": datetime.now(UTC),
                }
            )
        self._listeners.emit()
        return conflict

    async def batch_resolve(
        self,
        strategy: ResolutionStrategy,
        conflict_ids: list[str] | None = None,
        reason: str | None = None,
    ) -> int:
        """Resolve several conflicts (every open one by default) with one strategy.

        The open set is always re-listed afterwards so a partial failure on the
        server is reconciled.

        Returns:
            Number of conflicts the remote store reported as resolved

        Raises:
            ConflictResolutionError: For the merged strategy, which needs per-conflict payloads
            Exception: Whatever the remote store raised, after re-listing
        """
        if strategy == ResolutionStrategy.MERGED:
            msg = "Merged resolutions must be applied one conflict at a time"
            raise ConflictResolutionError(msg)

        ids = [cid for cid in (conflict_ids or list(self._open)) if cid not in self._resolved_ids]
        if not ids:
            return 0

        targets = {cid: self._open[cid] for cid in ids if cid in self._open}
        try:
            with span("conflicts.batch_resolve", count=len(ids), strategy=strategy.value):
                resolved = await self._remote.batch_resolve_conflicts(ids, strategy, reason)
        except Exception as e:
            logger.warning("Batch resolution failed, re-listing conflicts: %s", e)
            await self._relist_after_batch(targets, strategy)
            raise

        logger.info("Batch resolved %d/%d conflicts with %s", resolved, len(ids), strategy)
        await self._relist_after_batch(targets, strategy)
        return resolved

    async def _relist_after_batch(self, targets: dict[str, Conflict], strategy: ResolutionStrategy) -> None:
        """Mark conflicts that left the open set as resolved, keep the rest open."""
        try:
            still_open = await self._remote.list_conflicts(ConflictFilters(status=ConflictStatus.PENDING))
        except Exception as e:
            self.last_error = e
            logger.warning("Failed to re-list conflicts after batch resolution: %s", e)
            return

        open_ids = {c.id for c in still_open if c.is_open}
        for conflict_id, conflict in targets.items():
            if conflict_id not in open_ids:
                self._resolved_ids.add(conflict_id)
                self._apply_to_cache(conflict, strategy, None)
        self._replace_open(still_open)
        self.last_checked = datetime.now(UTC)

    def _apply_to_cache(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        merged_payload: dict[str, Any] | None,
    ) -> None:
        """Reflect a task resolution in the cache; local_wins keeps what is already shown."""
        if conflict.entity_type != EntityType.TASK or strategy == ResolutionStrategy.LOCAL_WINS:
            return

        if strategy == ResolutionStrategy.REMOTE_WINS and conflict.remote_data is None:
            self._cache.remove(conflict.entity_id)
            return

        if strategy == ResolutionStrategy.REMOTE_WINS:
            snapshot = dict(conflict.remote_data or {})
        else:
            # Field-level merge on top of the freshest full snapshot available
            snapshot = {**(conflict.remote_data or conflict.local_data or {}), **(merged_payload or {})}
        try:
            task = Task.model_validate({**snapshot, "id": conflict.entity_id})
        except ValidationError as e:
            logger.warning("Cannot apply %s snapshot of task %s to cache: %s", strategy, conflict.entity_id, e)
            return
        self._cache.ingest([task])
