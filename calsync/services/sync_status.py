"""Sync status aggregator deriving the single user-facing sync state."""

import logging
from collections.abc import Callable
from datetime import datetime

from calsync.core.events import Listeners
from calsync.core.remote import RemoteStore
from calsync.domain.sync_status import RemoteQueueStatus, SyncState, SyncStatus
from calsync.services.conflict_service import ConflictService
from calsync.services.mutation_engine import MutationEngine
from calsync.services.progressive_loader import ProgressiveLoader


logger = logging.getLogger(__name__)


def derive_state(
    *,
    online: bool,
    open_conflicts: int,
    failed_mutations: int,
    pending_mutations: int,
    background_fetch: bool,
) -> SyncState:
    """Derive the coarse sync state.

    Priority: offline > conflict > error > syncing > idle.
    """
    if not online:
        return SyncState.OFFLINE
    if open_conflicts > 0:
        return SyncState.CONFLICT
    if failed_mutations > 0:
        return SyncState.ERROR
    if pending_mutations > 0 or background_fetch:
        return SyncState.SYNCING
    return SyncState.IDLE


class SyncStatusAggregator:
    """Recomputes the sync status whenever one of its inputs changes.

    Inputs are the mutation engine counters, the loader's background activity,
    the conflict service's open set, connectivity, and, when available, the
    remote queue telemetry. Remote counters are added to the local ones; the
    remote conflict count is used when it is higher than the local open set.
    """

    def __init__(
        self,
        *,
        engine: MutationEngine,
        loader: ProgressiveLoader,
        conflicts: ConflictService,
        remote: RemoteStore | None = None,
        next_sync: Callable[[], datetime | None] | None = None,
    ) -> None:
        self._engine = engine
        self._loader = loader
        self._conflicts = conflicts
        self._remote = remote
        self._next_sync = next_sync
        self._online = True
        self._remote_status: RemoteQueueStatus | None = None
        self._listeners: Listeners[[SyncStatus]] = Listeners("sync status")

        self._status = self._compute()
        self._unsubscribers = [
            engine.on_activity(self.recompute),
            loader.on_activity(self.recompute),
            conflicts.subscribe(self.recompute),
        ]

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_read_only(self) -> bool:
        return not self._online

    def subscribe(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        """Register a callback invoked with the new status whenever it changes."""
        return self._listeners.add(callback)

    def set_online(self, online: bool) -> None:
        """Record network reachability; offline forces read-only mode."""
        if online == self._online:
            return
        self._online = online
        self._engine.read_only = not online
        if online:
            logger.info("Connection restored")
        else:
            logger.warning("Client is offline, switching to read-only mode")
        self.recompute()

    async def refresh_remote(self) -> SyncStatus:
        """Fetch the remote queue telemetry and merge it; local counters are the fallback."""
        if self._remote is None:
            return self._status
        try:
            self._remote_status = await self._remote.get_sync_queue_status()
        except Exception as e:
            logger.debug("Remote sync queue status unavailable: %s", e)
            self._remote_status = None
        self.recompute()
        return self._status

    def _compute(self) -> SyncStatus:
        remote = self._remote_status
        pending = self._engine.pending_count + (remote.pending if remote else 0)
        failed = self._engine.failed_count + (remote.failed if remote else 0)
        conflicts = max(self._conflicts.open_count, remote.conflicts if remote else 0)
        background_fetch = self._loader.is_loading_background

        last_sync = self._loader.last_sync
        if remote and remote.last_sync and (last_sync is None or remote.last_sync > last_sync):
            last_sync = remote.last_sync

        return SyncStatus(
            state=derive_state(
                online=self._online,
                open_conflicts=conflicts,
                failed_mutations=failed,
                pending_mutations=pending,
                background_fetch=background_fetch,
            ),
            pending=pending,
            failed=failed,
            conflicts=conflicts,
            background_fetch=background_fetch,
            last_sync=last_sync,
            next_sync=self._next_sync() if self._next_sync else None,
            queue_details=remote.queue_details if remote else None,
        )

    def recompute(self) -> SyncStatus:
        """Recompute the status and notify listeners if it changed."""
        status = self._compute()
        if status != self._status:
            self._status = status
            self._listeners.emit(status)
        return self._status

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
