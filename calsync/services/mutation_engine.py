"""Optimistic mutation engine: apply edits locally now, confirm with the remote store later."""

import asyncio
import itertools
import logging
import secrets
import time
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, TypeVar

from calsync.core.config import Constants
from calsync.core.errors import OfflineError, TaskNotFoundError, TaskValidationError
from calsync.core.events import Listeners
from calsync.core.logging import log_with_context, span
from calsync.core.remote import RemoteStore
from calsync.domain.mutation import MutationKind, MutationState, PendingMutation
from calsync.domain.task import Task, TaskCreate, TaskUpdate, compute_diff, parse_create, parse_update
from calsync.services.task_cache import TaskCache


logger = logging.getLogger(__name__)

T = TypeVar("T")

RefreshCallback = Callable[[], Awaitable[object]]


def make_temp_id() -> str:
    """Generate a temporary ID for a task the server has not created yet."""
    return f"{Constants.TEMP_ID_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class MutationEngine:
    """Applies local edits to the task cache synchronously and submits minimal diffs.

    Every entry point returns an asyncio.Task for the background submission.
    Awaiting it re-raises the remote error; not awaiting it is fine, failures
    are still recorded and reported to error listeners.

    On failure the optimistic local state is kept, not rolled back. Only an
    optimistic create is undone, since its temporary ID can never be
    reconciled with the server.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: TaskCache,
        *,
        refresh: RefreshCallback | None = None,
        refresh_after_mutation: bool = True,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._refresh = refresh
        self.refresh_after_mutation = refresh_after_mutation
        self.read_only = False

        self._sequence = itertools.count(1)
        self._history: dict[str, deque[PendingMutation]] = {}
        self._outstanding: dict[int, PendingMutation] = {}
        self._failed: list[PendingMutation] = []
        self._background: set[asyncio.Task[Any]] = set()

        self.last_error: Exception | None = None

        self._activity_listeners: Listeners[[]] = Listeners("mutation activity")
        self._error_listeners: Listeners[[Exception, PendingMutation]] = Listeners("mutation error")

    # Counters

    @property
    def pending_count(self) -> int:
        return len(self._outstanding)

    @property
    def failed_count(self) -> int:
        return len(self._failed)

    @property
    def failed_mutations(self) -> list[PendingMutation]:
        return list(self._failed)

    def mutations(self, task_id: str) -> list[PendingMutation]:
        """Return the recent mutations for a task, oldest first."""
        return list(self._history.get(task_id, ()))

    def latest_mutation(self, task_id: str) -> PendingMutation | None:
        """Return the authoritative (most recent) mutation for a task."""
        history = self._history.get(task_id)
        return history[-1] if history else None

    def is_superseded(self, mutation: PendingMutation) -> bool:
        latest = self.latest_mutation(mutation.task_id)
        return latest is not None and latest.sequence > mutation.sequence

    def on_activity(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback for pending/failed counter changes."""
        return self._activity_listeners.add(callback)

    def on_error(self, callback: Callable[[Exception, PendingMutation], None]) -> Callable[[], None]:
        """Register a callback for failed submissions."""
        return self._error_listeners.add(callback)

    def clear_failures(self) -> None:
        """Forget recorded failures (after the user acknowledged them).

        Their pinned fields are released, so the next fetch shows the server values.
        """
        for failed in self._failed:
            self._cache.release(failed.task_id, failed.sequence)
        self._failed.clear()
        self._cache.prune_writes()
        self._activity_listeners.emit()

    # Entry points

    def mutate(self, task_id: str, diff: dict[str, Any] | TaskUpdate) -> asyncio.Task[Task | None]:
        """Apply a diff to the cached task immediately and submit it in the background.

        Only fields whose value actually changes are applied and sent. The
        comparison is against the current local state, which already includes
        edits still in flight, not against the last server-confirmed copy; a
        field set back to its confirmed value is therefore still sent so it
        overrides the earlier unconfirmed write. Nested objects such as the
        work period are replaced wholesale.

        Args:
            task_id: ID of a cached task
            diff: Changed top-level fields

        Returns:
            Background submission resolving to the reconciled task

        Raises:
            OfflineError: If the client is read-only
            TaskValidationError: If the diff is invalid
            TaskNotFoundError: If the task is not cached
        """
        self._ensure_writable()
        update = parse_update(diff)
        current = self._require_task(task_id)
        if current.pending_sync:
            msg = f"Task {task_id} is still being created"
            raise TaskValidationError(msg)

        changes = compute_diff(current, update.changes())
        if not changes:
            logger.debug("No changes for task %s, nothing to submit", task_id)
            return self._spawn(self._noop(current))

        mutation = self._register(task_id, MutationKind.UPDATE, changes)
        self._cache.apply_local(task_id, changes, mutation.sequence)
        return self._spawn(self._submit_update(mutation))

    def delete_optimistic(self, task_id: str) -> asyncio.Task[None]:
        """Remove a task from the cache immediately and delete it remotely.

        A failed delete does not put the task back; a refresh reconciles it.

        Raises:
            OfflineError: If the client is read-only
            TaskNotFoundError: If the task is not cached
            TaskValidationError: If the task is still being created
        """
        self._ensure_writable()
        current = self._require_task(task_id)
        if current.pending_sync:
            msg = f"Task {task_id} is still being created"
            raise TaskValidationError(msg)

        mutation = self._register(task_id, MutationKind.DELETE, {})
        self._cache.remove(task_id, tombstone=True)
        return self._spawn(self._submit_delete(mutation))

    def create_optimistic(self, payload: dict[str, Any] | TaskCreate) -> tuple[Task, asyncio.Task[Task]]:
        """Show a new task immediately under a temporary ID and create it remotely.

        Returns:
            The temporary task and the background submission resolving to the
            server-confirmed task

        Raises:
            OfflineError: If the client is read-only
            TaskValidationError: If the payload is invalid
        """
        self._ensure_writable()
        create = parse_create(payload)
        temp_id = make_temp_id()
        temp_task = Task(
            id=temp_id,
            pending_sync=True,
            optimistic_id=temp_id,
            **{name: getattr(create, name) for name in TaskCreate.model_fields},
        )

        mutation = self._register(temp_id, MutationKind.CREATE, create.model_dump())
        self._cache.put_local(temp_task)
        return temp_task, self._spawn(self._submit_create(mutation, create))

    def retry_failed(self) -> list[asyncio.Task[Task | None]]:
        """Resubmit failed updates whose task is still cached, using current local values."""
        self._ensure_writable()
        retries = []
        remaining = []
        for failed in self._failed:
            current = self._cache.get(failed.task_id)
            if failed.kind != MutationKind.UPDATE or current is None:
                remaining.append(failed)
                continue
            changes = {field: getattr(current, field) for field in failed.diff}
            mutation = self._register(failed.task_id, MutationKind.UPDATE, changes)
            self._cache.apply_local(failed.task_id, changes, mutation.sequence)
            retries.append(self._spawn(self._submit_update(mutation)))
        self._failed = remaining
        logger.info("Retrying %d failed mutations", len(retries))
        self._activity_listeners.emit()
        return retries

    async def drain(self) -> None:
        """Wait until every background submission and follow-up refresh has settled."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Internals

    def _ensure_writable(self) -> None:
        if self.read_only:
            msg = "Client is offline; changes are disabled"
            raise OfflineError(msg)

    def _require_task(self, task_id: str) -> Task:
        current = self._cache.get(task_id)
        if current is None:
            msg = f"Task {task_id} not found in cache"
            raise TaskNotFoundError(msg)
        return current

    def _register(self, task_id: str, kind: MutationKind, diff: dict[str, Any]) -> PendingMutation:
        mutation = PendingMutation(task_id=task_id, kind=kind, diff=diff, sequence=next(self._sequence))
        history = self._history.setdefault(task_id, deque(maxlen=Constants.MUTATION_HISTORY_MAXLEN))
        history.append(mutation)
        self._outstanding[mutation.sequence] = mutation
        self._activity_listeners.emit()
        return mutation

    def _spawn(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        # Failures are already recorded; retrieving the exception keeps asyncio quiet
        if not task.cancelled():
            task.exception()

    async def _noop(self, current: Task) -> Task:
        return current

    def _start(self, mutation: PendingMutation) -> None:
        mutation.state = MutationState.IN_FLIGHT
        mutation.submitted_at = datetime.now(UTC)
        self._activity_listeners.emit()

    def _settle(self, mutation: PendingMutation) -> None:
        mutation.settled_at = datetime.now(UTC)
        self._outstanding.pop(mutation.sequence, None)
        self._cache.prune_writes()

    def _fail(self, mutation: PendingMutation, error: Exception) -> None:
        mutation.state = MutationState.FAILED
        mutation.error = str(error)
        # Pins of a failed update stay until it is retried or the failure is cleared
        self._settle(mutation)
        self._failed.append(mutation)
        self.last_error = error
        log_with_context(
            logger,
            "warning",
            f"{mutation.kind} of task {mutation.task_id} failed: {error}",
            task_id=mutation.task_id,
            sequence=mutation.sequence,
        )
        self._activity_listeners.emit()
        self._error_listeners.emit(error, mutation)

    def _confirm(self, mutation: PendingMutation) -> None:
        mutation.state = MutationState.CONFIRMED
        self._settle(mutation)
        log_with_context(
            logger,
            "info",
            f"{mutation.kind} of task {mutation.task_id} confirmed",
            task_id=mutation.task_id,
            sequence=mutation.sequence,
        )
        self._activity_listeners.emit()
        if self.refresh_after_mutation and self._refresh is not None:
            self._spawn(self._run_refresh())

    async def _run_refresh(self) -> None:
        try:
            await self._refresh()  # type: ignore[misc]
        except Exception:
            logger.exception("Refresh after mutation failed")

    async def _submit_update(self, mutation: PendingMutation) -> Task | None:
        self._start(mutation)
        try:
            with span("mutation.update", task_id=mutation.task_id, sequence=mutation.sequence):
                echo = await self._remote.update_task(mutation.task_id, mutation.diff)
        except Exception as e:
            self._fail(mutation, e)
            raise

        self._cache.release(mutation.task_id, mutation.sequence)
        if echo is not None:
            self._cache.apply_echo(mutation.task_id, echo, mutation.sequence)
        self._confirm(mutation)
        return self._cache.get(mutation.task_id)

    async def _submit_delete(self, mutation: PendingMutation) -> None:
        self._start(mutation)
        try:
            with span("mutation.delete", task_id=mutation.task_id, sequence=mutation.sequence):
                await self._remote.delete_task(mutation.task_id)
        except Exception as e:
            self._cache.clear_tombstone(mutation.task_id)
            self._fail(mutation, e)
            raise
        self._cache.confirm_delete(mutation.task_id)
        self._confirm(mutation)

    async def _submit_create(self, mutation: PendingMutation, create: TaskCreate) -> Task:
        self._start(mutation)
        try:
            with span("mutation.create", task_id=mutation.task_id, sequence=mutation.sequence):
                created = await self._remote.create_task(create)
        except Exception as e:
            self._cache.remove(mutation.task_id)
            self._fail(mutation, e)
            raise

        self._cache.replace_id(mutation.task_id, created)
        self._confirm(mutation)
        return created
