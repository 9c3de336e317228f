"""Keyed task store that is the single source of truth for rendering."""

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import date
from typing import Any

from calsync.core.events import Listeners
from calsync.domain.task import Task, apply_diff


logger = logging.getLogger(__name__)

TaskListener = Callable[[list[Task]], None]


def merge_by_id(existing: Mapping[str, Task], incoming: Iterable[Task]) -> dict[str, Task]:
    """Merge incoming tasks into a copy of existing, last one wins per ID.

    Args:
        existing: Current tasks keyed by ID
        incoming: Fetched tasks

    Returns:
        New mapping; the inputs are left untouched
    """
    merged = dict(existing)
    for task in incoming:
        merged[task.id] = task
    return merged


class TaskCache:
    """In-memory task store with change notification.

    Besides the tasks themselves the cache tracks local write state so that
    remote data never clobbers unconfirmed edits:

    - pins: field values written locally whose mutation is not yet confirmed
      or has failed and awaits a retry; they are re-applied on top of every fetched copy of the task
    - write sequences: the latest local mutation sequence that wrote each
      field; a server echo for an older sequence does not overwrite it, and
      neither does a fetch that was sent before the write
    - tombstones: tasks deleted locally; fetched copies are dropped until a
      refresh no longer returns a confirmed delete
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._pins: dict[str, dict[str, tuple[int, Any]]] = {}
        self._write_sequences: dict[str, dict[str, int]] = {}
        self._tombstones: set[str] = set()
        self._confirmed_deletes: set[str] = set()
        self._open_fetches: list[int] = []
        self._write_clock = 0
        self._local_only: set[str] = set()
        self._listeners: Listeners[[list[Task]]] = Listeners("task cache")
        self.version = 0

    # Reads

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def snapshot(self) -> dict[str, Task]:
        return dict(self._tasks)

    def tasks_between(self, start: date, end: date) -> list[Task]:
        """Return schedulable tasks intersecting [start, end), ordered by start."""
        visible = [t for t in self._tasks.values() if t.work_period and t.work_period.overlaps(start, end)]
        return sorted(visible, key=lambda t: (t.work_period.start_date, t.id))  # type: ignore[union-attr]

    def pinned_fields(self, task_id: str) -> set[str]:
        return set(self._pins.get(task_id, {}))

    def is_tombstoned(self, task_id: str) -> bool:
        return task_id in self._tombstones

    # Subscriptions

    def subscribe(self, listener: TaskListener) -> Callable[[], None]:
        """Register a listener called with the full task list after every change.

        Returns:
            A callable that removes the listener
        """
        return self._listeners.add(listener)

    def _notify(self) -> None:
        self.version += 1
        self._listeners.emit(self.tasks)

    # Remote ingestion

    @contextmanager
    def fetching(self) -> Iterator[int]:
        """Bracket a remote fetch, yielding the write mark to pass to ingest/replace_all.

        Local writes made after the mark are kept over whatever the fetch
        returns. Their write sequences are retained until every fetch opened
        before them has closed.

        Usage:
            with cache.fetching() as mark:
                tasks = await remote.fetch_tasks_in_range(start, end)
                cache.ingest(tasks, since=mark)
        """
        mark = self._write_clock
        self._open_fetches.append(mark)
        try:
            yield mark
        finally:
            self._open_fetches.remove(mark)
            self.prune_writes()

    def _protect(self, task: Task, since: int | None) -> Task:
        current = self._tasks.get(task.id)
        if since is None or current is None:
            return task
        newer = {
            field: getattr(current, field)
            for field, written_by in self._write_sequences.get(task.id, {}).items()
            if written_by > since
        }
        return apply_diff(task, newer) if newer else task

    def _overlay(self, task: Task) -> Task:
        pins = self._pins.get(task.id)
        if not pins:
            return task
        return apply_diff(task, {field: value for field, (_, value) in pins.items()})

    def _prepare(self, incoming: Iterable[Task], since: int | None) -> list[Task]:
        return [self._overlay(self._protect(t, since)) for t in incoming if t.id not in self._tombstones]

    def ingest(self, incoming: Iterable[Task], *, since: int | None = None) -> int:
        """Merge fetched tasks by ID, keeping unconfirmed local fields.

        Args:
            incoming: Fetched tasks
            since: Write mark taken when the fetch was sent; fields written
                locally after it keep their current value

        Returns:
            Number of tasks merged
        """
        prepared = self._prepare(incoming, since)
        self._tasks = merge_by_id(self._tasks, prepared)
        self._notify()
        return len(prepared)

    def replace_all(self, fresh: Mapping[str, Task], *, since: int | None = None) -> None:
        """Atomically swap in a fully assembled task map.

        Optimistically created tasks that the server has not confirmed yet are
        carried over. Confirmed deletes the fresh map no longer contains stop
        being tombstoned.
        """
        tasks = {t.id: t for t in self._prepare(fresh.values(), since)}
        for task_id in self._local_only:
            if task_id in self._tasks:
                tasks[task_id] = self._tasks[task_id]
        gone = self._confirmed_deletes - fresh.keys()
        self._tombstones -= gone
        self._confirmed_deletes -= gone
        self._tasks = tasks
        logger.debug("Swapped in %d tasks (%d local only)", len(tasks), len(self._local_only))
        self._notify()

    def clear(self) -> None:
        self._tasks = {}
        self._local_only.clear()
        self._notify()

    # Local writes

    def put_local(self, task: Task) -> None:
        """Insert a task that exists only on this client (optimistic create)."""
        self._local_only.add(task.id)
        self._tasks[task.id] = task
        self._notify()

    def replace_id(self, old_id: str, task: Task) -> None:
        """Replace a local-only task with its server-confirmed version."""
        self._local_only.discard(old_id)
        self._tasks.pop(old_id, None)
        self._tasks[task.id] = self._overlay(task)
        self._notify()

    def apply_local(self, task_id: str, diff: dict[str, Any], sequence: int) -> Task:
        """Apply a local diff and pin its fields until the mutation settles.

        Raises:
            KeyError: If the task is not cached
        """
        task = apply_diff(self._tasks[task_id], diff)
        self._tasks[task_id] = task
        pins = self._pins.setdefault(task_id, {})
        sequences = self._write_sequences.setdefault(task_id, {})
        for field, value in diff.items():
            pins[field] = (sequence, value)
            sequences[field] = sequence
        self._write_clock = max(self._write_clock, sequence)
        self._notify()
        return task

    def apply_echo(self, task_id: str, echo: Task, sequence: int) -> Task | None:
        """Merge a server response for mutation `sequence`.

        Fields written locally by a later mutation keep their current value;
        unconfirmed pinned fields are re-applied.

        Returns:
            The merged task, or None if the task is no longer cached
        """
        current = self._tasks.get(task_id)
        if current is None or task_id in self._tombstones:
            return None

        newer = {
            field
            for field, written_by in self._write_sequences.get(task_id, {}).items()
            if written_by > sequence
        }
        accepted = {
            field: getattr(echo, field) for field in Task.model_fields if field != "id" and field not in newer
        }
        merged = self._overlay(apply_diff(current, accepted))
        self._tasks[task_id] = merged
        self._notify()
        return merged

    def release(self, task_id: str, sequence: int) -> None:
        """Drop the pins owned by a settled mutation."""
        pins = self._pins.get(task_id)
        if not pins:
            return
        for field in [f for f, (seq, _) in pins.items() if seq == sequence]:
            del pins[field]
        if not pins:
            del self._pins[task_id]

    def prune_writes(self) -> None:
        """Drop write sequences no pin and no open fetch still depends on."""
        oldest = min(self._open_fetches, default=None)
        for task_id in list(self._write_sequences):
            if task_id in self._pins:
                continue
            sequences = self._write_sequences[task_id]
            if oldest is not None:
                sequences = {field: seq for field, seq in sequences.items() if seq > oldest}
            if sequences:
                self._write_sequences[task_id] = sequences
            else:
                del self._write_sequences[task_id]

    def write_sequences(self, task_id: str) -> dict[str, int]:
        return dict(self._write_sequences.get(task_id, {}))

    def remove(self, task_id: str, *, tombstone: bool = False) -> Task | None:
        """Remove a task; with tombstone=True fetched copies are ignored until cleared."""
        self._local_only.discard(task_id)
        removed = self._tasks.pop(task_id, None)
        if tombstone:
            self._tombstones.add(task_id)
        self._notify()
        return removed

    def confirm_delete(self, task_id: str) -> None:
        """Mark a tombstoned task as deleted remotely so a later refresh can retire it."""
        if task_id in self._tombstones:
            self._confirmed_deletes.add(task_id)

    def clear_tombstone(self, task_id: str) -> None:
        self._tombstones.discard(task_id)
        self._confirmed_deletes.discard(task_id)
