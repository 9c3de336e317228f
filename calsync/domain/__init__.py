"""Domain models and DTOs."""

from calsync.domain.conflict import (
    Conflict,
    ConflictFilters,
    ConflictSeverity,
    ConflictStats,
    ConflictStatus,
    EntityType,
    FieldDiff,
    ResolutionStrategy,
)
from calsync.domain.date_range import DateRange
from calsync.domain.mutation import MutationKind, MutationState, PendingMutation
from calsync.domain.sync_status import QueueDetails, RemoteQueueStatus, SyncState, SyncStatus
from calsync.domain.task import (
    ClientSnapshot,
    MemberSnapshot,
    ProjectSnapshot,
    Task,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskUpdate,
    WorkPeriod,
)


__all__ = [
    "ClientSnapshot",
    "Conflict",
    "ConflictFilters",
    "ConflictSeverity",
    "ConflictStats",
    "ConflictStatus",
    "DateRange",
    "EntityType",
    "FieldDiff",
    "MemberSnapshot",
    "MutationKind",
    "MutationState",
    "PendingMutation",
    "ProjectSnapshot",
    "QueueDetails",
    "RemoteQueueStatus",
    "ResolutionStrategy",
    "SyncState",
    "SyncStatus",
    "Task",
    "TaskCreate",
    "TaskStatus",
    "TaskType",
    "TaskUpdate",
    "WorkPeriod",
]
