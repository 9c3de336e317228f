"""Sync status snapshot and remote queue telemetry models."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from calsync.domain.task import WIRE_CONFIG


class SyncState(StrEnum):
    """Coarse user-facing sync state."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    CONFLICT = "conflict"
    OFFLINE = "offline"


class QueueItem(BaseModel):
    """One item waiting in the remote sync queue."""

    model_config = WIRE_CONFIG

    id: str
    type: str
    entity_type: str
    attempts: int = 0
    created_at: datetime | None = None
    last_attempt: datetime | None = None
    error: str | None = None


class QueueDetails(BaseModel):
    """Remote sync queue details."""

    model_config = WIRE_CONFIG

    processing: bool = False
    avg_processing_time: float = 0.0
    processed: int = 0
    items_in_queue: list[QueueItem] = Field(default_factory=list)


class RemoteQueueStatus(BaseModel):
    """Optional server-side sync queue telemetry."""

    model_config = WIRE_CONFIG

    status: SyncState | None = None
    pending: int = 0
    failed: int = 0
    conflicts: int = 0
    last_sync: datetime | None = None
    next_retry: datetime | None = None
    queue_details: QueueDetails | None = None


class SyncStatus(BaseModel):
    """Derived, non-persisted sync summary shown to the user."""

    state: SyncState = SyncState.IDLE
    pending: int = 0
    failed: int = 0
    conflicts: int = 0
    background_fetch: bool = False
    last_sync: datetime | None = None
    next_sync: datetime | None = None
    queue_details: QueueDetails | None = None

    @property
    def has_issues(self) -> bool:
        return self.failed > 0 or self.conflicts > 0
