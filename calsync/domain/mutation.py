"""Pending mutation records tracked by the optimistic mutation engine."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class MutationKind(StrEnum):
    """Type of write being submitted."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(StrEnum):
    """Mutation lifecycle state."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PendingMutation(BaseModel):
    """An optimistic edit and its submission state."""

    task_id: str
    kind: MutationKind
    diff: dict[str, Any] = Field(default_factory=dict, description="Changed top-level fields only")
    sequence: int = Field(..., description="Monotonically increasing submission number")
    state: MutationState = MutationState.QUEUED
    error: str | None = None
    submitted_at: datetime | None = None
    settled_at: datetime | None = None

    @property
    def is_settled(self) -> bool:
        return self.state in (MutationState.CONFIRMED, MutationState.FAILED)
