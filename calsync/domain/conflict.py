"""Conflict domain models for divergences detected by the remote store."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from calsync.domain.task import WIRE_CONFIG


class ConflictSeverity(StrEnum):
    """How serious a divergence is. Drives UI emphasis only."""

    LOW = "low"  # A single inconsequential field differs
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"  # Deleted on one side while mutated on the other


SEVERITY_RANK: dict[ConflictSeverity, int] = {
    ConflictSeverity.CRITICAL: 0,
    ConflictSeverity.HIGH: 1,
    ConflictSeverity.MEDIUM: 2,
    ConflictSeverity.LOW: 3,
}


class ConflictStatus(StrEnum):
    """Resolution state of a conflict."""

    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class ResolutionStrategy(StrEnum):
    """Which side wins when a conflict is resolved."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGED = "merged"


class EntityType(StrEnum):
    """Kind of entity a conflict refers to."""

    TASK = "Task"
    PROJECT = "Project"
    MEMBER = "Member"
    CLIENT = "Client"
    TEAM = "Team"


class Conflict(BaseModel):
    """A detected divergence between local and remote state for one entity."""

    model_config = WIRE_CONFIG

    id: str = Field(..., description="Detection ID; a new divergence always gets a new ID")
    entity_type: EntityType
    entity_id: str
    status: ConflictStatus = ConflictStatus.PENDING
    severity: ConflictSeverity = ConflictSeverity.LOW
    local_data: dict[str, Any] | None = Field(default=None, description="Local snapshot, None if deleted locally")
    remote_data: dict[str, Any] | None = Field(
        default=None,
        alias="notionData",
        description="Remote snapshot, None if deleted remotely",
    )
    detected_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_strategy: ResolutionStrategy | None = None

    @property
    def is_open(self) -> bool:
        return self.status == ConflictStatus.PENDING


class FieldDiff(BaseModel):
    """One field that differs between the local and remote snapshots."""

    field_name: str
    local_value: Any = None
    remote_value: Any = None


class ConflictFilters(BaseModel):
    """Query filters for listing conflicts."""

    model_config = WIRE_CONFIG

    page: int | None = None
    limit: int | None = None
    status: ConflictStatus | None = None
    severity: ConflictSeverity | None = None
    entity_type: EntityType | None = None


class ConflictStats(BaseModel):
    """Conflict counts grouped by status, severity, and entity type."""

    model_config = WIRE_CONFIG

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_entity_type: dict[str, int] = Field(default_factory=dict)
