"""Task domain models, enums, and validated write payloads."""

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from calsync.core.config import Constants
from calsync.core.errors import TaskValidationError


# Wire payloads are camelCase; Python code uses field names.
WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TaskStatus(StrEnum):
    """Task progress state."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskType(StrEnum):
    """Kind of calendar entry."""

    TASK = "task"
    HOLIDAY = "holiday"
    REMOTE = "remote"
    SCHOOL = "school"


class WorkPeriod(BaseModel):
    """Scheduled time span of a task. Replaced wholesale on update, never deep-merged."""

    model_config = WIRE_CONFIG

    start_date: AwareDatetime = Field(..., description="Start instant (timezone-aware)")
    end_date: AwareDatetime = Field(..., description="End instant (timezone-aware)")

    @model_validator(mode="after")
    def validate_end_after_start(self) -> "WorkPeriod":
        """Validate the period has a strictly positive duration."""
        if self.end_date <= self.start_date:
            msg = "Work period end must be after its start"
            raise ValueError(msg)
        return self

    def overlaps(self, start: date, end: date) -> bool:
        """Return True if the period intersects the calendar window [start, end)."""
        return self.start_date.date() < end and self.end_date.date() >= start


class MemberSnapshot(BaseModel):
    """Denormalized display data for an assigned member."""

    model_config = WIRE_CONFIG

    id: str
    name: str
    email: str = ""
    teams: list[str] = Field(default_factory=list)


class ProjectSnapshot(BaseModel):
    """Denormalized display data for the task's project."""

    model_config = WIRE_CONFIG

    id: str
    name: str
    status: str | None = None


class ClientSnapshot(BaseModel):
    """Denormalized display data for the task's client."""

    model_config = WIRE_CONFIG

    id: str
    name: str


class Task(BaseModel):
    """Task record as held by the task cache."""

    model_config = WIRE_CONFIG

    id: str = Field(..., description="Identifier shared by client and remote store")
    title: str = Field(..., description="Task title")
    work_period: WorkPeriod | None = Field(default=None, description="Scheduled span, absent for unplanned tasks")
    status: TaskStatus = Field(default=TaskStatus.NOT_STARTED, description="Progress state")
    assigned_members: list[str] = Field(default_factory=list, description="Assigned member IDs")
    assigned_members_data: list[MemberSnapshot] = Field(default_factory=list)
    project_id: str | None = None
    project_data: ProjectSnapshot | None = None
    client_id: str | None = None
    client_data: ClientSnapshot | None = None
    task_type: TaskType = Field(default=TaskType.TASK)
    description: str | None = None
    notes: str | None = None
    billed_hours: float | None = None
    actual_hours: float | None = None
    is_all_day: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None

    # Client-side flags, never sent to the remote store
    pending_sync: bool = Field(default=False, description="An optimistic create awaits confirmation")
    optimistic_id: str | None = Field(default=None, description="Temporary ID used before the server assigned one")

    @property
    def is_schedulable(self) -> bool:
        """Whether the task can be placed on the calendar grid."""
        return self.work_period is not None


class TaskUpdate(BaseModel):
    """Partial update payload. Only explicitly set fields are part of the diff."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=Constants.TASK_TITLE_MAX_LENGTH)
    work_period: WorkPeriod | None = None
    status: TaskStatus | None = None
    assigned_members: list[str] | None = None
    assigned_members_data: list[MemberSnapshot] | None = None
    project_id: str | None = None
    project_data: ProjectSnapshot | None = None
    client_id: str | None = None
    client_data: ClientSnapshot | None = None
    task_type: TaskType | None = None
    description: str | None = None
    notes: str | None = Field(default=None, max_length=Constants.TASK_NOTES_MAX_LENGTH)
    billed_hours: float | None = Field(default=None, ge=0)
    actual_hours: float | None = Field(default=None, ge=0)
    is_all_day: bool | None = None

    @field_validator("title", "status", "task_type", "is_all_day", "assigned_members")
    @classmethod
    def validate_not_cleared(cls, v: Any) -> Any:  # noqa: ANN401
        """Reject explicit nulls for fields that cannot be cleared."""
        if v is None:
            msg = "Field cannot be cleared"
            raise ValueError(msg)
        return v

    def changes(self) -> dict[str, Any]:
        """Return the explicitly set fields keyed by field name, nested models kept intact."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class TaskCreate(BaseModel):
    """Payload for creating a task. Title and work period are required."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    title: str = Field(..., min_length=1, max_length=Constants.TASK_TITLE_MAX_LENGTH)
    work_period: WorkPeriod
    status: TaskStatus = TaskStatus.NOT_STARTED
    assigned_members: list[str] = Field(default_factory=list)
    assigned_members_data: list[MemberSnapshot] = Field(default_factory=list)
    project_id: str | None = None
    project_data: ProjectSnapshot | None = None
    client_id: str | None = None
    client_data: ClientSnapshot | None = None
    task_type: TaskType = TaskType.TASK
    description: str | None = None
    notes: str | None = Field(default=None, max_length=Constants.TASK_NOTES_MAX_LENGTH)
    is_all_day: bool = False


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "payload"
    return f"{location}: {first['msg']}"


def parse_update(diff: dict[str, Any] | TaskUpdate) -> TaskUpdate:
    """Validate a raw diff into a TaskUpdate.

    Raises:
        TaskValidationError: If the diff has unknown fields or invalid values
    """
    if isinstance(diff, TaskUpdate):
        return diff
    try:
        return TaskUpdate.model_validate(diff)
    except ValidationError as e:
        raise TaskValidationError(_validation_message(e)) from e


def parse_create(payload: dict[str, Any] | TaskCreate) -> TaskCreate:
    """Validate a raw create payload into a TaskCreate.

    Raises:
        TaskValidationError: If the payload is incomplete or invalid
    """
    if isinstance(payload, TaskCreate):
        return payload
    try:
        return TaskCreate.model_validate(payload)
    except ValidationError as e:
        raise TaskValidationError(_validation_message(e)) from e


def compute_diff(task: Task, changes: dict[str, Any]) -> dict[str, Any]:
    """Return only the fields of changes whose value differs from the task."""
    return {field: value for field, value in changes.items() if getattr(task, field) != value}


def apply_diff(task: Task, diff: dict[str, Any]) -> Task:
    """Shallow-merge a diff into a copy of the task."""
    return task.model_copy(update=diff)
