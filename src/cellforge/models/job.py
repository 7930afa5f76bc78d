"""Pydantic models for refresh jobs and materialization runs."""

from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from cellforge.errors import JobError


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.ERROR)


# pending -> running -> success | error. terminal states go nowhere.
# no retry edge on purpose - a retry is a new job.
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCESS, JobStatus.ERROR}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.ERROR: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MaterializeOptions(BaseModel):
    """Full refresh by default. incremental needs at least a start date."""

    incremental: bool = False
    start_date: date | None = None
    end_date: date | None = None  # exclusive

    @model_validator(mode="after")
    def validate_window(self) -> "MaterializeOptions":
        if self.incremental and self.start_date is None:
            raise ValueError("Incremental refresh requires start_date")
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class MaterializationResult(BaseModel):
    model_id: str
    rows_processed: int
    rows_deleted: int = 0
    incremental: bool = False
    duration_ms: float = 0.0
    warnings: list[str] = Field(default_factory=list)


class RefreshJob(BaseModel):
    """Persisted record of one materialization run."""

    id: str
    org_id: str
    model_id: str
    status: JobStatus = JobStatus.PENDING
    incremental: bool = False
    start_date: date | None = None
    end_date: date | None = None
    rows_processed: int | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def transition(self, status: JobStatus) -> "RefreshJob":
        """Return a copy moved to `status`, stamping timestamps.

        raises JobError for anything the state machine doesn't allow.
        """
        if status not in _TRANSITIONS[self.status]:
            raise JobError(
                f"Job {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        update: dict = {"status": status}
        if status == JobStatus.RUNNING:
            update["started_at"] = utcnow()
        elif status.is_terminal:
            update["completed_at"] = utcnow()
        return self.model_copy(update=update)

    @property
    def options(self) -> MaterializeOptions:
        return MaterializeOptions(
            incremental=self.incremental,
            start_date=self.start_date,
            end_date=self.end_date,
        )

    def status_view(self) -> dict:
        """The shape callers poll: status plus whatever has been recorded."""
        return {
            "status": self.status.value,
            "rows_processed": self.rows_processed,
            "error_message": self.error_message,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
