"""Job model and state machine.

Job is an immutable snapshot. Every change produces a new snapshot through
one of the transition methods, and every snapshot is validated, so a Job
that violates the lifecycle invariants cannot exist. JobRecord is the
durable row the SQL store persists snapshots into.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from transcoder.core.database import Base
from transcoder.core.errors import ErrorDetail, InvalidTransition
from transcoder.modules.planning.models import TargetFormat, TranscodeOptions

# Progress never reaches 1.0 before the job has succeeded
MAX_RUNNING_PROGRESS = 0.99


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Job lifecycle state."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def apply(self, event: "JobEvent") -> "JobState":
        """Return the state reached by applying *event*.

        Raises:
            InvalidTransition: The event is not allowed in this state
        """
        try:
            return _TRANSITIONS[(self, event)]
        except KeyError:
            raise InvalidTransition(
                f"Cannot apply {event.value} to a {self.value} job"
            ) from None


class JobEvent(str, Enum):
    """Events that move a job through its lifecycle."""
    DISPATCH = "dispatch"
    SUCCEED = "succeed"
    FAIL = "fail"
    CANCEL = "cancel"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})

_TRANSITIONS = {
    (JobState.QUEUED, JobEvent.DISPATCH): JobState.RUNNING,
    (JobState.QUEUED, JobEvent.CANCEL): JobState.CANCELLED,
    (JobState.RUNNING, JobEvent.SUCCEED): JobState.SUCCEEDED,
    (JobState.RUNNING, JobEvent.FAIL): JobState.FAILED,
    (JobState.RUNNING, JobEvent.CANCEL): JobState.CANCELLED,
}


class Job(BaseModel):
    """Snapshot of one conversion job."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    sequence: int = Field(..., ge=0, description="Submission order")
    source: Path
    target_format: TargetFormat = TargetFormat.MP4
    options: TranscodeOptions = Field(default_factory=TranscodeOptions)
    created_at: datetime = Field(default_factory=utcnow)
    state: JobState = JobState.QUEUED
    progress: float = Field(0.0, ge=0.0, le=1.0)
    error: Optional[ErrorDetail] = None
    output: Optional[Path] = None
    worker_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_lifecycle(self) -> "Job":
        if self.state in (JobState.QUEUED, JobState.CANCELLED) and self.progress != 0.0:
            raise ValueError(f"A {self.state.value} job must have zero progress")
        if (self.progress == 1.0) != (self.state is JobState.SUCCEEDED):
            raise ValueError("Progress is 1.0 exactly when the job has succeeded")
        if (self.output is not None) != (self.state is JobState.SUCCEEDED):
            raise ValueError("Output is present exactly when the job has succeeded")
        if (self.error is not None) != (self.state is JobState.FAILED):
            raise ValueError("Error is present exactly when the job has failed")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def _evolve(self, event: Optional[JobEvent] = None, **changes: Any) -> "Job":
        if event is not None:
            changes["state"] = self.state.apply(event)
        data = dict(self.__dict__)
        data.update(changes)
        return type(self)(**data)

    def dispatched(self, worker_id: str, now: Optional[datetime] = None) -> "Job":
        return self._evolve(JobEvent.DISPATCH, worker_id=worker_id, started_at=now or utcnow())

    def with_progress(self, fraction: float) -> "Job":
        """Raise progress to *fraction*, never lowering it and never reaching 1.0."""
        if self.state is not JobState.RUNNING:
            raise InvalidTransition(f"Cannot report progress on a {self.state.value} job")
        value = max(self.progress, min(max(fraction, 0.0), MAX_RUNNING_PROGRESS))
        if value == self.progress:
            return self
        return self._evolve(progress=value)

    def succeeded(self, output: Path, now: Optional[datetime] = None) -> "Job":
        return self._evolve(
            JobEvent.SUCCEED, progress=1.0, output=Path(output), finished_at=now or utcnow(),
        )

    def failed(self, error: ErrorDetail, now: Optional[datetime] = None) -> "Job":
        return self._evolve(JobEvent.FAIL, error=error, finished_at=now or utcnow())

    def cancelled(self, now: Optional[datetime] = None) -> "Job":
        return self._evolve(JobEvent.CANCEL, progress=0.0, finished_at=now or utcnow())


# ============================================
# Persistence
# ============================================


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobRecord(Base):
    """Durable row for a Job snapshot."""

    __tablename__ = "transcode_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String(4096), nullable=False)
    target_format: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    options: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(
        String(20), default=JobState.QUEUED.value, nullable=False, index=True
    )
    progress: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    output: Mapped[Optional[str]] = mapped_column(String(4096), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_transcode_jobs_state_sequence", "state", "sequence"),
    )

    def __repr__(self) -> str:
        return f"<JobRecord(id={self.id}, state={self.state}, progress={self.progress})>"

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        record = cls(id=job.id, sequence=job.sequence, created_at=job.created_at)
        record.apply(job)
        return record

    def apply(self, job: Job) -> None:
        """Copy the mutable fields of *job* onto this row."""
        self.source = str(job.source)
        self.target_format = job.target_format.value
        self.options = job.options.model_dump(mode="json")
        self.state = job.state.value
        self.progress = job.progress
        self.error = job.error.model_dump(mode="json") if job.error else None
        self.output = str(job.output) if job.output else None
        self.worker_id = job.worker_id
        self.started_at = job.started_at
        self.finished_at = job.finished_at

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            sequence=self.sequence,
            source=Path(self.source),
            target_format=TargetFormat(self.target_format),
            options=TranscodeOptions(**(self.options or {})),
            created_at=_aware(self.created_at),
            state=JobState(self.state),
            progress=self.progress,
            error=ErrorDetail(**self.error) if self.error else None,
            output=Path(self.output) if self.output else None,
            worker_id=self.worker_id,
            started_at=_aware(self.started_at),
            finished_at=_aware(self.finished_at),
        )
