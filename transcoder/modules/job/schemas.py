"""Pydantic schemas for job queries and the job API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from transcoder.core.errors import ErrorKind
from transcoder.modules.job.models import Job, JobState
from transcoder.modules.planning.models import TargetFormat, TranscodeOptions


class JobFilter(BaseModel):
    """Filters for listing jobs; results are ordered by submission."""
    states: Optional[frozenset[JobState]] = Field(None, description="Only jobs in these states")
    target_format: Optional[TargetFormat] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: Optional[int] = Field(None, ge=1, le=1000)

    def matches(self, job: Job) -> bool:
        if self.states is not None and job.state not in self.states:
            return False
        if self.target_format is not None and job.target_format is not self.target_format:
            return False
        if self.created_after is not None and job.created_at < self.created_after:
            return False
        if self.created_before is not None and job.created_at >= self.created_before:
            return False
        return True


class JobStatusView(BaseModel):
    """What a caller sees when querying a job."""
    job_id: uuid.UUID
    state: JobState
    progress: float
    source_path: str
    target_format: TargetFormat
    output_path: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    error_stage: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        return cls(
            job_id=job.id,
            state=job.state,
            progress=job.progress,
            source_path=str(job.source),
            target_format=job.target_format,
            output_path=str(job.output) if job.output else None,
            error_kind=job.error.kind if job.error else None,
            error_detail=job.error.message if job.error else None,
            error_stage=job.error.stage if job.error else None,
            worker_id=job.worker_id,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


# ==================== API ====================


class JobCreateRequest(BaseModel):
    """Schema for submitting a conversion job."""
    source_path: str = Field(..., min_length=1, description="Path to the source video file")
    target_format: TargetFormat = Field(TargetFormat.MP4, description="Output container format")
    options: TranscodeOptions = Field(default_factory=TranscodeOptions)

    @field_validator("source_path")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class JobCreateResponse(BaseModel):
    """Schema for job submission response."""
    job_id: uuid.UUID
    state: JobState
    message: str = "Job queued"


class JobListResponse(BaseModel):
    jobs: list[JobStatusView]
    total: int
