"""API Router for transcoding jobs."""

import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from transcoder.core.errors import JobNotFound
from transcoder.modules.job.models import JobState
from transcoder.modules.job.schemas import (
    JobCreateRequest,
    JobCreateResponse,
    JobFilter,
    JobListResponse,
    JobStatusView,
)
from transcoder.modules.job.service import TranscodeEngine
from transcoder.modules.planning.models import TargetFormat

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_engine(request: Request) -> TranscodeEngine:
    """Dependency to get the running TranscodeEngine."""
    return request.app.state.engine


@router.post("", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_job(
    request: JobCreateRequest,
    engine: TranscodeEngine = Depends(get_engine),
) -> JobCreateResponse:
    """Queue a conversion job."""
    if not Path(request.source_path).is_file():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Source file not found: {request.source_path}",
        )
    job_id = engine.submit(request.source_path, request.target_format, request.options)
    return JobCreateResponse(job_id=job_id, state=engine.query(job_id).state)


@router.get("", response_model=JobListResponse)
def list_jobs(
    state: Optional[list[JobState]] = Query(None, description="Filter by state"),
    target_format: Optional[TargetFormat] = Query(None, description="Filter by target format"),
    limit: int = Query(100, ge=1, le=1000),
    engine: TranscodeEngine = Depends(get_engine),
) -> JobListResponse:
    """List jobs in submission order."""
    job_filter = JobFilter(
        states=frozenset(state) if state else None,
        target_format=target_format,
        limit=limit,
    )
    jobs = engine.list_jobs(job_filter)
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/{job_id}", response_model=JobStatusView)
def get_job(
    job_id: uuid.UUID,
    engine: TranscodeEngine = Depends(get_engine),
) -> JobStatusView:
    """Get state, progress and outcome of a job."""
    try:
        return engine.query(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post(
    "/{job_id}/cancel",
    response_model=JobStatusView,
    status_code=status.HTTP_202_ACCEPTED,
)
def cancel_job(
    job_id: uuid.UUID,
    engine: TranscodeEngine = Depends(get_engine),
) -> JobStatusView:
    """Cancel a queued or running job; terminal jobs are returned unchanged."""
    try:
        return engine.cancel(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
