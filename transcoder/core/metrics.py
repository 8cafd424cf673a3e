"""Prometheus metrics for the transcoding engine.

Tracks queue depth, running jobs and job outcomes.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "transcoder_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Job Metrics
# ============================================
JOBS_SUBMITTED_TOTAL = Counter(
    "transcoder_jobs_submitted_total",
    "Total number of submitted jobs by target format",
    ["target_format"],
    registry=REGISTRY,
)

JOBS_FINISHED_TOTAL = Counter(
    "transcoder_jobs_finished_total",
    "Total number of jobs that reached a terminal state",
    ["state", "error_kind"],
    registry=REGISTRY,
)

JOBS_RUNNING = Gauge(
    "transcoder_jobs_running",
    "Number of jobs currently holding a worker slot",
    registry=REGISTRY,
)

QUEUE_DEPTH = Gauge(
    "transcoder_queue_depth",
    "Number of jobs waiting for a worker slot",
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "transcoder_job_duration_seconds",
    "Wall time from dispatch to terminal state",
    ["target_format"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

SOURCE_BYTES_TOTAL = Counter(
    "transcoder_source_bytes_total",
    "Source bytes read by the demux stage",
    registry=REGISTRY,
)


def record_job_submitted(target_format: str) -> None:
    JOBS_SUBMITTED_TOTAL.labels(target_format=target_format).inc()


def record_job_finished(
    state: str,
    target_format: str,
    error_kind: Optional[str] = None,
    duration_seconds: Optional[float] = None,
) -> None:
    """Record a terminal transition.

    Args:
        state: Terminal state value
        target_format: Requested output format
        error_kind: ErrorKind value for failed jobs
        duration_seconds: Time spent running, if the job was ever dispatched
    """
    JOBS_FINISHED_TOTAL.labels(state=state, error_kind=error_kind or "").inc()
    if duration_seconds is not None:
        JOB_DURATION_SECONDS.labels(target_format=target_format).observe(duration_seconds)


def set_scheduler_gauges(running: int, queued: int) -> None:
    JOBS_RUNNING.set(running)
    QUEUE_DEPTH.set(queued)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format.

    Returns:
        bytes: Prometheus-formatted metrics
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics."""
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
