"""Transcoding engine service.

Wires settings, store, prober, planner, worker and scheduler together and
exposes the operations callers use: submit, query, cancel, list, subscribe.
"""

import logging
import uuid
from pathlib import Path
from typing import Callable, Optional, Union

from transcoder.core.config import Settings
from transcoder.core.config import settings as default_settings
from transcoder.core.logging import log_info
from transcoder.modules.job.events import JobEventRelay
from transcoder.modules.job.models import Job
from transcoder.modules.job.repository import SqlJobStore
from transcoder.modules.job.scheduler import JobScheduler, Worker
from transcoder.modules.job.schemas import JobFilter, JobStatusView
from transcoder.modules.job.store import InMemoryJobStore, JobStore
from transcoder.modules.media.prober import MediaProber
from transcoder.modules.planning.models import TargetFormat, TranscodeOptions
from transcoder.modules.planning.planner import PipelinePlanner
from transcoder.modules.transcoding.ffmpeg import CodecBackend
from transcoder.modules.transcoding.worker import TranscodeWorker

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> JobStore:
    """Create the job store selected by JOB_STORE_BACKEND."""
    if settings.JOB_STORE_BACKEND == "sql":
        return SqlJobStore.from_url(settings.DATABASE_URL, echo=settings.DEBUG)
    return InMemoryJobStore()


class TranscodeEngine:
    """Facade over the job scheduler and its collaborators."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[JobStore] = None,
        prober: Optional[MediaProber] = None,
        planner: Optional[PipelinePlanner] = None,
        backend: Optional[CodecBackend] = None,
        worker: Optional[Worker] = None,
    ):
        self.settings = settings or default_settings
        self.store = store or build_store(self.settings)
        self.worker = worker or TranscodeWorker(
            self.settings, prober=prober, planner=planner, backend=backend,
        )
        self.scheduler = JobScheduler(self.store, self.worker, self.settings)
        self.events = JobEventRelay()

    def __enter__(self) -> "TranscodeEngine":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.shutdown()
        return False

    def start(self) -> None:
        Path(self.settings.OUTPUT_DIR).mkdir(parents=True, exist_ok=True)
        self.scheduler.start()
        log_info(
            logger,
            f"Engine started (store={self.settings.JOB_STORE_BACKEND}, "
            f"slots={self.scheduler.capacity})",
        )

    def shutdown(self, cancel_running: bool = True) -> None:
        self.scheduler.shutdown(cancel_running=cancel_running)

    def submit(
        self,
        source: Union[str, Path],
        target_format: Union[TargetFormat, str] = TargetFormat.MP4,
        options: Optional[TranscodeOptions] = None,
    ) -> uuid.UUID:
        """Submit a conversion job.

        Args:
            source: Path to the source video
            target_format: Output container format
            options: Bitrate, resolution and stream copy overrides

        Returns:
            The new job's id; the job starts Queued
        """
        return self.scheduler.submit(source, target_format, options)

    def query(self, job_id: uuid.UUID) -> JobStatusView:
        """Current state, progress, output or error for a job."""
        return JobStatusView.from_job(self.scheduler.get(job_id))

    def cancel(self, job_id: uuid.UUID) -> JobStatusView:
        return JobStatusView.from_job(self.scheduler.cancel(job_id))

    def list_jobs(self, job_filter: Optional[JobFilter] = None) -> list[JobStatusView]:
        return [JobStatusView.from_job(job) for job in self.scheduler.list(job_filter)]

    def wait(self, job_id: uuid.UUID, timeout: Optional[float] = None) -> JobStatusView:
        return JobStatusView.from_job(self.scheduler.wait(job_id, timeout))

    def subscribe(self, callback: Callable[[Job], None]) -> Callable[[], None]:
        """Receive every committed job change; returns an unsubscribe function.

        Callbacks run on the engine's event thread in commit order, never
        under a job's record lock, so they may call back into the engine.
        Changes queued before unsubscribing are still delivered.
        """
        return self.store.subscribe(self.events.wrap(callback))
