"""The worker's write path to the job store."""

import logging
import uuid
from pathlib import Path
from typing import Callable

from transcoder.core.errors import ErrorDetail
from transcoder.core.logging import log_debug, log_info
from transcoder.modules.job.models import Job, JobState
from transcoder.modules.job.store import JobStore

logger = logging.getLogger(__name__)


class JobReporter:
    """Reports progress and outcome for one job.

    Every write is guarded: once the job is terminal (for example because
    the scheduler forced a timeout) further reports are ignored.
    """

    def __init__(self, store: JobStore, job_id: uuid.UUID):
        self.store = store
        self.job_id = job_id

    def progress(self, fraction: float) -> None:
        def mutation(job: Job) -> Job:
            if job.state is not JobState.RUNNING:
                return job
            return job.with_progress(fraction)

        job = self.store.update(self.job_id, mutation)
        log_debug(logger, f"Job {self.job_id} progress {job.progress:.2%}", job_id=str(self.job_id))

    def succeeded(self, output: Path) -> bool:
        return self._finish(lambda job: job.succeeded(output), "succeeded")

    def failed(self, error: ErrorDetail) -> bool:
        return self._finish(lambda job: job.failed(error), "failed")

    def cancelled(self) -> bool:
        return self._finish(lambda job: job.cancelled(), "cancelled")

    def _finish(self, transition: Callable[[Job], Job], outcome: str) -> bool:
        applied = False

        def mutation(job: Job) -> Job:
            nonlocal applied
            if job.is_terminal:
                return job
            applied = True
            return transition(job)

        job = self.store.update(self.job_id, mutation)
        if not applied:
            log_info(
                logger,
                f"Ignoring late '{outcome}' report; job is already {job.state.value}",
                state=job.state.value,
            )
        return applied
