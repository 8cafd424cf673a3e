"""Job Scheduler.

Owns a fixed pool of worker slots and a FIFO queue of submitted jobs. A
supervisor thread reaps finished slots, enforces time limits and dispatches
queued jobs whenever a slot is free, so at most MAX_CONCURRENT_JOBS jobs are
ever Running.

Locking: the scheduler lock may be held while calling into the store, never
the other way round. Store subscribers registered here only touch metrics
and the wake-up event.
"""

import itertools
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from transcoder.core.config import Settings
from transcoder.core.errors import JobTimeout, WorkerLost
from transcoder.core.logging import bind_job_id, log_error, log_info, log_warning
from transcoder.core.metrics import record_job_finished, record_job_submitted, set_scheduler_gauges
from transcoder.modules.job.models import Job, JobState
from transcoder.modules.job.reporter import JobReporter
from transcoder.modules.job.schemas import JobFilter
from transcoder.modules.job.store import JobStore
from transcoder.modules.planning.models import TargetFormat, TranscodeOptions
from transcoder.modules.transcoding.cancellation import CancellationToken, CancelReason

logger = logging.getLogger(__name__)


class Worker(Protocol):
    def execute(self, job: Job, token: CancellationToken, reporter: JobReporter):
        ...


@dataclass
class _Assignment:
    """A job occupying a slot."""
    job_id: uuid.UUID
    slot: str
    token: CancellationToken
    deadline: float
    time_limit: float
    thread: Optional[threading.Thread] = None
    cancel_requested_at: Optional[float] = None
    slot_released: bool = False
    finished: bool = False


class JobScheduler:
    """Admits, queues and dispatches jobs onto a bounded worker pool."""

    def __init__(
        self,
        store: JobStore,
        worker: Worker,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the scheduler.

        Args:
            store: Job store holding every job snapshot
            worker: Object whose execute(job, token, reporter) runs one job
            settings: Concurrency cap, timeouts and supervision interval
            clock: Monotonic clock used for deadlines
        """
        self._store = store
        self._worker = worker
        self._settings = settings
        self._clock = clock

        self.capacity = settings.MAX_CONCURRENT_JOBS
        self._free_slots: deque[str] = deque(f"slot-{i}" for i in range(self.capacity))
        self._queue: deque[uuid.UUID] = deque()
        self._assignments: dict[uuid.UUID, _Assignment] = {}
        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._sequence = itertools.count(store.max_sequence() + 1)
        self._supervisor: Optional[threading.Thread] = None
        self._accepting = True
        self._stopping = False
        self._unsubscribe = store.subscribe(self._on_job_update)

    # ============================================
    # Lifecycle
    # ============================================

    def start(self) -> None:
        """Recover persisted jobs and start the supervisor thread."""
        with self._lock:
            if self._supervisor is not None:
                return
            self._stopping = False
            self._accepting = True
            self.recover()
            self._supervisor = threading.Thread(
                target=self._supervise,
                name="job-scheduler",
                daemon=True,
            )
            self._supervisor.start()
            self._dispatch_locked()
        log_info(logger, f"Scheduler started with {self.capacity} slot(s)")

    def shutdown(self, cancel_running: bool = True, timeout: Optional[float] = None) -> None:
        """Stop dispatching and wait for running jobs.

        Queued jobs stay Queued so a durable store can resume them.

        Args:
            cancel_running: Ask running jobs to stop instead of letting them finish
            timeout: Seconds to wait for each slot thread; defaults to the grace period
        """
        with self._lock:
            self._accepting = False
            self._stopping = True
            assignments = list(self._assignments.values())
            if cancel_running:
                for assignment in assignments:
                    self._request_cancel_locked(assignment, CancelReason.USER)
        self._wakeup.set()

        if self._supervisor is not None:
            self._supervisor.join()
            self._supervisor = None

        wait = self._settings.CANCEL_GRACE_SECONDS if timeout is None else timeout
        for assignment in assignments:
            if assignment.thread is not None:
                assignment.thread.join(wait)

        with self._lock:
            self._reap_finished_locked()
            self._update_gauges_locked()
        log_info(logger, "Scheduler stopped")

    def close(self) -> None:
        self._unsubscribe()

    def recover(self) -> None:
        """Rebuild scheduler state from the store.

        Jobs left Running by a previous process are failed with WorkerLost;
        Queued jobs are re-enqueued in submission order.
        """
        with self._lock:
            self._sequence = itertools.count(self._store.max_sequence() + 1)
            known = set(self._queue) | set(self._assignments)
            for job in self._store.list(JobFilter(states=frozenset({JobState.RUNNING}))):
                if job.id in known:
                    continue
                detail = WorkerLost("Engine restarted while the job was running").to_detail()
                self._store.update(job.id, lambda j: j if j.is_terminal else j.failed(detail))
                log_warning(logger, f"Recovered running job {job.id} as lost", job_id=str(job.id))
            for job in self._store.list(JobFilter(states=frozenset({JobState.QUEUED}))):
                if job.id not in known:
                    self._queue.append(job.id)
            self._update_gauges_locked()

    # ============================================
    # Public operations
    # ============================================

    def submit(
        self,
        source: Union[str, Path],
        target_format: Union[TargetFormat, str] = TargetFormat.MP4,
        options: Optional[TranscodeOptions] = None,
    ) -> uuid.UUID:
        """Queue a conversion of *source* and return its job id immediately.

        Raises:
            ValueError: Unknown target format, or the scheduler is shut down
        """
        target_format = TargetFormat(target_format)
        with self._lock:
            if not self._accepting:
                raise ValueError("Scheduler is shut down")
            job = Job(
                sequence=next(self._sequence),
                source=Path(source),
                target_format=target_format,
                options=options or TranscodeOptions(),
            )
            self._store.add(job)
            self._queue.append(job.id)
            record_job_submitted(target_format.value)
            log_info(
                logger,
                f"Queued job {job.id} ({Path(source).name} -> {target_format.value})",
                job_id=str(job.id),
            )
            self._dispatch_locked()
            self._update_gauges_locked()
        return job.id

    def cancel(self, job_id: uuid.UUID) -> Job:
        """Cancel a job.

        A Queued job becomes Cancelled at once. A Running job is signalled and
        reaches Cancelled when its worker next checks. Terminal jobs are left
        alone.

        Raises:
            JobNotFound: No such job
        """
        with self._lock:
            job = self._store.get(job_id)
            if job.is_terminal:
                return job

            if job.state is JobState.QUEUED:
                job = self._store.update(
                    job_id, lambda j: j.cancelled() if j.state is JobState.QUEUED else j,
                )
                if job_id in self._queue:
                    self._queue.remove(job_id)
                log_info(logger, f"Cancelled queued job {job_id}", job_id=str(job_id))
                self._update_gauges_locked()
                return job

            assignment = self._assignments.get(job_id)
            if assignment is not None:
                self._request_cancel_locked(assignment, CancelReason.USER)
                log_info(logger, f"Cancellation requested for job {job_id}", job_id=str(job_id))
            return self._store.get(job_id)

    def get(self, job_id: uuid.UUID) -> Job:
        return self._store.get(job_id)

    def list(self, job_filter: Optional[JobFilter] = None) -> list[Job]:
        return self._store.list(job_filter)

    def wait(self, job_id: uuid.UUID, timeout: Optional[float] = None) -> Job:
        """Block until the job is terminal or *timeout* elapses.

        Returns:
            The latest snapshot, terminal unless the timeout expired
        """
        done = threading.Event()

        def listener(job: Job) -> None:
            if job.id == job_id and job.is_terminal:
                done.set()

        unsubscribe = self._store.subscribe(listener)
        try:
            if not self._store.get(job_id).is_terminal:
                done.wait(timeout)
            return self._store.get(job_id)
        finally:
            unsubscribe()

    @property
    def running_count(self) -> int:
        with self._lock:
            return self.capacity - len(self._free_slots)

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    # ============================================
    # Dispatch and supervision
    # ============================================

    def _supervise(self) -> None:
        interval = self._settings.MONITOR_INTERVAL_SECONDS
        while True:
            self._wakeup.wait(interval)
            self._wakeup.clear()
            with self._lock:
                self._reap_finished_locked()
                self._enforce_deadlines_locked()
                if self._stopping:
                    return
                self._dispatch_locked()
                self._update_gauges_locked()

    def _dispatch_locked(self) -> None:
        if self._supervisor is None or self._stopping:
            return
        while self._free_slots and self._queue:
            job_id = self._queue.popleft()
            job = self._store.get(job_id)
            if job.state is not JobState.QUEUED:
                continue

            slot = self._free_slots.popleft()
            job = self._store.update(
                job_id, lambda j: j.dispatched(slot) if j.state is JobState.QUEUED else j,
            )
            if job.state is not JobState.RUNNING:
                self._free_slots.appendleft(slot)
                continue

            time_limit = self._settings.estimate_timeout(self._source_size(job.source))
            assignment = _Assignment(
                job_id=job_id,
                slot=slot,
                token=CancellationToken(),
                deadline=self._clock() + time_limit,
                time_limit=time_limit,
            )
            assignment.thread = threading.Thread(
                target=self._run_slot,
                args=(assignment, job),
                name=f"transcode-{slot}",
                daemon=True,
            )
            self._assignments[job_id] = assignment
            log_info(logger, f"Dispatched job {job_id} to {slot}", job_id=str(job_id), slot=slot)
            assignment.thread.start()

    def _run_slot(self, assignment: _Assignment, job: Job) -> None:
        reporter = JobReporter(self._store, assignment.job_id)
        try:
            with bind_job_id(assignment.job_id):
                self._worker.execute(job, assignment.token, reporter)
        except Exception as e:
            log_error(logger, f"Worker on {assignment.slot} crashed", e, job_id=str(assignment.job_id))
        finally:
            with self._lock:
                assignment.finished = True
                self._reap_locked(assignment)
                self._dispatch_locked()
                self._update_gauges_locked()

    def _reap_finished_locked(self) -> None:
        for assignment in list(self._assignments.values()):
            if assignment.finished or (
                assignment.thread is not None and not assignment.thread.is_alive()
            ):
                self._reap_locked(assignment)

    def _reap_locked(self, assignment: _Assignment) -> None:
        if self._assignments.get(assignment.job_id) is not assignment:
            return
        del self._assignments[assignment.job_id]
        self._release_slot_locked(assignment)

        job = self._store.get(assignment.job_id)
        if not job.is_terminal:
            detail = WorkerLost(
                f"Worker on {assignment.slot} exited without reporting an outcome"
            ).to_detail()
            self._store.update(assignment.job_id, lambda j: j if j.is_terminal else j.failed(detail))
            log_error(
                logger,
                f"Job {assignment.job_id} lost its worker",
                job_id=str(assignment.job_id),
                slot=assignment.slot,
            )

    def _enforce_deadlines_locked(self) -> None:
        now = self._clock()
        grace = self._settings.CANCEL_GRACE_SECONDS
        for assignment in list(self._assignments.values()):
            if assignment.slot_released:
                continue
            if assignment.cancel_requested_at is None:
                if now >= assignment.deadline:
                    self._request_cancel_locked(
                        assignment,
                        CancelReason.TIMEOUT,
                        f"Job exceeded its time limit of {assignment.time_limit:.0f}s",
                    )
                    log_warning(
                        logger,
                        f"Job {assignment.job_id} timed out",
                        job_id=str(assignment.job_id),
                    )
            elif now - assignment.cancel_requested_at >= grace:
                self._force_timeout_locked(assignment, grace)

    def _force_timeout_locked(self, assignment: _Assignment, grace: float) -> None:
        detail = JobTimeout(
            f"Job did not stop within {grace:.0f}s of being asked to"
        ).to_detail()
        self._store.update(assignment.job_id, lambda j: j if j.is_terminal else j.failed(detail))
        assignment.token.abort()
        self._release_slot_locked(assignment)
        log_error(
            logger,
            f"Forced job {assignment.job_id} to fail after the grace period",
            job_id=str(assignment.job_id),
            slot=assignment.slot,
        )

    def _request_cancel_locked(
        self,
        assignment: _Assignment,
        reason: CancelReason,
        message: Optional[str] = None,
    ) -> None:
        if assignment.cancel_requested_at is not None:
            return
        assignment.token.cancel(reason, message)
        assignment.cancel_requested_at = self._clock()
        self._wakeup.set()

    def _release_slot_locked(self, assignment: _Assignment) -> None:
        if not assignment.slot_released:
            assignment.slot_released = True
            self._free_slots.append(assignment.slot)

    def _update_gauges_locked(self) -> None:
        set_scheduler_gauges(self.capacity - len(self._free_slots), len(self._queue))

    def _on_job_update(self, job: Job) -> None:
        if job.is_terminal:
            record_job_finished(
                job.state.value,
                job.target_format.value,
                error_kind=job.error.kind.value if job.error else None,
                duration_seconds=job.duration_seconds,
            )
            self._wakeup.set()

    @staticmethod
    def _source_size(source: Path) -> int:
        try:
            return source.stat().st_size
        except OSError:
            return 0
