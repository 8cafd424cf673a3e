"""Job Store.

The single source of truth for job snapshots. Updates are atomic per job:
a mutation runs under that job's lock and its result replaces the stored
snapshot in one step, so readers see either the old or the new snapshot.
Subscribers are called after each committed update, on the updating thread
and in per-job order.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Optional

from transcoder.core.errors import JobNotFound
from transcoder.core.logging import log_error
from transcoder.modules.job.models import Job
from transcoder.modules.job.schemas import JobFilter

logger = logging.getLogger(__name__)

JobMutation = Callable[[Job], Job]
Subscriber = Callable[[Job], None]


class JobStore(ABC):
    """Abstract base class for job stores."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._subscribers_lock = threading.Lock()

    @abstractmethod
    def add(self, job: Job) -> Job:
        """Insert a new job."""
        pass

    @abstractmethod
    def get(self, job_id: uuid.UUID) -> Job:
        """Return the current snapshot.

        Raises:
            JobNotFound: No such job
        """
        pass

    @abstractmethod
    def list(self, job_filter: Optional[JobFilter] = None) -> list[Job]:
        """Return matching snapshots ordered by submission."""
        pass

    @abstractmethod
    def update(self, job_id: uuid.UUID, mutation: JobMutation) -> Job:
        """Atomically replace a job with mutation(current).

        A mutation returning the same snapshot is a no-op and notifies no one.
        Exceptions raised by the mutation propagate and leave the job unchanged.

        Returns:
            The stored snapshot after the update
        """
        pass

    def max_sequence(self) -> int:
        """Highest submission sequence in the store, or -1 when empty."""
        jobs = self.list()
        return jobs[-1].sequence if jobs else -1

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for every committed change.

        The callback runs while the job's record lock is held and must not
        block or call back into the scheduler. TranscodeEngine.subscribe
        relays to a separate thread for arbitrary callers.

        Returns:
            A function that removes the subscription
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, job: Job) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(job)
            except Exception as e:
                log_error(logger, "Job subscriber failed", e, subscriber=repr(callback))


class _Entry:
    __slots__ = ("job", "lock")

    def __init__(self, job: Job):
        self.job = job
        self.lock = threading.RLock()


class InMemoryJobStore(JobStore):
    """Process-local store with one lock per job."""

    def __init__(self):
        super().__init__()
        self._entries: dict[uuid.UUID, _Entry] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> Job:
        entry = _Entry(job)
        with self._lock:
            if job.id in self._entries:
                raise ValueError(f"Job {job.id} already exists")
            self._entries[job.id] = entry
        with entry.lock:
            self._notify(job)
        return job

    def _entry(self, job_id: uuid.UUID) -> _Entry:
        with self._lock:
            entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFound(job_id)
        return entry

    def get(self, job_id: uuid.UUID) -> Job:
        return self._entry(job_id).job

    def list(self, job_filter: Optional[JobFilter] = None) -> list[Job]:
        with self._lock:
            jobs = [entry.job for entry in self._entries.values()]
        if job_filter is not None:
            jobs = [job for job in jobs if job_filter.matches(job)]
        jobs.sort(key=lambda job: job.sequence)
        if job_filter is not None and job_filter.limit is not None:
            jobs = jobs[:job_filter.limit]
        return jobs

    def update(self, job_id: uuid.UUID, mutation: JobMutation) -> Job:
        entry = self._entry(job_id)
        with entry.lock:
            current = entry.job
            updated = mutation(current)
            if updated is current:
                return current
            if updated.id != current.id:
                raise ValueError("A mutation may not change the job id")
            entry.job = updated
            self._notify(updated)
            return updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
