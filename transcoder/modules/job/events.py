"""Job event relay.

Store subscribers run on the updating thread while that job's record lock is
held. The relay hands each change to a single background thread instead, so
callers' callbacks may block or call back into the engine. One thread keeps
every job's changes in commit order.
"""

import logging
import queue
import threading
from typing import Callable, Optional

from transcoder.core.logging import bind_job_id, log_error
from transcoder.modules.job.models import Job

logger = logging.getLogger(__name__)

Subscriber = Callable[[Job], None]


class JobEventRelay:
    """Delivers job changes to callbacks on a dedicated thread."""

    def __init__(self, thread_name: str = "job-events"):
        self.thread_name = thread_name
        self._queue: "queue.Queue[tuple[Subscriber, Job]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def wrap(self, callback: Subscriber) -> Subscriber:
        """Return a store subscriber that forwards to *callback* through the relay."""
        self._ensure_started()

        def relay(job: Job) -> None:
            self._queue.put((callback, job))

        return relay

    def join(self) -> None:
        """Block until every change queued so far has been delivered."""
        self._queue.join()

    def _ensure_started(self) -> None:
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self.thread_name, daemon=True)
                self._thread.start()

    def _run(self) -> None:
        while True:
            callback, job = self._queue.get()
            try:
                with bind_job_id(job.id):
                    callback(job)
            except Exception as e:
                log_error(logger, "Job subscriber failed", e, subscriber=repr(callback))
            finally:
                self._queue.task_done()
