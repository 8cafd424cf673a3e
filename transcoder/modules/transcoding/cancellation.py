"""Cooperative cancellation for running jobs."""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

from transcoder.core.errors import JobCancelled
from transcoder.core.logging import log_error

logger = logging.getLogger(__name__)


class CancelReason(str, Enum):
    """Why a running job was asked to stop."""
    USER = "user"
    TIMEOUT = "timeout"


class CancellationToken:
    """Signal shared between the scheduler and one worker.

    Pipeline stages poll the token between units of work. The first cancel
    request wins; later requests do not change the reason. Abort callbacks
    are the scheduler's last resort when a stage does not stop in time.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[CancelReason] = None
        self._message: Optional[str] = None
        self._abort_callbacks: list[Callable[[], None]] = []
        self._aborted = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    @property
    def message(self) -> Optional[str]:
        return self._message

    @property
    def aborted(self) -> bool:
        return self._aborted

    def cancel(self, reason: CancelReason = CancelReason.USER, message: Optional[str] = None) -> bool:
        """Request cancellation.

        Returns:
            True if this call set the reason, False if already cancelled
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._message = message
            self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(self._reason.value if self._reason else "cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def on_abort(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback* to run on abort(); returns an unregister function."""
        with self._lock:
            run_now = self._aborted
            if not run_now:
                self._abort_callbacks.append(callback)
        if run_now:
            callback()

        def unregister() -> None:
            with self._lock:
                if callback in self._abort_callbacks:
                    self._abort_callbacks.remove(callback)

        return unregister

    def abort(self) -> None:
        """Forcefully tear down whatever the worker registered."""
        with self._lock:
            self._aborted = True
            callbacks = list(self._abort_callbacks)
            self._abort_callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                log_error(logger, "Abort callback failed", e)
