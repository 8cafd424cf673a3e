"""Pipeline plumbing shared by the worker stages.

StageBuffer is the bounded hand-off between the demux thread and the encode
stage. A full buffer suspends the producer; every wait wakes up periodically
so cancellation is observed promptly.
"""

import queue
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional

from transcoder.core.errors import StageFailure
from transcoder.modules.job.models import MAX_RUNNING_PROGRESS
from transcoder.modules.media.boxes import Segment, plan_streaming_layout
from transcoder.modules.transcoding.cancellation import CancellationToken

_END = object()


class BufferAborted(Exception):
    """The other side of a StageBuffer gave up."""


class StageBuffer:
    """Bounded, cancellable queue of byte chunks."""

    def __init__(
        self,
        maxsize: int,
        token: CancellationToken,
        poll_interval: float = 0.05,
    ):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._token = token
        self._poll_interval = poll_interval
        self._aborted = threading.Event()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    def _check(self) -> None:
        self._token.raise_if_cancelled()
        if self._aborted.is_set():
            raise BufferAborted()

    def put(self, item: bytes) -> None:
        """Hand a chunk to the consumer, blocking while the buffer is full."""
        self._put(item)

    def _put(self, item: object) -> None:
        while True:
            self._check()
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return
            except queue.Full:
                continue

    def get(self) -> Optional[bytes]:
        """Take the next chunk; None once the producer has closed the buffer."""
        while True:
            self._check()
            try:
                item = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            return None if item is _END else item

    def close(self) -> None:
        """Signal end of stream to the consumer."""
        self._put(_END)

    def abort(self) -> None:
        """Make every pending and future put/get raise BufferAborted."""
        self._aborted.set()

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item


class ProgressThrottle:
    """Lets an update through at most once per interval."""

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self._interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self._interval:
            self._last = now
            return True
        return False


def progress_fraction(consumed: int, total: int) -> float:
    """Fraction of the source consumed, capped below 1.0."""
    if total <= 0:
        return 0.0
    return min(consumed / total, MAX_RUNNING_PROGRESS)


class SourceReader:
    """Reads a source file in fixed-size chunks following a segment layout.

    Counts consumed bytes so the demux stage can derive progress.
    """

    def __init__(self, path: Path, segments: list[Segment], chunk_size: int):
        self.path = Path(path)
        self.segments = segments
        self.chunk_size = chunk_size
        self.total = sum(segment.length for segment in segments)
        self.consumed = 0

    @classmethod
    def open(
        cls,
        path: Path,
        size: int,
        chunk_size: int,
        streamable: bool = True,
    ) -> "SourceReader":
        """Build a reader, relocating the MP4/MOV index when not streamable."""
        if streamable:
            return cls(path, [Segment(offset=0, length=size)], chunk_size)
        try:
            with open(path, "rb") as fh:
                segments = plan_streaming_layout(fh, size)
        except OSError as e:
            raise StageFailure("demux", e) from e
        return cls(path, segments, chunk_size)

    def _read_segment(self, fh: BinaryIO, segment: Segment) -> Iterator[bytes]:
        if segment.data is not None:
            for start in range(0, len(segment.data), self.chunk_size):
                yield segment.data[start:start + self.chunk_size]
            return

        fh.seek(segment.offset)
        remaining = segment.length
        while remaining > 0:
            chunk = fh.read(min(self.chunk_size, remaining))
            if not chunk:
                raise StageFailure(
                    "demux",
                    f"source ended {remaining} bytes early at offset "
                    f"{segment.offset + segment.length - remaining}",
                )
            remaining -= len(chunk)
            yield chunk

    def __iter__(self) -> Iterator[bytes]:
        try:
            with open(self.path, "rb") as fh:
                for segment in self.segments:
                    for chunk in self._read_segment(fh, segment):
                        self.consumed += len(chunk)
                        yield chunk
        except OSError as e:
            raise StageFailure("demux", e) from e
