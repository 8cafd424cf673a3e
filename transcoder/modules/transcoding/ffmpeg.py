"""ffmpeg codec handle.

The worker streams source bytes into ffmpeg's stdin; ffmpeg decodes,
filters, encodes and muxes into the partial output file. Bitstream
correctness is ffmpeg's job, stage ownership and teardown are ours.
"""

import logging
import os
import re
import select
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import suppress
from pathlib import Path
from typing import Iterable, Optional

from transcoder.core.config import Settings
from transcoder.core.errors import StageFailure, TranscodeError, WorkerLost
from transcoder.modules.media.models import MediaKind
from transcoder.modules.planning.formats import get_format_profile
from transcoder.modules.planning.models import PipelinePlan, StageKind
from transcoder.modules.transcoding.cancellation import CancellationToken

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20

# Encoders that need an explicit 4:2:0 pixel format for broad player support
_YUV420_ENCODERS = frozenset({"libx264", "libvpx-vp9", "mpeg4"})

# Checked in order; the first stage whose pattern matches the stderr tail wins
_STAGE_PATTERNS = (
    (StageKind.DECODE, re.compile(
        r"error while decoding|invalid data found when processing input|"
        r"could not find codec parameters|decoder|moov atom not found",
        re.IGNORECASE,
    )),
    (StageKind.MUX, re.compile(
        r"could not write header|error muxing|muxer does not support|"
        r"error writing trailer|av_interleaved_write_frame|could not open output",
        re.IGNORECASE,
    )),
    (StageKind.FILTER, re.compile(
        r"error (?:re)?initializing filter|filtergraph|failed to configure",
        re.IGNORECASE,
    )),
    (StageKind.ENCODE, re.compile(r"encod", re.IGNORECASE)),
)


def classify_stderr(lines: Iterable[str]) -> StageKind:
    """Work out which stage an ffmpeg failure belongs to from its stderr."""
    text = "\n".join(lines)
    for stage, pattern in _STAGE_PATTERNS:
        if pattern.search(text):
            return stage
    return StageKind.ENCODE


def build_transcode_command(
    plan: PipelinePlan,
    output_path: Path,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Build the ffmpeg command executing *plan*.

    Args:
        plan: Pipeline plan
        output_path: File ffmpeg writes the muxed output to
        ffmpeg_path: Path to ffmpeg binary

    Returns:
        FFmpeg command as list of arguments
    """
    demux = plan.stages[0]
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-f", str(demux.params["demuxer"]),
        "-i", "pipe:0",
    ]

    for mapping in plan.streams:
        cmd.extend(["-map", f"0:{mapping.input_index}"])

    for mapping in plan.streams:
        i = mapping.output_index
        cmd.extend([f"-c:{i}", mapping.encoder])
        if mapping.is_copy:
            continue
        if mapping.bitrate:
            cmd.extend([f"-b:{i}", str(mapping.bitrate)])

        if mapping.kind is MediaKind.VIDEO:
            if mapping.resize:
                cmd.extend([f"-filter:{i}", f"scale={mapping.width or -2}:{mapping.height}"])
            if mapping.encoder in _YUV420_ENCODERS:
                cmd.extend([f"-pix_fmt:{i}", "yuv420p"])
            if mapping.encoder == "libx264":
                cmd.extend([f"-preset:{i}", "medium"])
        elif mapping.kind is MediaKind.AUDIO:
            if mapping.sample_rate:
                cmd.extend([f"-ar:{i}", str(mapping.sample_rate)])
            if mapping.channels:
                cmd.extend([f"-ac:{i}", str(mapping.channels)])

    cmd.extend(["-f", plan.muxer])
    cmd.extend(get_format_profile(plan.target_format).muxer_flags)
    cmd.extend(["-y", str(output_path)])
    return cmd


# ============================================
# Codec handles
# ============================================


class CodecHandle(ABC):
    """Open decode/encode/mux session for one job.

    Handles are context managers; leaving the block releases every
    resource regardless of how the pipeline ended.
    """

    def __enter__(self) -> "CodecHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    @abstractmethod
    def write(self, chunk: bytes, token: CancellationToken) -> None:
        """Feed source bytes to the codec, blocking while it is busy."""
        pass

    @abstractmethod
    def finish(self, token: CancellationToken) -> None:
        """Signal end of input and wait until the output is complete."""
        pass

    @abstractmethod
    def abort(self) -> None:
        """Stop immediately; safe to call from another thread."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release all resources."""
        pass


class CodecBackend(ABC):
    """Factory for codec handles."""

    @abstractmethod
    def open(self, plan: PipelinePlan, output_path: Path) -> CodecHandle:
        pass


class FFmpegCodec(CodecHandle):
    """An ffmpeg process reading the source from its stdin."""

    def __init__(
        self,
        command: list[str],
        poll_interval: float = 0.05,
        kill_timeout: float = 5.0,
    ):
        self.command = command
        self._poll_interval = poll_interval
        self._kill_timeout = kill_timeout
        self._process: Optional[subprocess.Popen] = None
        self._stdin_fd: Optional[int] = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None
        self._aborted = False

    def __enter__(self) -> "FFmpegCodec":
        self.start()
        return self

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def start(self) -> None:
        logger.debug(f"Starting ffmpeg: {' '.join(self.command)}")
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise StageFailure(StageKind.DECODE.value, e) from e

        self._stdin_fd = self._process.stdin.fileno()
        os.set_blocking(self._stdin_fd, False)
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name="ffmpeg-stderr",
            daemon=True,
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        for raw in iter(self._process.stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)
                logger.debug(f"ffmpeg: {line}")

    def write(self, chunk: bytes, token: CancellationToken) -> None:
        view = memoryview(chunk)
        while view:
            token.raise_if_cancelled()
            if self._aborted:
                raise StageFailure(StageKind.ENCODE.value, "codec aborted")

            _, writable, _ = select.select([], [self._stdin_fd], [], self._poll_interval)
            if not writable:
                if self._process.poll() is not None:
                    raise self._exit_failure()
                continue

            try:
                written = os.write(self._stdin_fd, view)
            except BlockingIOError:
                continue
            except BrokenPipeError:
                raise self._exit_failure() from None
            view = view[written:]

    def finish(self, token: CancellationToken) -> None:
        self._close_stdin()
        while True:
            token.raise_if_cancelled()
            try:
                returncode = self._process.wait(timeout=self._poll_interval)
            except subprocess.TimeoutExpired:
                continue
            break
        if returncode != 0:
            raise self._exit_failure()
        self._join_stderr()

    def _exit_failure(self) -> TranscodeError:
        """Wait for ffmpeg to exit and describe why it failed."""
        try:
            returncode = self._process.wait(timeout=self._kill_timeout)
        except subprocess.TimeoutExpired:
            self._process.kill()
            returncode = self._process.wait()
        self._join_stderr()

        if returncode < 0 and not self._aborted:
            return WorkerLost(f"ffmpeg was killed by signal {-returncode}")
        if self._aborted:
            return StageFailure(StageKind.ENCODE.value, "codec aborted")

        stage = classify_stderr(self._stderr_tail)
        cause = self._stderr_tail[-1] if self._stderr_tail else f"ffmpeg exited with status {returncode}"
        return StageFailure(stage.value, cause)

    def abort(self) -> None:
        self._aborted = True
        if self._process is not None and self._process.poll() is None:
            self._process.kill()

    def close(self) -> None:
        if self._process is None:
            return
        if self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=self._kill_timeout)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
        self._close_stdin()
        self._join_stderr()
        if self._process.stderr is not None:
            self._process.stderr.close()

    def _close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.closed:
            # ffmpeg may already have exited
            with suppress(BrokenPipeError):
                stdin.close()

    def _join_stderr(self) -> None:
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=self._kill_timeout)


class FFmpegBackend(CodecBackend):
    """Opens ffmpeg codec handles."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", poll_interval: float = 0.05):
        self.ffmpeg_path = ffmpeg_path
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> "FFmpegBackend":
        return cls(
            ffmpeg_path=settings.FFMPEG_PATH,
            poll_interval=settings.STAGE_POLL_INTERVAL_SECONDS,
        )

    def open(self, plan: PipelinePlan, output_path: Path) -> FFmpegCodec:
        command = build_transcode_command(plan, output_path, self.ffmpeg_path)
        return FFmpegCodec(command, poll_interval=self.poll_interval)
