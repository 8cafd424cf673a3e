"""Transcode Worker.

Executes one job at a time: probe, plan, then run the pipeline. The demux
stage runs on its own thread and feeds a bounded StageBuffer; the encode
stage (the calling thread) drains it into the codec handle, which decodes,
filters, encodes and muxes into a partial output file. The partial file is
renamed into place only after the codec has finished cleanly.
"""

import logging
import os
import threading
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from transcoder.core.config import Settings
from transcoder.core.errors import (
    ErrorDetail,
    JobCancelled,
    JobTimeout,
    StageFailure,
    TranscodeError,
)
from transcoder.core.logging import bind_job_id, log_error, log_info
from transcoder.core.metrics import SOURCE_BYTES_TOTAL
from transcoder.modules.job.models import JobState
from transcoder.modules.media.prober import MediaProber
from transcoder.modules.planning.models import PipelinePlan
from transcoder.modules.planning.planner import PipelinePlanner
from transcoder.modules.transcoding.cancellation import CancellationToken, CancelReason
from transcoder.modules.transcoding.ffmpeg import CodecBackend, CodecHandle, FFmpegBackend
from transcoder.modules.transcoding.pipeline import (
    BufferAborted,
    ProgressThrottle,
    SourceReader,
    StageBuffer,
    progress_fraction,
)

if TYPE_CHECKING:
    from transcoder.modules.job.models import Job
    from transcoder.modules.job.reporter import JobReporter

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


@dataclass(frozen=True)
class JobOutcome:
    """How a worker finished a job."""
    state: JobState
    output: Optional[Path] = None
    error: Optional[ErrorDetail] = None


class TranscodeWorker:
    """Runs conversion pipelines.

    A worker instance holds no per-job state and can be shared by every
    scheduler slot.
    """

    def __init__(
        self,
        settings: Settings,
        prober: Optional[MediaProber] = None,
        planner: Optional[PipelinePlanner] = None,
        backend: Optional[CodecBackend] = None,
    ):
        self.settings = settings
        self.prober = prober or MediaProber.from_settings(settings)
        self.planner = planner or PipelinePlanner.from_settings(settings)
        self.backend = backend or FFmpegBackend.from_settings(settings)

    def output_path_for(self, job: "Job", plan: PipelinePlan) -> Path:
        """OUTPUT_DIR/<job id>/<source stem>.<target extension>"""
        return Path(self.settings.OUTPUT_DIR) / str(job.id) / f"{Path(job.source).stem}.{plan.extension}"

    def execute(
        self,
        job: "Job",
        token: CancellationToken,
        reporter: "JobReporter",
    ) -> JobOutcome:
        """Probe and plan the job's source, then run the pipeline.

        Probe and plan errors fail the job without touching the output
        directory.
        """
        with bind_job_id(job.id):
            try:
                token.raise_if_cancelled()
                descriptor = self.prober.probe(job.source)
                token.raise_if_cancelled()
                plan = self.planner.plan(descriptor, job.target_format, job.options)
            except JobCancelled:
                return self._report_cancelled(token, reporter)
            except TranscodeError as e:
                return self._report_failed(e, reporter)

            return self.run(job, plan, token, reporter)

    def run(
        self,
        job: "Job",
        plan: PipelinePlan,
        token: CancellationToken,
        reporter: "JobReporter",
    ) -> JobOutcome:
        """Execute *plan* for *job*.

        Args:
            job: The job being processed
            plan: Pipeline plan for the job's source
            token: Cancellation signal checked between units of work
            reporter: Write path for progress and the terminal outcome

        Returns:
            JobOutcome describing how the job ended
        """
        output_path = self.output_path_for(job, plan)
        partial_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)

        with bind_job_id(job.id):
            log_info(
                logger,
                f"Running {len(plan.stages)} stage(s) for {plan.source.name}",
                target_format=plan.target_format.value,
            )
            try:
                output_path.parent.mkdir(parents=True, exist_ok=True)
                self._run_pipeline(job, plan, token, reporter, partial_path)
                token.raise_if_cancelled()
                os.replace(partial_path, output_path)
            except JobCancelled:
                self._discard(partial_path)
                return self._report_cancelled(token, reporter)
            except TranscodeError as e:
                self._discard(partial_path)
                # Teardown after a cancel surfaces as a stage failure
                if token.cancelled:
                    return self._report_cancelled(token, reporter)
                return self._report_failed(e, reporter)
            except OSError as e:
                self._discard(partial_path)
                return self._report_failed(StageFailure("mux", e), reporter)
            except Exception:
                self._discard(partial_path)
                raise

            if not reporter.succeeded(output_path):
                # The job was already forced into a terminal state
                self._discard(output_path)
                return JobOutcome(state=JobState.FAILED)

            log_info(logger, f"Wrote {output_path}", output=str(output_path))
            return JobOutcome(state=JobState.SUCCEEDED, output=output_path)

    # ============================================
    # Stages
    # ============================================

    def _run_pipeline(
        self,
        job: "Job",
        plan: PipelinePlan,
        token: CancellationToken,
        reporter: "JobReporter",
        partial_path: Path,
    ) -> None:
        reader = SourceReader.open(
            plan.source,
            plan.source_size,
            self.settings.READ_CHUNK_SIZE,
            streamable=plan.streamable,
        )
        buffer = StageBuffer(
            self.settings.STAGE_BUFFER_SIZE,
            token,
            poll_interval=self.settings.STAGE_POLL_INTERVAL_SECONDS,
        )
        throttle = ProgressThrottle(self.settings.PROGRESS_INTERVAL_SECONDS)
        demux_errors: list[TranscodeError] = []

        with self.backend.open(plan, partial_path) as codec:
            unregister = token.on_abort(codec.abort)
            demux = threading.Thread(
                target=self._demux_stage,
                args=(job.id, reader, buffer, reporter, throttle, demux_errors),
                name=f"demux-{job.id}",
                daemon=True,
            )
            demux.start()
            try:
                self._encode_stage(buffer, codec, token)
                if demux_errors:
                    raise demux_errors[0]
                codec.finish(token)
            except BufferAborted:
                # The demux stage failed and recorded why
                raise demux_errors[0] if demux_errors else StageFailure("demux", "source reader stopped")
            finally:
                buffer.abort()
                demux.join()
                unregister()

    def _demux_stage(
        self,
        job_id,
        reader: SourceReader,
        buffer: StageBuffer,
        reporter: "JobReporter",
        throttle: ProgressThrottle,
        errors: list[TranscodeError],
    ) -> None:
        with bind_job_id(job_id):
            try:
                for chunk in reader:
                    SOURCE_BYTES_TOTAL.inc(len(chunk))
                    if throttle.ready():
                        reporter.progress(progress_fraction(reader.consumed, reader.total))
                    buffer.put(chunk)
                buffer.close()
            except (JobCancelled, BufferAborted):
                return
            except TranscodeError as e:
                errors.append(e)
                buffer.abort()
            except Exception as e:
                log_error(logger, "Demux stage crashed", e)
                errors.append(StageFailure("demux", e))
                buffer.abort()

    def _encode_stage(
        self,
        buffer: StageBuffer,
        codec: CodecHandle,
        token: CancellationToken,
    ) -> None:
        for chunk in buffer:
            codec.write(chunk, token)

    # ============================================
    # Outcomes
    # ============================================

    def _report_cancelled(self, token: CancellationToken, reporter: "JobReporter") -> JobOutcome:
        if token.reason is CancelReason.TIMEOUT:
            return self._report_failed(
                JobTimeout(token.message or "Job exceeded its time limit"), reporter,
            )
        reporter.cancelled()
        log_info(logger, "Job cancelled")
        return JobOutcome(state=JobState.CANCELLED)

    def _report_failed(self, error: TranscodeError, reporter: "JobReporter") -> JobOutcome:
        detail = error.to_detail()
        log_error(
            logger,
            f"Job failed: {detail.message}",
            error_kind=detail.kind.value,
            stage=detail.stage,
        )
        reporter.failed(detail)
        return JobOutcome(state=JobState.FAILED, error=detail)

    def _discard(self, path: Path) -> None:
        """Remove a partial output and its job directory if now empty."""
        with suppress(FileNotFoundError):
            path.unlink()
        with suppress(OSError):
            path.parent.rmdir()
