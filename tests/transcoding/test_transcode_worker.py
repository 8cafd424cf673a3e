"""Tests for the transcode worker.

A fake codec stands in for ffmpeg and copies its input to the partial
output, so a successful run leaves the (possibly relocated) source bytes at
the output path.
"""

import threading
from pathlib import Path

import pytest

from transcoder.core.errors import ErrorKind, JobTimeout
from transcoder.modules.job.models import Job, JobState
from transcoder.modules.job.reporter import JobReporter
from transcoder.modules.job.store import InMemoryJobStore
from transcoder.modules.media.prober import MediaProber
from transcoder.modules.planning.models import TargetFormat
from transcoder.modules.planning.planner import PipelinePlanner
from transcoder.modules.transcoding.cancellation import CancellationToken, CancelReason
from transcoder.modules.transcoding.worker import TranscodeWorker


class CountingPlanner(PipelinePlanner):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def plan(self, *args, **kwargs):
        self.calls += 1
        return super().plan(*args, **kwargs)


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def worker(test_settings, av_prober, codec_backend) -> TranscodeWorker:
    return TranscodeWorker(test_settings, prober=av_prober, backend=codec_backend)


def start_job(store: InMemoryJobStore, source: Path, target: TargetFormat = TargetFormat.MP4) -> Job:
    job = store.add(Job(sequence=len(store), source=source, target_format=target))
    return store.update(job.id, lambda j: j.dispatched("slot-0"))


def job_files(settings, job: Job) -> list[Path]:
    job_dir = Path(settings.OUTPUT_DIR) / str(job.id)
    return sorted(job_dir.iterdir()) if job_dir.exists() else []


class TestSuccessfulRun:
    """Tests for jobs that complete."""

    def test_output_is_written_and_job_succeeds(self, test_settings, store, worker, media) -> None:
        source = media.mkv()
        job = start_job(store, source)

        outcome = worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        expected = Path(test_settings.OUTPUT_DIR) / str(job.id) / "clip.mp4"
        assert outcome.state is JobState.SUCCEEDED
        assert outcome.output == expected
        assert expected.read_bytes() == source.read_bytes()
        assert job_files(test_settings, job) == [expected]

        stored = store.get(job.id)
        assert stored.state is JobState.SUCCEEDED
        assert stored.progress == 1.0
        assert stored.output == expected

    def test_progress_is_monotonic_and_below_one_until_success(self, store, worker, media) -> None:
        source = media.mkv(payload_size=128 * 1024)
        job = start_job(store, source)
        seen = []
        store.subscribe(lambda j: seen.append((j.state, j.progress)) if j.id == job.id else None)

        worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        progress = [p for _, p in seen]
        assert len(progress) > 2
        assert progress == sorted(progress)
        assert all(p < 1.0 for state, p in seen if state is JobState.RUNNING)
        assert seen[-1] == (JobState.SUCCEEDED, 1.0)

    def test_unstreamable_mp4_is_fed_with_moov_first(self, store, worker, media, containers) -> None:
        media_bytes = bytes(range(256)) * 64
        source = media.mp4(media=media_bytes, moov_first=False)
        job = start_job(store, source, TargetFormat.MKV)

        outcome = worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        assert outcome.state is JobState.SUCCEEDED
        assert outcome.output.name == "clip.mkv"
        assert outcome.output.read_bytes() == containers.mp4(media=media_bytes, moov_first=True)

    def test_slow_codec_does_not_let_demux_run_ahead(
        self, test_settings, store, av_prober, codec_backend, media,
    ) -> None:
        codec_backend.write_delay = 0.005
        worker = TranscodeWorker(test_settings, prober=av_prober, backend=codec_backend)
        job = start_job(store, media.mkv())
        source_size = job.source.stat().st_size
        lead = []

        class LeadTrackingReporter(JobReporter):
            def progress(self, fraction):
                lead.append(fraction * source_size - codec_backend.opened[-1].written)
                super().progress(fraction)

        worker.execute(job, CancellationToken(), LeadTrackingReporter(store, job.id))

        # Reader chunk, buffered chunks and the chunk being written
        limit = test_settings.READ_CHUNK_SIZE * (test_settings.STAGE_BUFFER_SIZE + 2)
        assert lead
        assert max(lead) <= limit


class TestFailedRun:
    """Tests for jobs that fail."""

    def test_unsupported_container_fails_before_planning(self, test_settings, store, av_prober, codec_backend, media) -> None:
        planner = CountingPlanner()
        worker = TranscodeWorker(test_settings, prober=av_prober, planner=planner, backend=codec_backend)
        job = start_job(store, media.write("clip.mkv", b"plain text pretending to be video"))

        outcome = worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        assert outcome.state is JobState.FAILED
        assert outcome.error.kind is ErrorKind.UNSUPPORTED_CONTAINER
        assert planner.calls == 0
        assert codec_backend.opened == []
        assert store.get(job.id).error.kind is ErrorKind.UNSUPPORTED_CONTAINER

    def test_incompatible_format_fails_before_any_stage(self, test_settings, store, codec_backend, media, probe_data) -> None:
        inspector = probe_data.inspector(probe_data.output(probe_data.subtitle(index=0, codec="dvd_subtitle")))
        worker = TranscodeWorker(test_settings, prober=MediaProber(inspector=inspector), backend=codec_backend)
        job = start_job(store, media.mkv(), TargetFormat.AVI)

        outcome = worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        assert outcome.error.kind is ErrorKind.INCOMPATIBLE_FORMAT
        assert codec_backend.opened == []
        assert not (Path(test_settings.OUTPUT_DIR) / str(job.id)).exists()

    def test_codec_failure_discards_partial_output(self, test_settings, store, worker, codec_backend, media) -> None:
        codec_backend.fail_after_bytes = 3 * 4096
        job = start_job(store, media.mkv())

        outcome = worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        assert outcome.state is JobState.FAILED
        assert outcome.error.kind is ErrorKind.STAGE_FAILURE
        assert outcome.error.stage == "encode"
        assert outcome.error.cause == "injected failure"
        assert codec_backend.opened[0].closed
        assert not (Path(test_settings.OUTPUT_DIR) / str(job.id)).exists()

        stored = store.get(job.id)
        assert stored.state is JobState.FAILED
        assert stored.output is None
        assert stored.progress < 1.0

    def test_mux_failure_on_finish(self, test_settings, store, worker, codec_backend, media) -> None:
        codec_backend.fail_on_finish = True
        job = start_job(store, media.mkv())

        outcome = worker.execute(job, CancellationToken(), JobReporter(store, job.id))

        assert outcome.error.stage == "mux"
        assert job_files(test_settings, job) == []

    def test_source_shrinking_during_run_is_a_demux_failure(self, test_settings, store, worker, av_prober, media) -> None:
        source = media.mkv()
        job = start_job(store, source)
        plan = worker.planner.plan(av_prober.probe(source), job.target_format)
        plan = plan.model_copy(update={"source_size": plan.source_size + 10_000})

        outcome = worker.run(job, plan, CancellationToken(), JobReporter(store, job.id))

        assert outcome.error.stage == "demux"
        assert "early" in outcome.error.cause
        assert job_files(test_settings, job) == []


class TestCancelledRun:
    """Tests for cancellation and timeouts inside the worker."""

    def _run_blocked(self, worker, store, job, token, codec_backend):
        codec_backend.gate = threading.Event()
        result = {}
        thread = threading.Thread(
            target=lambda: result.setdefault(
                "outcome", worker.execute(job, token, JobReporter(store, job.id)),
            ),
            daemon=True,
        )
        thread.start()
        assert codec_backend.writes_started.wait(5.0)
        return thread, result

    def test_cancel_mid_stream(self, test_settings, store, worker, codec_backend, media) -> None:
        job = start_job(store, media.mkv())
        token = CancellationToken()
        thread, result = self._run_blocked(worker, store, job, token, codec_backend)

        token.cancel(CancelReason.USER)
        thread.join(5.0)

        assert not thread.is_alive()
        assert result["outcome"].state is JobState.CANCELLED
        stored = store.get(job.id)
        assert stored.state is JobState.CANCELLED
        assert stored.progress == 0.0
        assert codec_backend.opened[0].closed
        assert not (Path(test_settings.OUTPUT_DIR) / str(job.id)).exists()

    def test_timeout_cancellation_fails_with_timeout(self, store, worker, codec_backend, media) -> None:
        job = start_job(store, media.mkv())
        token = CancellationToken()
        thread, result = self._run_blocked(worker, store, job, token, codec_backend)

        token.cancel(CancelReason.TIMEOUT, "Job exceeded its time limit of 60s")
        thread.join(5.0)

        outcome = result["outcome"]
        assert outcome.state is JobState.FAILED
        assert outcome.error.kind is ErrorKind.TIMEOUT
        assert outcome.error.message == "Job exceeded its time limit of 60s"

    def test_cancel_before_start(self, store, worker, codec_backend, media) -> None:
        job = start_job(store, media.mkv())
        token = CancellationToken()
        token.cancel()

        outcome = worker.execute(job, token, JobReporter(store, job.id))

        assert outcome.state is JobState.CANCELLED
        assert codec_backend.opened == []

    def test_late_success_after_forced_failure_is_discarded(self, test_settings, store, worker, codec_backend, media) -> None:
        job = start_job(store, media.mkv())
        token = CancellationToken()
        thread, result = self._run_blocked(worker, store, job, token, codec_backend)

        forced = JobTimeout("Job did not stop within 1s of being asked to").to_detail()
        store.update(job.id, lambda j: j.failed(forced))
        codec_backend.gate.set()
        thread.join(5.0)

        assert result["outcome"].state is JobState.FAILED
        assert store.get(job.id).error == forced
        assert job_files(test_settings, job) == []
