"""Tests for the job API and the engine facade behind it.

The engine runs the real scheduler and worker; only ffprobe and ffmpeg are
replaced by the fakes from conftest.
"""

import logging
import threading
import time
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from transcoder.core.errors import ErrorKind, JobNotFound
from transcoder.main import create_app
from transcoder.modules.job.models import JobState
from transcoder.modules.job.repository import SqlJobStore
from transcoder.modules.job.schemas import JobFilter
from transcoder.modules.job.service import TranscodeEngine, build_store
from transcoder.modules.job.store import InMemoryJobStore
from transcoder.modules.planning.models import TargetFormat

TERMINAL = {"succeeded", "failed", "cancelled"}


@pytest.fixture(autouse=True)
def restore_root_logging():
    """create_app installs its own handlers on the root logger."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def engine(test_settings, av_prober, codec_backend) -> TranscodeEngine:
    return TranscodeEngine(test_settings, prober=av_prober, backend=codec_backend)


@pytest.fixture
def client(test_settings, engine, codec_backend):
    app = create_app(test_settings, engine)
    with TestClient(app) as client:
        yield client
        if codec_backend.gate is not None:
            codec_backend.gate.set()


def poll(client: TestClient, job_id: str, states=TERMINAL, timeout: float = 5.0) -> dict:
    """Fetch the job until it reaches one of *states* or *timeout* passes."""
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/v1/jobs/{job_id}").json()
        if job["state"] in states or time.monotonic() >= deadline:
            return job
        time.sleep(0.02)


class TestJobApi:
    """Tests for the HTTP surface."""

    def test_submit_and_follow_to_success(self, client, media) -> None:
        source = media.mkv()

        response = client.post(
            "/api/v1/jobs",
            json={"source_path": str(source), "target_format": "webm"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["state"] in ("queued", "running", "succeeded")
        uuid.UUID(body["job_id"])

        job = poll(client, body["job_id"])
        assert job["state"] == "succeeded"
        assert job["progress"] == 1.0
        assert job["target_format"] == "webm"
        assert job["source_path"] == str(source)
        assert Path(job["output_path"]).name == "clip.webm"
        assert Path(job["output_path"]).is_file()
        assert job["error_kind"] is None

    def test_submit_with_options(self, client, media, codec_backend) -> None:
        response = client.post(
            "/api/v1/jobs",
            json={
                "source_path": str(media.mkv()),
                "target_format": "mp4",
                "options": {"resolution": "720p", "video_bitrate": 2500000},
            },
        )
        job = poll(client, response.json()["job_id"])

        assert job["state"] == "succeeded"
        video = codec_backend.plans[0].streams[0]
        assert video.width == 1280 and video.height == 720
        assert video.bitrate == 2_500_000

    def test_missing_source_is_rejected(self, client, tmp_path) -> None:
        response = client.post("/api/v1/jobs", json={"source_path": str(tmp_path / "nope.mkv")})

        assert response.status_code == 422
        assert "not found" in response.json()["detail"]
        assert client.get("/api/v1/jobs").json()["total"] == 0

    def test_unknown_format_is_rejected(self, client, media) -> None:
        response = client.post(
            "/api/v1/jobs",
            json={"source_path": str(media.mkv()), "target_format": "gif"},
        )
        assert response.status_code == 422

    def test_unknown_job(self, client) -> None:
        assert client.get(f"/api/v1/jobs/{uuid.uuid4()}").status_code == 404
        assert client.post(f"/api/v1/jobs/{uuid.uuid4()}/cancel").status_code == 404

    def test_malformed_job_id(self, client) -> None:
        assert client.get("/api/v1/jobs/not-a-uuid").status_code == 422

    def test_cancel_running_job(self, client, media, codec_backend) -> None:
        codec_backend.gate = threading.Event()
        job_id = client.post("/api/v1/jobs", json={"source_path": str(media.mkv())}).json()["job_id"]
        assert codec_backend.writes_started.wait(5.0)

        response = client.post(f"/api/v1/jobs/{job_id}/cancel")

        assert response.status_code == 202
        assert response.json()["state"] in ("running", "cancelled")
        job = poll(client, job_id)
        assert job["state"] == "cancelled"
        assert job["progress"] == 0.0
        assert job["output_path"] is None

    def test_unsupported_source_fails_with_kind(self, client, media) -> None:
        source = media.write("notes.mkv", b"these are meeting notes, not a video")
        job_id = client.post("/api/v1/jobs", json={"source_path": str(source)}).json()["job_id"]

        job = poll(client, job_id)

        assert job["state"] == "failed"
        assert job["error_kind"] == "unsupported_container"
        assert job["error_detail"]

    def test_list_with_filters(self, client, media) -> None:
        ids = [
            client.post(
                "/api/v1/jobs",
                json={"source_path": str(media.mkv(f"clip{i}.mkv")), "target_format": fmt},
            ).json()["job_id"]
            for i, fmt in enumerate(["mp4", "mkv", "mp4"])
        ]
        for job_id in ids:
            poll(client, job_id)

        everything = client.get("/api/v1/jobs").json()
        mp4_only = client.get("/api/v1/jobs", params={"target_format": "mp4"}).json()
        failed = client.get("/api/v1/jobs", params={"state": "failed"}).json()

        assert [job["job_id"] for job in everything["jobs"]] == ids
        assert [job["job_id"] for job in mp4_only["jobs"]] == [ids[0], ids[2]]
        assert failed == {"jobs": [], "total": 0}

    def test_health_reports_slot_usage(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "running": 0, "queued": 0}

    def test_metrics_endpoint(self, client, media) -> None:
        job_id = client.post("/api/v1/jobs", json={"source_path": str(media.mkv())}).json()["job_id"]
        poll(client, job_id)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "transcoder_jobs_submitted_total" in response.text
        assert "transcoder_jobs_finished_total" in response.text


class TestTranscodeEngine:
    """Tests for the engine facade used without HTTP."""

    def test_context_manager_runs_a_job(self, engine, media) -> None:
        seen = []
        unsubscribe = engine.subscribe(lambda job: seen.append(job.state))

        with engine:
            job_id = engine.submit(media.mkv(), TargetFormat.MKV)
            view = engine.wait(job_id, timeout=5.0)
        engine.events.join()
        unsubscribe()

        assert view.state is JobState.SUCCEEDED
        assert seen[0] is JobState.QUEUED
        assert seen[-1] is JobState.SUCCEEDED
        assert Path(view.output_path).parent.name == str(job_id)

    def test_subscribers_run_off_the_updating_thread(self, engine, media) -> None:
        threads = set()
        engine.subscribe(lambda job: threads.add(threading.current_thread().name))

        with engine:
            engine.wait(engine.submit(media.mkv()), timeout=5.0)
            engine.events.join()

        assert threads == {engine.events.thread_name}

    def test_subscriber_may_cancel_through_the_engine(self, engine, media, codec_backend) -> None:
        codec_backend.gate = threading.Event()
        seen = []

        def on_change(job) -> None:
            seen.append(job.state)
            if job.state is JobState.RUNNING and job.progress > 0.0:
                engine.cancel(job.id)

        engine.subscribe(on_change)
        with engine:
            job_id = engine.submit(media.mkv())
            assert codec_backend.writes_started.wait(5.0)
            engine.store.update(job_id, lambda j: j if j.is_terminal else j.with_progress(0.5))
            view = engine.wait(job_id, timeout=5.0)
            engine.events.join()

        assert view.state is JobState.CANCELLED
        assert seen[-1] is JobState.CANCELLED

    def test_list_and_query(self, engine, media) -> None:
        with engine:
            first = engine.submit(media.mkv("a.mkv"))
            second = engine.submit(media.mkv("b.mkv"), "webm")
            engine.wait(first, timeout=5.0)
            engine.wait(second, timeout=5.0)

            webm = engine.list_jobs(JobFilter(target_format=TargetFormat.WEBM))
            assert [view.job_id for view in webm] == [second]
            assert engine.query(first).state is JobState.SUCCEEDED

    def test_query_unknown_job(self, engine) -> None:
        with pytest.raises(JobNotFound):
            engine.query(uuid.uuid4())

    def test_cancel_queued_job_before_start(self, engine, media) -> None:
        job_id = engine.submit(media.mkv())

        view = engine.cancel(job_id)

        assert view.state is JobState.CANCELLED
        assert view.error_kind is None

    def test_failed_job_view_carries_stage(self, engine, media, codec_backend) -> None:
        codec_backend.fail_after_bytes = 4096
        with engine:
            view = engine.wait(engine.submit(media.mkv()), timeout=5.0)

        assert view.state is JobState.FAILED
        assert view.error_kind is ErrorKind.STAGE_FAILURE
        assert view.error_stage == "encode"

    def test_store_backend_selection(self, test_settings, tmp_path) -> None:
        assert isinstance(build_store(test_settings), InMemoryJobStore)

        sql_settings = test_settings.model_copy(update={
            "JOB_STORE_BACKEND": "sql",
            "DATABASE_URL": f"sqlite:///{tmp_path / 'jobs.db'}",
        })
        assert isinstance(build_store(sql_settings), SqlJobStore)
