"""Shared fixtures: synthetic media files, a fake ffprobe and a fake codec.

ffmpeg and ffprobe are not needed to run the tests. Media files carry real
container signatures so the prober's sniffing and structural checks run
unmodified; stream metadata comes from canned ffprobe output.
"""

import struct
import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from transcoder.core.config import Settings
from transcoder.core.errors import StageFailure
from transcoder.modules.media.prober import MediaProber
from transcoder.modules.planning.models import PipelinePlan
from transcoder.modules.transcoding.cancellation import CancellationToken
from transcoder.modules.transcoding.ffmpeg import CodecBackend, CodecHandle


# ============================================
# Container builders
# ============================================


def box(kind: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", 8 + len(payload)) + kind + payload


def _moov(offsets: list[int], co64: bool = False) -> bytes:
    entry = ">Q" if co64 else ">I"
    table = struct.pack(">I", len(offsets)) + b"".join(struct.pack(entry, o) for o in offsets)
    offsets_box = box(b"co64" if co64 else b"stco", b"\x00\x00\x00\x00" + table)
    stbl = box(b"stbl", box(b"stsd", b"\x00" * 16) + offsets_box)
    trak = box(b"trak", box(b"tkhd", b"\x00" * 84) + box(b"mdia", box(b"minf", stbl)))
    return box(b"moov", box(b"mvhd", b"\x00" * 100) + trak)


def build_mp4(
    media: bytes = bytes(range(256)) * 4,
    moov_first: bool = True,
    chunks: int = 4,
    co64: bool = False,
    brand: bytes = b"isom",
) -> bytes:
    """An ISO-BMFF file whose chunk offset table points into its mdat."""
    ftyp = box(b"ftyp", brand + b"\x00\x00\x02\x00" + b"isomiso2mp41")
    chunk_size = len(media) // chunks
    moov_size = len(_moov([0] * chunks, co64))
    if moov_first:
        mdat_start = len(ftyp) + moov_size + 8
    else:
        mdat_start = len(ftyp) + 8
    moov = _moov([mdat_start + i * chunk_size for i in range(chunks)], co64)
    mdat = box(b"mdat", media)
    return ftyp + moov + mdat if moov_first else ftyp + mdat + moov


def _ebml_element(element_id: bytes, data: bytes) -> bytes:
    return element_id + bytes([0x80 | len(data)]) + data


def build_mkv(doctype: str = "matroska", payload_size: int = 64 * 1024) -> bytes:
    header = _ebml_element(b"\x42\x86", b"\x01") + _ebml_element(b"\x42\x82", doctype.encode())
    ebml = b"\x1a\x45\xdf\xa3" + bytes([0x80 | len(header)]) + header
    return ebml + b"\x18\x53\x80\x67" + bytes(i % 251 for i in range(payload_size))


def build_avi(payload_size: int = 4096) -> bytes:
    hdrl = b"hdrl" + b"\x00" * 56
    body = b"AVI " + b"LIST" + struct.pack("<I", len(hdrl)) + hdrl + b"\x00" * payload_size
    return b"RIFF" + struct.pack("<I", len(body)) + body


def build_mpegts(packets: int = 8) -> bytes:
    return (b"\x47" + b"\x1f\xff\x10" + b"\xff" * 184) * packets


class MediaFactory:
    """Writes synthetic media files under a temporary directory."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def write(self, name: str, data: bytes) -> Path:
        path = self.root / name
        path.write_bytes(data)
        return path

    def mkv(self, name: str = "clip.mkv", payload_size: int = 64 * 1024) -> Path:
        return self.write(name, build_mkv(payload_size=payload_size))

    def webm(self, name: str = "clip.webm") -> Path:
        return self.write(name, build_mkv(doctype="webm"))

    def mp4(self, name: str = "clip.mp4", **kwargs) -> Path:
        return self.write(name, build_mp4(**kwargs))

    def avi(self, name: str = "clip.avi") -> Path:
        return self.write(name, build_avi())


# ============================================
# Canned ffprobe output
# ============================================


def video_stream(index: int = 0, codec: str = "h264", width: int = 1920, height: int = 1080) -> dict:
    return {
        "index": index,
        "codec_type": "video",
        "codec_name": codec,
        "width": width,
        "height": height,
        "avg_frame_rate": "30000/1001",
        "duration": "10.000000",
        "bit_rate": "4000000",
        "disposition": {"default": 1, "attached_pic": 0},
    }


def audio_stream(index: int = 1, codec: str = "aac", channels: int = 2, sample_rate: int = 44100) -> dict:
    return {
        "index": index,
        "codec_type": "audio",
        "codec_name": codec,
        "channels": channels,
        "sample_rate": str(sample_rate),
        "duration": "10.000000",
        "bit_rate": "128000",
        "tags": {"language": "eng"},
    }


def subtitle_stream(index: int = 2, codec: str = "subrip") -> dict:
    return {"index": index, "codec_type": "subtitle", "codec_name": codec}


def ffprobe_output(*streams: dict, duration: str = "10.000000") -> dict:
    return {
        "streams": list(streams),
        "format": {"duration": duration, "bit_rate": "4128000", "format_name": "matroska,webm"},
    }


class StaticInspector:
    """Stands in for ffprobe by returning the same output for every file."""

    def __init__(self, output: dict):
        self.output = output
        self.calls: list[Path] = []

    def __call__(self, path: Path) -> dict:
        self.calls.append(path)
        return self.output


# ============================================
# Fake codec
# ============================================


class FakeCodec(CodecHandle):
    """Copies the byte stream it is fed into the output file."""

    def __init__(self, backend: "FakeCodecBackend", output_path: Path):
        self.backend = backend
        self.output_path = output_path
        self.written = 0
        self.aborted = False
        self.closed = False
        self._fh = open(output_path, "wb")

    def _wait_for_gate(self, token: CancellationToken) -> None:
        gate = self.backend.gate
        while gate is not None and not gate.wait(0.01):
            if self.aborted:
                raise StageFailure("encode", "codec aborted")
            if not self.backend.ignore_cancel:
                token.raise_if_cancelled()

    def write(self, chunk: bytes, token: CancellationToken) -> None:
        self.backend.writes_started.set()
        self._wait_for_gate(token)
        if not self.backend.ignore_cancel:
            token.raise_if_cancelled()
        if self.backend.write_delay:
            time.sleep(self.backend.write_delay)
        fail_after = self.backend.fail_after_bytes
        if fail_after is not None and self.written + len(chunk) > fail_after:
            raise StageFailure(self.backend.fail_stage, "injected failure")
        self._fh.write(chunk)
        self.written += len(chunk)

    def finish(self, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        if self.backend.fail_on_finish:
            raise StageFailure("mux", "could not write trailer")
        self._fh.flush()

    def abort(self) -> None:
        self.aborted = True

    def close(self) -> None:
        self.closed = True
        self._fh.close()


class FakeCodecBackend(CodecBackend):
    """Codec backend with knobs for slow, stuck and failing codecs."""

    def __init__(self):
        self.opened: list[FakeCodec] = []
        self.plans: list[PipelinePlan] = []
        self.gate: Optional[threading.Event] = None
        self.ignore_cancel = False
        self.write_delay = 0.0
        self.fail_after_bytes: Optional[int] = None
        self.fail_stage = "encode"
        self.fail_on_finish = False
        self.writes_started = threading.Event()

    def open(self, plan: PipelinePlan, output_path: Path) -> FakeCodec:
        codec = FakeCodec(self, output_path)
        self.opened.append(codec)
        self.plans.append(plan)
        return codec


# ============================================
# Fixtures
# ============================================


class ContainerBuilders:
    box = staticmethod(box)
    moov = staticmethod(_moov)
    mp4 = staticmethod(build_mp4)
    mkv = staticmethod(build_mkv)
    avi = staticmethod(build_avi)
    mpegts = staticmethod(build_mpegts)


class ProbeData:
    video = staticmethod(video_stream)
    audio = staticmethod(audio_stream)
    subtitle = staticmethod(subtitle_stream)
    output = staticmethod(ffprobe_output)
    inspector = StaticInspector


@pytest.fixture(scope="session")
def containers() -> type[ContainerBuilders]:
    """Builders for synthetic container bytes."""
    return ContainerBuilders


@pytest.fixture(scope="session")
def probe_data() -> type[ProbeData]:
    """Builders for canned ffprobe output."""
    return ProbeData


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        OUTPUT_DIR=str(tmp_path / "output"),
        MAX_CONCURRENT_JOBS=2,
        READ_CHUNK_SIZE=4096,
        STAGE_BUFFER_SIZE=2,
        STAGE_POLL_INTERVAL_SECONDS=0.01,
        PROGRESS_INTERVAL_SECONDS=0.0,
        MONITOR_INTERVAL_SECONDS=0.02,
        CANCEL_GRACE_SECONDS=1.0,
        JOB_STORE_BACKEND="memory",
        LOG_JSON=False,
    )


@pytest.fixture
def media(tmp_path: Path) -> MediaFactory:
    return MediaFactory(tmp_path / "sources")


@pytest.fixture
def av_inspector() -> StaticInspector:
    """ffprobe output for an h264 video with aac audio."""
    return StaticInspector(ffprobe_output(video_stream(), audio_stream()))


@pytest.fixture
def av_prober(av_inspector: StaticInspector) -> MediaProber:
    return MediaProber(inspector=av_inspector)


@pytest.fixture
def codec_backend() -> FakeCodecBackend:
    return FakeCodecBackend()


def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(scope="session")
def wait_until():
    """Poll a predicate until it returns true or the timeout elapses."""
    return _wait_until
