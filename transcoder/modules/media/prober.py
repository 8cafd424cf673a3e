"""Media Prober.

Identifies a source container from its signature, validates the header and
enumerates the elementary streams the engine can carry.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from transcoder.core.config import Settings
from transcoder.core.config import settings as default_settings
from transcoder.core.errors import NoDecodableStreams, StageFailure, UnsupportedContainer
from transcoder.core.logging import log_info
from transcoder.modules.media.ffprobe import FFprobe
from transcoder.modules.media.models import (
    MediaDescriptor,
    MediaKind,
    StreamDescriptor,
)
from transcoder.modules.media.signatures import HEADER_PROBE_SIZE, check_structure, sniff_container

logger = logging.getLogger(__name__)

# ffprobe reports stream information as a dict; tests substitute their own
Inspector = Callable[[Path], dict]

_CODEC_TYPES = {
    "video": MediaKind.VIDEO,
    "audio": MediaKind.AUDIO,
    "subtitle": MediaKind.SUBTITLE,
}


def _to_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result >= 0 else None


def _to_int(value: Any) -> Optional[int]:
    try:
        result = int(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


def _parse_frame_rate(value: Any) -> Optional[float]:
    """Parse an ffprobe rational such as "30000/1001"."""
    if not isinstance(value, str) or "/" not in value:
        return _to_float(value) or None
    num, _, den = value.partition("/")
    numerator, denominator = _to_float(num), _to_float(den)
    if not numerator or not denominator:
        return None
    return numerator / denominator


def parse_streams(raw_streams: list[dict]) -> tuple[StreamDescriptor, ...]:
    """Convert ffprobe stream entries into StreamDescriptors.

    Streams of other kinds (data, attachments), cover art pictures and
    streams without a known codec are skipped.
    """
    streams = []
    for position, raw in enumerate(raw_streams):
        kind = _CODEC_TYPES.get(raw.get("codec_type"))
        codec = raw.get("codec_name")
        if kind is None or not codec:
            continue
        if raw.get("disposition", {}).get("attached_pic") == 1:
            continue

        index = raw.get("index", position)
        tags = raw.get("tags") or {}
        streams.append(StreamDescriptor(
            index=index,
            kind=kind,
            codec=codec,
            duration=_to_float(raw.get("duration")),
            bit_rate=_to_int(raw.get("bit_rate")),
            width=_to_int(raw.get("width")) if kind is MediaKind.VIDEO else None,
            height=_to_int(raw.get("height")) if kind is MediaKind.VIDEO else None,
            frame_rate=_parse_frame_rate(raw.get("avg_frame_rate") or raw.get("r_frame_rate"))
            if kind is MediaKind.VIDEO else None,
            sample_rate=_to_int(raw.get("sample_rate")) if kind is MediaKind.AUDIO else None,
            channels=_to_int(raw.get("channels")) if kind is MediaKind.AUDIO else None,
            language=tags.get("language"),
        ))
    return tuple(streams)


class MediaProber:
    """Produces a MediaDescriptor for a source file."""

    def __init__(self, inspector: Optional[Inspector] = None, ffprobe_path: str = "ffprobe"):
        """Initialize the prober.

        Args:
            inspector: Callable returning ffprobe-style JSON for a path.
                Defaults to running the ffprobe binary.
            ffprobe_path: Path to ffprobe binary, used when no inspector is given
        """
        self._inspect = inspector or FFprobe(ffprobe_path).inspect

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaProber":
        return cls(ffprobe_path=settings.FFPROBE_PATH)

    def probe(self, source: Union[str, Path]) -> MediaDescriptor:
        """Identify the container and its streams.

        Args:
            source: Path to the source media file

        Returns:
            MediaDescriptor for the source

        Raises:
            UnsupportedContainer: The signature matches no supported container
            CorruptHeader: The header is malformed or inconsistent
            NoDecodableStreams: No audio, video or subtitle stream was found
            StageFailure: The file could not be read (stage "probe")
        """
        source = Path(source)
        try:
            size = source.stat().st_size
            with source.open("rb") as fh:
                head = fh.read(HEADER_PROBE_SIZE)
                container = sniff_container(head)
                if container is None:
                    raise UnsupportedContainer(
                        f"Unrecognized container signature in {source.name}"
                    )
                streamable = check_structure(fh, container, size, head)
        except OSError as e:
            raise StageFailure("probe", e) from e

        raw = self._inspect(source)
        streams = parse_streams(raw.get("streams") or [])
        if not streams:
            raise NoDecodableStreams(
                f"No audio, video or subtitle streams found in {source.name}"
            )

        fmt = raw.get("format") or {}
        descriptor = MediaDescriptor(
            source=source,
            size_bytes=size,
            container=container,
            streams=streams,
            duration=_to_float(fmt.get("duration")),
            bit_rate=_to_int(fmt.get("bit_rate")),
            streamable=streamable,
        )

        log_info(
            logger,
            f"Probed {source.name}: {container.value} with {len(streams)} stream(s)",
            container=container.value,
            stream_count=len(streams),
            streamable=streamable,
        )
        return descriptor


def probe(source: Union[str, Path], settings: Optional[Settings] = None) -> MediaDescriptor:
    """Probe *source* with the ffprobe configured in *settings*."""
    return MediaProber.from_settings(settings or default_settings).probe(source)

