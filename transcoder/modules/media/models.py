"""Probe result models.

MediaDescriptor is immutable once produced; the worker owns it for the
duration of one job and discards it afterwards.
"""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ContainerKind(str, Enum):
    """Container formats recognised from their file signature."""
    MP4 = "mp4"
    MOV = "mov"
    AVI = "avi"
    MKV = "mkv"
    WEBM = "webm"
    MPEG_TS = "mpegts"
    FLV = "flv"
    OGG = "ogg"

    @property
    def demuxer(self) -> str:
        """ffmpeg demuxer name used when reading this container from a pipe."""
        return CONTAINER_DEMUXERS[self]

    @property
    def is_iso_bmff(self) -> bool:
        return self in (ContainerKind.MP4, ContainerKind.MOV)


CONTAINER_DEMUXERS = {
    ContainerKind.MP4: "mov",
    ContainerKind.MOV: "mov",
    ContainerKind.AVI: "avi",
    ContainerKind.MKV: "matroska",
    ContainerKind.WEBM: "matroska",
    ContainerKind.MPEG_TS: "mpegts",
    ContainerKind.FLV: "flv",
    ContainerKind.OGG: "ogg",
}


class MediaKind(str, Enum):
    """Kinds of elementary streams the engine can carry."""
    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLE = "subtitle"


class StreamDescriptor(BaseModel):
    """One elementary stream inside a container."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Stream index inside the source container")
    kind: MediaKind
    codec: str
    duration: Optional[float] = Field(None, ge=0, description="Seconds")
    bit_rate: Optional[int] = Field(None, ge=0, description="bps")
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)
    frame_rate: Optional[float] = Field(None, gt=0)
    sample_rate: Optional[int] = Field(None, gt=0)
    channels: Optional[int] = Field(None, gt=0)
    language: Optional[str] = None


class MediaDescriptor(BaseModel):
    """Container and stream metadata needed to plan a conversion."""
    model_config = ConfigDict(frozen=True)

    source: Path
    size_bytes: int = Field(..., ge=0)
    container: ContainerKind
    streams: tuple[StreamDescriptor, ...]
    duration: Optional[float] = Field(None, ge=0)
    bit_rate: Optional[int] = Field(None, ge=0)
    streamable: bool = Field(
        True,
        description="False when an MP4/MOV index sits after the media data",
    )

    def streams_of(self, kind: MediaKind) -> tuple[StreamDescriptor, ...]:
        return tuple(s for s in self.streams if s.kind is kind)

    @property
    def primary_video(self) -> Optional[StreamDescriptor]:
        videos = self.streams_of(MediaKind.VIDEO)
        return videos[0] if videos else None
