"""Pipeline plan models.

A PipelinePlan is a pure function of (MediaDescriptor, target format,
options). Plans are frozen and compare structurally, so two plans for the
same inputs are equal.
"""

from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from transcoder.modules.media.models import ContainerKind, MediaKind


class TargetFormat(str, Enum):
    """Supported output container formats."""
    MP4 = "mp4"
    AVI = "avi"
    MOV = "mov"
    WEBM = "webm"
    MKV = "mkv"


DEFAULT_TARGET_FORMAT = TargetFormat.MP4


class Resolution(str, Enum):
    """Explicit output resolutions a caller may request."""
    RES_720P = "720p"
    RES_1080P = "1080p"
    RES_2K = "2k"
    RES_4K = "4k"


# Resolution dimensions mapping
RESOLUTION_DIMENSIONS = {
    Resolution.RES_720P: (1280, 720),
    Resolution.RES_1080P: (1920, 1080),
    Resolution.RES_2K: (2560, 1440),
    Resolution.RES_4K: (3840, 2160),
}


class ResolutionTier(str, Enum):
    """Source resolution buckets used to pick default bitrates."""
    SD = "sd"
    HD = "hd"
    FHD = "fhd"
    QHD = "qhd"
    UHD = "uhd"

    @classmethod
    def from_height(cls, height: Optional[int]) -> "ResolutionTier":
        if height is None or height < 720:
            return cls.SD
        if height < 1080:
            return cls.HD
        if height < 1440:
            return cls.FHD
        if height < 2160:
            return cls.QHD
        return cls.UHD


class StageKind(str, Enum):
    """Pipeline stage kinds, in execution order."""
    DEMUX = "demux"
    DECODE = "decode"
    FILTER = "filter"
    ENCODE = "encode"
    MUX = "mux"


ParamValue = Union[str, int, float, bool]


class StageDescriptor(BaseModel):
    """One stage of the plan, optionally bound to a single stream."""
    model_config = ConfigDict(frozen=True)

    kind: StageKind
    stream_index: Optional[int] = Field(
        None, description="Output stream index for per-stream stages"
    )
    params: dict[str, ParamValue] = Field(default_factory=dict)


class StreamMapping(BaseModel):
    """How one source stream is carried into the output."""
    model_config = ConfigDict(frozen=True)

    input_index: int = Field(..., ge=0)
    output_index: int = Field(..., ge=0)
    kind: MediaKind
    source_codec: str
    target_codec: str
    encoder: str = Field(..., description='ffmpeg encoder name, or "copy"')
    bitrate: Optional[int] = Field(None, gt=0, description="bps")
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)
    sample_rate: Optional[int] = Field(None, gt=0)
    channels: Optional[int] = Field(None, gt=0)
    resize: bool = False

    @property
    def is_copy(self) -> bool:
        return self.encoder == "copy"


class DroppedStream(BaseModel):
    """A source stream the target container cannot carry."""
    model_config = ConfigDict(frozen=True)

    input_index: int
    kind: MediaKind
    codec: str
    reason: str


class TranscodeOptions(BaseModel):
    """Caller overrides for a conversion."""
    model_config = ConfigDict(frozen=True)

    video_bitrate: Optional[int] = Field(None, gt=0, description="Target video bitrate in bps")
    audio_bitrate: Optional[int] = Field(None, gt=0, description="Target audio bitrate in bps")
    resolution: Optional[Resolution] = Field(None, description="Explicit output resolution")
    allow_stream_copy: bool = Field(
        True, description="Pass compatible streams through without re-encoding"
    )


class PipelinePlan(BaseModel):
    """Ordered stages converting one source into one target format."""
    model_config = ConfigDict(frozen=True)

    source: Path
    source_size: int = Field(..., ge=0)
    container: ContainerKind
    streamable: bool = True
    target_format: TargetFormat
    muxer: str
    extension: str
    stages: tuple[StageDescriptor, ...]
    streams: tuple[StreamMapping, ...]
    dropped: tuple[DroppedStream, ...] = ()

    @property
    def stage_kinds(self) -> tuple[StageKind, ...]:
        return tuple(stage.kind for stage in self.stages)

    def streams_of(self, kind: MediaKind) -> tuple[StreamMapping, ...]:
        return tuple(m for m in self.streams if m.kind is kind)
