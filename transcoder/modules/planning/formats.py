"""Target format profiles and default encoding parameters."""

from dataclasses import dataclass
from typing import Mapping, Optional

from transcoder.modules.planning.models import ResolutionTier, TargetFormat


@dataclass(frozen=True)
class CodecChoice:
    """What a container accepts for one stream kind and what it encodes to."""
    codec: str
    encoder: str
    accepts: frozenset[str]
    max_channels: Optional[int] = None
    sample_rate: Optional[int] = None


@dataclass(frozen=True)
class FormatProfile:
    """Capabilities of one target container."""
    format: TargetFormat
    muxer: str
    extension: str
    video: CodecChoice
    audio: CodecChoice
    subtitle: Optional[CodecChoice] = None
    max_height: Optional[int] = None
    muxer_flags: tuple[str, ...] = ()


# Subtitle codecs that can be converted between text formats
TEXT_SUBTITLE_CODECS = frozenset({"subrip", "srt", "ass", "ssa", "webvtt", "mov_text", "text"})

_H264 = frozenset({"h264", "hevc"})

FORMAT_PROFILES = {
    TargetFormat.MP4: FormatProfile(
        format=TargetFormat.MP4,
        muxer="mp4",
        extension="mp4",
        video=CodecChoice("h264", "libx264", _H264 | {"av1", "mpeg4"}),
        audio=CodecChoice("aac", "aac", frozenset({"aac", "mp3", "ac3", "alac"})),
        subtitle=CodecChoice("mov_text", "mov_text", frozenset({"mov_text"})),
        muxer_flags=("-movflags", "+faststart"),
    ),
    TargetFormat.MOV: FormatProfile(
        format=TargetFormat.MOV,
        muxer="mov",
        extension="mov",
        video=CodecChoice("h264", "libx264", _H264 | {"prores", "mpeg4", "mjpeg"}),
        audio=CodecChoice(
            "aac", "aac",
            frozenset({"aac", "alac", "mp3", "pcm_s16le", "pcm_s24le", "pcm_s16be"}),
        ),
        subtitle=CodecChoice("mov_text", "mov_text", frozenset({"mov_text"})),
        muxer_flags=("-movflags", "+faststart"),
    ),
    TargetFormat.MKV: FormatProfile(
        format=TargetFormat.MKV,
        muxer="matroska",
        extension="mkv",
        video=CodecChoice(
            "h264", "libx264",
            _H264 | {"vp8", "vp9", "av1", "mpeg4", "mpeg2video", "prores", "mjpeg"},
        ),
        audio=CodecChoice(
            "aac", "aac",
            frozenset({
                "aac", "mp3", "ac3", "eac3", "dts", "opus", "vorbis", "flac",
                "alac", "pcm_s16le", "pcm_s24le",
            }),
        ),
        subtitle=CodecChoice(
            "subrip", "srt",
            frozenset({"subrip", "ass", "ssa", "webvtt", "dvd_subtitle", "hdmv_pgs_subtitle"}),
        ),
    ),
    TargetFormat.WEBM: FormatProfile(
        format=TargetFormat.WEBM,
        muxer="webm",
        extension="webm",
        video=CodecChoice("vp9", "libvpx-vp9", frozenset({"vp8", "vp9", "av1"})),
        audio=CodecChoice("opus", "libopus", frozenset({"opus", "vorbis"}), sample_rate=48000),
        subtitle=CodecChoice("webvtt", "webvtt", frozenset({"webvtt"})),
    ),
    TargetFormat.AVI: FormatProfile(
        format=TargetFormat.AVI,
        muxer="avi",
        extension="avi",
        video=CodecChoice("mpeg4", "mpeg4", frozenset({"mpeg4", "msmpeg4v3", "mjpeg"})),
        audio=CodecChoice(
            "mp3", "libmp3lame", frozenset({"mp3", "ac3", "pcm_s16le"}), max_channels=2,
        ),
        max_height=1080,
    ),
}


# Default video bitrates (bps) by target format and source resolution tier
DEFAULT_VIDEO_BITRATES = {
    TargetFormat.MP4: {
        ResolutionTier.SD: 1500000,
        ResolutionTier.HD: 3000000,    # 3 Mbps
        ResolutionTier.FHD: 6000000,   # 6 Mbps
        ResolutionTier.QHD: 12000000,  # 12 Mbps
        ResolutionTier.UHD: 25000000,  # 25 Mbps
    },
    TargetFormat.WEBM: {
        ResolutionTier.SD: 1000000,
        ResolutionTier.HD: 2000000,
        ResolutionTier.FHD: 4000000,
        ResolutionTier.QHD: 8000000,
        ResolutionTier.UHD: 18000000,
    },
    # Output height is capped at 1080, so qhd/uhd sources land on the fhd rate
    TargetFormat.AVI: {
        ResolutionTier.SD: 2000000,
        ResolutionTier.HD: 4500000,
        ResolutionTier.FHD: 9000000,
        ResolutionTier.QHD: 9000000,
        ResolutionTier.UHD: 9000000,
    },
}
DEFAULT_VIDEO_BITRATES[TargetFormat.MOV] = dict(DEFAULT_VIDEO_BITRATES[TargetFormat.MP4])
DEFAULT_VIDEO_BITRATES[TargetFormat.MKV] = dict(DEFAULT_VIDEO_BITRATES[TargetFormat.MP4])

DEFAULT_AUDIO_BITRATES = {
    TargetFormat.MP4: 128000,
    TargetFormat.MOV: 128000,
    TargetFormat.MKV: 128000,
    TargetFormat.WEBM: 96000,
    TargetFormat.AVI: 192000,
}


def get_format_profile(target_format: TargetFormat) -> FormatProfile:
    return FORMAT_PROFILES[TargetFormat(target_format)]


def get_default_video_bitrate(
    target_format: TargetFormat,
    tier: ResolutionTier,
    overrides: Optional[Mapping[str, Mapping[str, int]]] = None,
) -> int:
    """Get the default video bitrate for a format and source tier.

    Args:
        target_format: Output format
        tier: Resolution tier of the source stream
        overrides: Optional {format: {tier: bps}} entries taking precedence

    Returns:
        Bitrate in bps
    """
    if overrides:
        override = overrides.get(target_format.value, {}).get(tier.value)
        if override:
            return override
    return DEFAULT_VIDEO_BITRATES[target_format][tier]


def get_default_audio_bitrate(
    target_format: TargetFormat,
    overrides: Optional[Mapping[str, int]] = None,
) -> int:
    if overrides and overrides.get(target_format.value):
        return overrides[target_format.value]
    return DEFAULT_AUDIO_BITRATES[target_format]
