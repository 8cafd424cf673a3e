"""Pipeline Planner.

Given a MediaDescriptor and a target format, decides which source streams
are carried, whether each one is copied or re-encoded, and the stage list
the worker executes.
"""

import logging
from typing import Mapping, Optional, Union

from transcoder.core.config import Settings
from transcoder.core.errors import IncompatibleFormat
from transcoder.core.logging import log_info, log_warning
from transcoder.modules.media.models import MediaDescriptor, MediaKind, StreamDescriptor
from transcoder.modules.planning.formats import (
    TEXT_SUBTITLE_CODECS,
    FormatProfile,
    get_default_audio_bitrate,
    get_default_video_bitrate,
    get_format_profile,
)
from transcoder.modules.planning.models import (
    RESOLUTION_DIMENSIONS,
    DroppedStream,
    PipelinePlan,
    ResolutionTier,
    StageDescriptor,
    StageKind,
    StreamMapping,
    TargetFormat,
    TranscodeOptions,
)

logger = logging.getLogger(__name__)

DEFAULT_AUDIO_CHANNELS = 2
DEFAULT_SAMPLE_RATE = 48000


def _even(value: float) -> int:
    """Round to the nearest even integer, at least 2."""
    return max(2, int(round(value / 2.0)) * 2)


class PipelinePlanner:
    """Builds PipelinePlans from probe results."""

    def __init__(
        self,
        video_bitrate_overrides: Optional[Mapping[str, Mapping[str, int]]] = None,
        audio_bitrate_overrides: Optional[Mapping[str, int]] = None,
    ):
        self._video_overrides = video_bitrate_overrides or {}
        self._audio_overrides = audio_bitrate_overrides or {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelinePlanner":
        return cls(
            video_bitrate_overrides=settings.VIDEO_BITRATE_OVERRIDES,
            audio_bitrate_overrides=settings.AUDIO_BITRATE_OVERRIDES,
        )

    def plan(
        self,
        descriptor: MediaDescriptor,
        target_format: Union[TargetFormat, str],
        options: Optional[TranscodeOptions] = None,
    ) -> PipelinePlan:
        """Plan the conversion of *descriptor* into *target_format*.

        Args:
            descriptor: Probe result for the source
            target_format: Output format
            options: Caller overrides; defaults apply when omitted

        Returns:
            The pipeline plan

        Raises:
            IncompatibleFormat: No audio or video stream survives the mapping
        """
        target_format = TargetFormat(target_format)
        options = options or TranscodeOptions()
        profile = get_format_profile(target_format)

        mappings: list[StreamMapping] = []
        dropped: list[DroppedStream] = []
        for stream in descriptor.streams:
            output_index = len(mappings)
            if stream.kind is MediaKind.VIDEO:
                mapping = self._map_video(stream, output_index, profile, options)
            elif stream.kind is MediaKind.AUDIO:
                mapping = self._map_audio(stream, output_index, profile, options)
            else:
                mapping = self._map_subtitle(stream, output_index, profile, dropped)
            if mapping is not None:
                mappings.append(mapping)

        for drop in dropped:
            log_warning(
                logger,
                f"Dropping {drop.kind.value} stream #{drop.input_index} ({drop.codec}): {drop.reason}",
                stream_index=drop.input_index,
                target_format=target_format.value,
            )

        if not any(m.kind in (MediaKind.VIDEO, MediaKind.AUDIO) for m in mappings):
            raise IncompatibleFormat(
                f"{target_format.value} output would carry no audio or video stream "
                f"from {descriptor.source.name}"
            )

        plan = PipelinePlan(
            source=descriptor.source,
            source_size=descriptor.size_bytes,
            container=descriptor.container,
            streamable=descriptor.streamable,
            target_format=target_format,
            muxer=profile.muxer,
            extension=profile.extension,
            stages=self._build_stages(descriptor, profile, mappings),
            streams=tuple(mappings),
            dropped=tuple(dropped),
        )

        log_info(
            logger,
            f"Planned {descriptor.container.value} -> {target_format.value} "
            f"with {len(mappings)} stream(s), {len(dropped)} dropped",
            target_format=target_format.value,
            copied=sum(1 for m in mappings if m.is_copy),
        )
        return plan

    # ============================================
    # Stream mapping
    # ============================================

    def _map_video(
        self,
        stream: StreamDescriptor,
        output_index: int,
        profile: FormatProfile,
        options: TranscodeOptions,
    ) -> StreamMapping:
        target_height = self._target_height(stream, profile, options)
        resize = target_height is not None and target_height != stream.height

        if (
            options.allow_stream_copy
            and options.video_bitrate is None
            and not resize
            and stream.codec in profile.video.accepts
        ):
            return StreamMapping(
                input_index=stream.index,
                output_index=output_index,
                kind=MediaKind.VIDEO,
                source_codec=stream.codec,
                target_codec=stream.codec,
                encoder="copy",
                width=stream.width,
                height=stream.height,
            )

        width, height = self._output_dimensions(stream, target_height, options)
        tier = ResolutionTier.from_height(stream.height)
        bitrate = options.video_bitrate or get_default_video_bitrate(
            profile.format, tier, self._video_overrides,
        )
        return StreamMapping(
            input_index=stream.index,
            output_index=output_index,
            kind=MediaKind.VIDEO,
            source_codec=stream.codec,
            target_codec=profile.video.codec,
            encoder=profile.video.encoder,
            bitrate=bitrate,
            width=width,
            height=height,
            resize=(width, height) != (stream.width, stream.height) and height is not None,
        )

    def _target_height(
        self,
        stream: StreamDescriptor,
        profile: FormatProfile,
        options: TranscodeOptions,
    ) -> Optional[int]:
        if options.resolution is not None:
            height = RESOLUTION_DIMENSIONS[options.resolution][1]
        elif stream.height is not None:
            height = stream.height
        else:
            return None
        if profile.max_height is not None:
            height = min(height, profile.max_height)
        return height

    def _output_dimensions(
        self,
        stream: StreamDescriptor,
        target_height: Optional[int],
        options: TranscodeOptions,
    ) -> tuple[Optional[int], Optional[int]]:
        if target_height is None:
            return None, None
        if stream.width and stream.height:
            width = stream.width * target_height / stream.height
        elif options.resolution is not None:
            preset_width, preset_height = RESOLUTION_DIMENSIONS[options.resolution]
            width = preset_width * target_height / preset_height
        else:
            return None, _even(target_height)
        return _even(width), _even(target_height)

    def _map_audio(
        self,
        stream: StreamDescriptor,
        output_index: int,
        profile: FormatProfile,
        options: TranscodeOptions,
    ) -> StreamMapping:
        if (
            options.allow_stream_copy
            and options.audio_bitrate is None
            and stream.codec in profile.audio.accepts
        ):
            return StreamMapping(
                input_index=stream.index,
                output_index=output_index,
                kind=MediaKind.AUDIO,
                source_codec=stream.codec,
                target_codec=stream.codec,
                encoder="copy",
                sample_rate=stream.sample_rate,
                channels=stream.channels,
            )

        channels = stream.channels or DEFAULT_AUDIO_CHANNELS
        if profile.audio.max_channels is not None:
            channels = min(channels, profile.audio.max_channels)
        sample_rate = profile.audio.sample_rate or stream.sample_rate or DEFAULT_SAMPLE_RATE
        bitrate = options.audio_bitrate or get_default_audio_bitrate(
            profile.format, self._audio_overrides,
        )
        return StreamMapping(
            input_index=stream.index,
            output_index=output_index,
            kind=MediaKind.AUDIO,
            source_codec=stream.codec,
            target_codec=profile.audio.codec,
            encoder=profile.audio.encoder,
            bitrate=bitrate,
            sample_rate=sample_rate,
            channels=channels,
        )

    def _map_subtitle(
        self,
        stream: StreamDescriptor,
        output_index: int,
        profile: FormatProfile,
        dropped: list[DroppedStream],
    ) -> Optional[StreamMapping]:
        choice = profile.subtitle
        if choice is None:
            dropped.append(DroppedStream(
                input_index=stream.index,
                kind=stream.kind,
                codec=stream.codec,
                reason=f"{profile.format.value} cannot carry subtitles",
            ))
            return None

        if stream.codec in choice.accepts:
            encoder, target_codec = "copy", stream.codec
        elif stream.codec in TEXT_SUBTITLE_CODECS:
            encoder, target_codec = choice.encoder, choice.codec
        else:
            dropped.append(DroppedStream(
                input_index=stream.index,
                kind=stream.kind,
                codec=stream.codec,
                reason=f"{stream.codec} subtitles cannot be converted to {choice.codec}",
            ))
            return None

        return StreamMapping(
            input_index=stream.index,
            output_index=output_index,
            kind=MediaKind.SUBTITLE,
            source_codec=stream.codec,
            target_codec=target_codec,
            encoder=encoder,
        )

    # ============================================
    # Stages
    # ============================================

    def _build_stages(
        self,
        descriptor: MediaDescriptor,
        profile: FormatProfile,
        mappings: list[StreamMapping],
    ) -> tuple[StageDescriptor, ...]:
        stages = [StageDescriptor(
            kind=StageKind.DEMUX,
            params={
                "container": descriptor.container.value,
                "demuxer": descriptor.container.demuxer,
                "streamable": descriptor.streamable,
            },
        )]

        for mapping in mappings:
            if not mapping.is_copy:
                stages.append(StageDescriptor(
                    kind=StageKind.DECODE,
                    stream_index=mapping.output_index,
                    params={"codec": mapping.source_codec, "input_index": mapping.input_index},
                ))
            if mapping.resize:
                stages.append(StageDescriptor(
                    kind=StageKind.FILTER,
                    stream_index=mapping.output_index,
                    params={"filter": "scale", "width": mapping.width or -2, "height": mapping.height},
                ))
            encode_params = {"encoder": mapping.encoder, "codec": mapping.target_codec}
            if mapping.bitrate is not None:
                encode_params["bitrate"] = mapping.bitrate
            stages.append(StageDescriptor(
                kind=StageKind.ENCODE,
                stream_index=mapping.output_index,
                params=encode_params,
            ))

        stages.append(StageDescriptor(
            kind=StageKind.MUX,
            params={"muxer": profile.muxer, "extension": profile.extension},
        ))
        return tuple(stages)
