"""
FFmpeg argument builders for the per-track HLS jobs.

Every job reads the torrent payload from stdin (``pipe:0``) and writes into
the session directory, using the same file names the playlist planner
already published.
"""

import os

from torrentflow.configs import TranscodeConfig
from torrentflow.const import (
    ENCODING_PLAYLIST_SUFFIX,
    VIDEO_PLAYLIST,
    audio_playlist_name,
    audio_segment_pattern,
    subtitle_file_name,
    video_segment_pattern,
)
from torrentflow.transcoder.codec_utils import (
    AUDIO_FALLBACK_ENCODER,
    VIDEO_FALLBACK_ENCODER,
    audio_can_copy,
    video_can_copy,
)
from torrentflow.transcoder.container_probe import AudioStreamDescriptor, CodecInfo, SubtitleDescriptor


def encoding_playlist_path(playlist_path: str) -> str:
    """Where ffmpeg writes its own playlist while the placeholder stays in place."""
    return playlist_path + ENCODING_PLAYLIST_SUFFIX


def _input_args(config: TranscodeConfig) -> list[str]:
    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        config.ffmpeg_loglevel,
        "-y",
        "-i",
        "pipe:0",
    ]


def _hls_output_args(segment_duration: int, segment_path: str, playlist_path: str) -> list[str]:
    return [
        "-start_number",
        "0",
        "-hls_time",
        str(segment_duration),
        "-hls_list_size",
        "0",
        "-hls_segment_filename",
        segment_path,
        # readiness checks look for finished segments, so they are renamed into place when complete
        "-hls_flags",
        "temp_file",
        "-hls_playlist_type",
        "vod",
        "-f",
        "hls",
        encoding_playlist_path(playlist_path),
    ]


def build_video_args(
    codec_info: CodecInfo,
    output_dir: str,
    config: TranscodeConfig,
    segment_duration: int,
    keyframe_interval: int,
) -> list[str]:
    """Video-only job: stream copy for H.264 8-bit, x264 re-encode for everything else."""
    args = _input_args(config)
    args += ["-map", "0:v:0"]
    if video_can_copy(codec_info.video_codec, codec_info.pixel_format):
        args += ["-c:v", "copy"]
    else:
        args += [
            "-c:v",
            VIDEO_FALLBACK_ENCODER,
            "-preset",
            config.video_preset,
            "-tune",
            "zerolatency",
            "-pix_fmt",
            "yuv420p",
        ]
    args += ["-an", "-sn", "-g", str(keyframe_interval)]
    args += _hls_output_args(
        segment_duration,
        os.path.join(output_dir, video_segment_pattern()),
        os.path.join(output_dir, VIDEO_PLAYLIST),
    )
    return args


def build_audio_args(
    audio: AudioStreamDescriptor,
    output_dir: str,
    config: TranscodeConfig,
    segment_duration: int,
) -> list[str]:
    """Audio job for one source track, selected by its audio index."""
    args = _input_args(config)
    args += ["-map", f"0:a:{audio.index}"]
    if audio_can_copy(audio.codec):
        args += ["-c:a", "copy"]
    else:
        args += ["-c:a", AUDIO_FALLBACK_ENCODER, "-ac", str(config.audio_channels)]
    args += ["-vn", "-sn"]
    args += _hls_output_args(
        segment_duration,
        os.path.join(output_dir, audio_segment_pattern(audio.index)),
        os.path.join(output_dir, audio_playlist_name(audio.index)),
    )
    return args


def build_subtitle_args(subtitle: SubtitleDescriptor, output_dir: str, config: TranscodeConfig) -> list[str]:
    """Subtitle job: a single WebVTT file, not segmented."""
    args = _input_args(config)
    args += [
        "-map",
        f"0:s:{subtitle.index}",
        "-c:s",
        "webvtt",
        "-f",
        "webvtt",
        os.path.join(output_dir, subtitle_file_name(subtitle.index)),
    ]
    return args
