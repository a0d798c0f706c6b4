"""
HLS VOD playlist planner for torrent transcoding sessions.

Playlists are synthesized from the probed duration before ffmpeg has
produced a single segment, so a player can load the master playlist and
start polling right away. Segment *names* are final and identical to what
the track jobs write; segment *content* appears as encoding progresses.

Segments are MPEG-TS, which only needs ``#EXT-X-VERSION:3``.
"""

from __future__ import annotations

import logging
import math
import os
import uuid

import aiofiles
import aiofiles.os

from torrentflow.const import (
    MASTER_PLAYLIST,
    MASTER_URI_PREFIX,
    VIDEO_PLAYLIST,
    audio_playlist_name,
    audio_segment_name,
    subtitle_file_name,
    subtitle_playlist_name,
    video_segment_name,
)
from torrentflow.transcoder.container_probe import AudioStreamDescriptor, CodecInfo, SubtitleDescriptor

logger = logging.getLogger(__name__)


def segment_count(duration: float, segment_duration: int) -> int:
    """Number of nominal segments needed to cover *duration* seconds (at least one)."""
    if segment_duration <= 0:
        raise ValueError("segment_duration must be positive")
    return max(math.ceil(duration / segment_duration), 1)


def build_media_playlist(segment_names: list[str], segment_duration: int) -> str:
    """Build a VOD media playlist listing *segment_names* with a fixed nominal duration."""
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{segment_duration}",
        "#EXT-X-MEDIA-SEQUENCE:0",
    ]
    for name in segment_names:
        lines.append(f"#EXTINF:{segment_duration},")
        lines.append(name)
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines)


def build_video_playlist(duration: float, segment_duration: int) -> str:
    count = segment_count(duration, segment_duration)
    return build_media_playlist([video_segment_name(i) for i in range(count)], segment_duration)


def build_audio_playlist(audio: AudioStreamDescriptor, duration: float, segment_duration: int) -> str:
    count = segment_count(duration, segment_duration)
    return build_media_playlist([audio_segment_name(audio.index, i) for i in range(count)], segment_duration)


def build_subtitle_playlist(subtitle: SubtitleDescriptor, duration: float) -> str:
    """Subtitles are a single WebVTT file spanning the whole duration."""
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{max(math.ceil(duration), 1)}",
        "#EXT-X-MEDIA-SEQUENCE:0",
        f"#EXTINF:{duration:.3f},",
        subtitle_file_name(subtitle.index),
        "#EXT-X-ENDLIST",
    ]
    return "\n".join(lines)


def _attr(value: str) -> str:
    """Make a value safe for a quoted-string playlist attribute."""
    return value.replace('"', "'").replace("\r", " ").replace("\n", " ")


def _yes_no(flag: bool) -> str:
    return "YES" if flag else "NO"


def subtitle_display_name(subtitle: SubtitleDescriptor) -> str:
    name = subtitle.title
    if subtitle.language != "unknown":
        name = f"{name} ({subtitle.language})"
    if subtitle.forced:
        name = f"{name} (Forced)"
    return name


def build_master_playlist(codec_info: CodecInfo) -> str:
    """
    Build the master playlist.

    Subtitle renditions come first, then audio renditions, each in source
    index order, followed by the single video variant.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]

    subtitles = sorted(codec_info.subtitles, key=lambda s: s.index)
    audio_streams = sorted(codec_info.audio_streams, key=lambda a: a.index)

    for subtitle in subtitles:
        lines.append(
            "#EXT-X-MEDIA:TYPE=SUBTITLES,GROUP-ID=\"subs\","
            f'NAME="{_attr(subtitle_display_name(subtitle))}",'
            f'LANGUAGE="{_attr(subtitle.language)}",'
            f"DEFAULT={_yes_no(subtitle.default)},AUTOSELECT=NO,"
            f"FORCED={_yes_no(subtitle.forced)},"
            f'URI="{MASTER_URI_PREFIX}{subtitle_playlist_name(subtitle.index)}"'
        )

    for audio in audio_streams:
        lines.append(
            "#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID=\"audio\","
            f'NAME="{_attr(audio.name)}",'
            f"DEFAULT={_yes_no(audio.default)},AUTOSELECT=YES,"
            f'LANGUAGE="{_attr(audio.language)}",'
            f'URI="{MASTER_URI_PREFIX}{audio_playlist_name(audio.index)}"'
        )

    stream_inf = ["BANDWIDTH=2000000"]
    if audio_streams:
        stream_inf.append('AUDIO="audio"')
    if subtitles:
        stream_inf.append('SUBTITLES="subs"')
    lines.append(f"#EXT-X-STREAM-INF:{','.join(stream_inf)}")
    lines.append(f"{MASTER_URI_PREFIX}{VIDEO_PLAYLIST}")
    return "\n".join(lines)


async def write_playlist(path: str, content: str) -> None:
    """Write a playlist atomically so pollers never read a partial file."""
    tmp_path = f"{path}.{uuid.uuid4().hex[:8]}.tmp"
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(content)
    await aiofiles.os.replace(tmp_path, path)


async def write_placeholder_playlists(output_dir: str, codec_info: CodecInfo, segment_duration: int) -> None:
    """
    Write every playlist of a session before encoding starts.

    The master playlist is written last, so its presence implies all the
    playlists it references exist.
    """
    for subtitle in codec_info.subtitles:
        await write_playlist(
            os.path.join(output_dir, subtitle_playlist_name(subtitle.index)),
            build_subtitle_playlist(subtitle, codec_info.duration),
        )

    for audio in codec_info.audio_streams:
        await write_playlist(
            os.path.join(output_dir, audio_playlist_name(audio.index)),
            build_audio_playlist(audio, codec_info.duration, segment_duration),
        )

    await write_playlist(
        os.path.join(output_dir, VIDEO_PLAYLIST),
        build_video_playlist(codec_info.duration, segment_duration),
    )
    await write_playlist(os.path.join(output_dir, MASTER_PLAYLIST), build_master_playlist(codec_info))

    logger.info(
        "[hls_manifest] Wrote placeholder playlists to %s (%d segments, %d audio, %d subtitles)",
        output_dir,
        segment_count(codec_info.duration, segment_duration),
        len(codec_info.audio_streams),
        len(codec_info.subtitles),
    )
