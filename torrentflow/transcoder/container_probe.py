"""
Codec inspection for in-flight torrent payloads.

Only a bounded prefix of the file is handed to ``ffprobe``: the payload may
be arbitrarily large and only partially downloaded, so probing the whole
file would block on pieces the torrent engine has not fetched yet.
Matroska and faststart MP4 files carry all track metadata in that prefix.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from torrentflow.configs import TranscodeConfig, settings
from torrentflow.transcoder.codec_utils import subtitle_is_convertible
from torrentflow.transcoder.errors import ProbeFailure, ProcessSpawnFailure
from torrentflow.transcoder.media_source import MediaSource

logger = logging.getLogger(__name__)

_FORCED_RE = re.compile(r"forced", re.IGNORECASE)


@dataclass(frozen=True)
class AudioStreamDescriptor:
    index: int  # position among the source's audio streams, used in 0:a:<index> and file names
    name: str
    language: str = "unknown"
    codec: str = "unknown"
    default: bool = False


@dataclass(frozen=True)
class SubtitleDescriptor:
    index: int  # position among the source's subtitle streams, used in 0:s:<index> and file names
    title: str
    language: str = "unknown"
    forced: bool = False
    default: bool = False
    codec: str = "unknown"


@dataclass(frozen=True)
class CodecInfo:
    """Container and track metadata of a source, computed once per session."""

    duration: float
    video_codec: str | None = None
    pixel_format: str | None = None
    audio_streams: tuple[AudioStreamDescriptor, ...] = ()
    subtitles: tuple[SubtitleDescriptor, ...] = ()


def _tag(stream: dict, name: str) -> str | None:
    """Case-insensitive tag lookup (Matroska muxers write both 'language' and 'LANGUAGE')."""
    tags = stream.get("tags") or {}
    for key, value in tags.items():
        if key.lower() == name and value:
            return str(value)
    return None


def _parse_duration(fmt: dict, default_duration: float) -> float:
    raw = fmt.get("duration")
    try:
        duration = float(raw)
    except (TypeError, ValueError):
        return default_duration
    if duration != duration or duration <= 0:  # NaN or empty
        return default_duration
    return duration


def parse_probe_output(data: dict, default_duration: float = 3600.0) -> CodecInfo:
    """
    Build a ``CodecInfo`` from ``ffprobe -show_format -show_streams`` JSON.

    Audio and subtitle streams are numbered by their position among streams
    of the same kind, matching ffmpeg's ``0:a:N`` / ``0:s:N`` selectors.
    Bitmap subtitle tracks are left out since they cannot become WebVTT.
    """
    streams = data.get("streams") or []
    duration = _parse_duration(data.get("format") or {}, default_duration)

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)

    audio_streams = []
    for index, stream in enumerate(s for s in streams if s.get("codec_type") == "audio"):
        audio_streams.append(
            AudioStreamDescriptor(
                index=index,
                name=_tag(stream, "title") or f"{index + 1}",
                language=_tag(stream, "language") or "unknown",
                codec=stream.get("codec_name") or "unknown",
                default=index == 0,
            )
        )

    subtitles = []
    for index, stream in enumerate(s for s in streams if s.get("codec_type") == "subtitle"):
        codec = stream.get("codec_name") or "unknown"
        title = _tag(stream, "title")
        if not subtitle_is_convertible(codec):
            logger.info("[container_probe] Skipping bitmap subtitle %d (%s)", index, codec)
            continue
        subtitles.append(
            SubtitleDescriptor(
                index=index,
                title=title or f"{index + 1}",
                language=_tag(stream, "language") or "unknown",
                forced=bool(title and _FORCED_RE.search(title)),
                default=index == 0,
                codec=codec,
            )
        )

    return CodecInfo(
        duration=duration,
        video_codec=video_stream.get("codec_name") if video_stream else None,
        pixel_format=video_stream.get("pix_fmt") if video_stream else None,
        audio_streams=tuple(audio_streams),
        subtitles=tuple(subtitles),
    )


async def _read_prefix(source: MediaSource, probe_size: int) -> bytes:
    limit = min(probe_size, source.file_size) if source.file_size > 0 else probe_size
    header_data = bytearray()
    async for chunk in source.stream(offset=0, limit=limit):
        header_data += chunk
    return bytes(header_data)


async def _run_ffprobe(header_data: bytes, config: TranscodeConfig) -> dict:
    cmd = [
        config.ffprobe_path,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        "-i",
        "pipe:0",
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessSpawnFailure(f"Could not launch {config.ffprobe_path}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(input=header_data), timeout=config.probe_timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProbeFailure(f"ffprobe timed out after {config.probe_timeout:.0f}s")

    if proc.returncode != 0:
        message = stderr.decode(errors="replace").strip()
        raise ProbeFailure(f"ffprobe exited with code {proc.returncode}: {message}")

    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ProbeFailure(f"ffprobe returned invalid JSON: {e}") from e


async def probe_codec_info(source: MediaSource, config: TranscodeConfig | None = None) -> CodecInfo:
    """
    Probe the first ``probe_size`` bytes of a source for codec metadata.

    The probe is retried with exponential backoff because the torrent may
    not have the leading pieces yet when the first playback request arrives.

    Raises:
        ProbeFailure: If ffprobe cannot extract metadata after all attempts.
        ProcessSpawnFailure: If ffprobe cannot be launched.
    """
    config = config or settings.transcode_config

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(config.probe_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(ProbeFailure),
        reraise=True,
    ):
        with attempt:
            header_data = await _read_prefix(source, config.probe_size)
            if not header_data:
                raise ProbeFailure("Source returned no data for the probe window")

            logger.info(
                "[container_probe] Probing %d bytes (hint=%r, attempt %d)",
                len(header_data),
                source.filename_hint,
                attempt.retry_state.attempt_number,
            )
            data = await _run_ffprobe(header_data, config)

    codec_info = parse_probe_output(data, config.default_duration)
    logger.info(
        "[container_probe] duration=%.1fs, video=%s/%s, audio=%d, subtitles=%d",
        codec_info.duration,
        codec_info.video_codec or "none",
        codec_info.pixel_format or "unknown",
        len(codec_info.audio_streams),
        len(codec_info.subtitles),
    )
    return codec_info
