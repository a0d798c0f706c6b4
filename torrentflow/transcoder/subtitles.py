"""
WebVTT post-processing for extracted subtitle tracks.

MPEG-TS segments start at a non-zero presentation time while the extracted
WebVTT cues start at zero. ``X-TIMESTAMP-MAP`` tells HLS players how to
align the two time bases.
"""

import logging

import aiofiles

from torrentflow.configs import settings

logger = logging.getLogger(__name__)

WEBVTT_HEADER = "WEBVTT"
TIMESTAMP_MAP_PREFIX = "X-TIMESTAMP-MAP="


def timestamp_map_line(mpegts_offset: int) -> str:
    return f"{TIMESTAMP_MAP_PREFIX}LOCAL:00:00:00.000,MPEGTS:{mpegts_offset}"


def insert_timestamp_map(content: str, mpegts_offset: int) -> str | None:
    """
    Return *content* with the timestamp map inserted after the WEBVTT header.

    Returns None when there is nothing to do: the header is missing or the
    map is already present.
    """
    lines = content.split("\n")
    if any(line.startswith(TIMESTAMP_MAP_PREFIX) for line in lines):
        return None

    header_index = next((i for i, line in enumerate(lines) if line.startswith(WEBVTT_HEADER)), -1)
    if header_index == -1:
        return None

    lines.insert(header_index + 1, timestamp_map_line(mpegts_offset))
    return "\n".join(lines)


async def patch_vtt_timestamp_map(vtt_path: str, mpegts_offset: int | None = None) -> bool:
    """
    Patch a finished WebVTT file in place.

    Errors are logged, never raised: a subtitle without the map is still
    usable, only slightly out of sync on some players.

    Returns:
        True if the file was rewritten.
    """
    offset = settings.vtt_mpegts_offset if mpegts_offset is None else mpegts_offset
    try:
        async with aiofiles.open(vtt_path, "r", encoding="utf-8") as f:
            content = await f.read()

        patched = insert_timestamp_map(content, offset)
        if patched is None:
            if TIMESTAMP_MAP_PREFIX in content:
                logger.debug("[subtitles] %s already has a timestamp map", vtt_path)
            else:
                logger.error("[subtitles] No WEBVTT header in %s, leaving it unmodified", vtt_path)
            return False

        async with aiofiles.open(vtt_path, "w", encoding="utf-8") as f:
            await f.write(patched)
        return True
    except (OSError, UnicodeDecodeError) as e:
        logger.error("[subtitles] Timestamp patch failed for %s: %s", vtt_path, e)
        return False
