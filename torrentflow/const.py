import re

MASTER_PLAYLIST = "master.m3u8"
VIDEO_PLAYLIST = "video.m3u8"
CLAIM_FILE = ".claim"

# Relative prefix used by the master playlist. The master is served from
# /play/{source_id}/{file_idx}/hls, so "hls/<name>" resolves to the file route.
MASTER_URI_PREFIX = "hls/"

# ffmpeg writes its own playlist next to the placeholder and the finished one is
# promoted over the placeholder once the job exits cleanly.
ENCODING_PLAYLIST_SUFFIX = ".encoding"

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"

SESSION_FILE_PATTERN = re.compile(
    r"^(master\.m3u8|video\.m3u8|segment_\d{3,}\.ts|audio_\d+\.m3u8|audio_\d+_\d{3,}\.ts|"
    r"subtitles_\d+\.m3u8|subtitles_\d+\.vtt)$"
)

SESSION_FILE_CONTENT_TYPES = {
    ".m3u8": HLS_CONTENT_TYPE,
    ".ts": "video/mp2t",
    ".vtt": "text/vtt",
}


def video_segment_name(number: int) -> str:
    return f"segment_{number:03d}.ts"


def video_segment_pattern() -> str:
    return "segment_%03d.ts"


def audio_playlist_name(index: int) -> str:
    return f"audio_{index}.m3u8"


def audio_segment_name(index: int, number: int) -> str:
    return f"audio_{index}_{number:03d}.ts"


def audio_segment_pattern(index: int) -> str:
    return f"audio_{index}_%03d.ts"


def subtitle_playlist_name(index: int) -> str:
    return f"subtitles_{index}.m3u8"


def subtitle_file_name(index: int) -> str:
    return f"subtitles_{index}.vtt"
