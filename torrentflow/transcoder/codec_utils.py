"""
Codec decision engine for HLS track jobs.

Determines whether a source track can be stream-copied into MPEG-TS
segments or has to be re-encoded for broad player compatibility.
"""

import re

# ────────────────────────────────────────────────────────────────────
# Codecs that play everywhere inside MPEG-TS HLS (ffprobe codec names)
# ────────────────────────────────────────────────────────────────────
HLS_VIDEO_CODECS = frozenset({"h264"})

HLS_AUDIO_CODECS = frozenset({"aac"})

# ────────────────────────────────────────────────────────────────────
# Pixel formats above 8 bits per component (yuv420p10le, p010le, ...).
# The depth sits right before the endianness suffix; nv12 and yuv410p
# are 8-bit despite the digits in their names. H.264 High 10 is rejected
# by most hardware decoders, so these are re-encoded.
# ────────────────────────────────────────────────────────────────────
HIGH_BIT_DEPTH_PATTERN = re.compile(r"(?<!\d)0?(9|10|12|14|16)(le|be)$")

# ────────────────────────────────────────────────────────────────────
# Bitmap subtitle codecs, which cannot be converted to WebVTT
# ────────────────────────────────────────────────────────────────────
IMAGE_SUBTITLE_CODECS = frozenset(
    {
        "hdmv_pgs_subtitle",
        "dvd_subtitle",
        "dvb_subtitle",
        "dvb_teletext",
        "xsub",
    }
)

VIDEO_FALLBACK_ENCODER = "libx264"
AUDIO_FALLBACK_ENCODER = "aac"


def is_high_bit_depth(pixel_format: str | None) -> bool:
    """Check if a pixel format stores more than 8 bits per component."""
    if not pixel_format:
        return False
    return HIGH_BIT_DEPTH_PATTERN.search(pixel_format) is not None


def video_can_copy(video_codec: str | None, pixel_format: str | None) -> bool:
    """Check if the source video can be remuxed without re-encoding."""
    if not video_codec:
        return False
    return video_codec in HLS_VIDEO_CODECS and not is_high_bit_depth(pixel_format)


def audio_can_copy(audio_codec: str | None) -> bool:
    """Check if an audio track can be copied into the segments as-is."""
    if not audio_codec:
        return False
    return audio_codec in HLS_AUDIO_CODECS


def subtitle_is_convertible(subtitle_codec: str | None) -> bool:
    """
    Check if a subtitle track can be extracted as WebVTT.

    Unknown codecs are attempted; only known bitmap formats are rejected.
    """
    return subtitle_codec not in IMAGE_SUBTITLE_CODECS
