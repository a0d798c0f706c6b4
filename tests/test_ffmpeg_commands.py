import os

import pytest

from torrentflow.configs import TranscodeConfig
from torrentflow.transcoder.codec_utils import audio_can_copy, is_high_bit_depth, video_can_copy
from torrentflow.transcoder.container_probe import AudioStreamDescriptor, CodecInfo, SubtitleDescriptor
from torrentflow.transcoder.ffmpeg_commands import build_audio_args, build_subtitle_args, build_video_args

OUTPUT_DIR = "/tmp/hls/abc/0"


@pytest.fixture
def config():
    return TranscodeConfig(ffmpeg_path="ffmpeg", ffmpeg_loglevel="info", video_preset="ultrafast", audio_channels=2)


def _value_after(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


@pytest.mark.parametrize(
    "codec, pix_fmt, expected",
    [
        ("h264", "yuv420p", True),
        ("h264", "yuv420p10le", False),
        ("h264", None, True),
        ("hevc", "yuv420p", False),
        (None, "yuv420p", False),
    ],
)
def test_video_copy_decision(codec, pix_fmt, expected):
    assert video_can_copy(codec, pix_fmt) is expected


@pytest.mark.parametrize(
    "pix_fmt, expected",
    [
        ("yuv420p10le", True),
        ("yuv422p12le", True),
        ("yuv444p16be", True),
        ("p010le", True),
        ("gray10le", True),
        ("yuv420p", False),
        ("yuvj420p", False),
        ("yuv410p", False),
        ("nv12", False),
        ("rgb565le", False),
        (None, False),
    ],
)
def test_high_bit_depth_detection(pix_fmt, expected):
    assert is_high_bit_depth(pix_fmt) is expected


def test_eight_bit_formats_with_digits_are_copied():
    assert video_can_copy("h264", "nv12")
    assert video_can_copy("h264", "yuv410p")


def test_audio_copy_decision():
    assert audio_can_copy("aac")
    assert not audio_can_copy("ac3")
    assert not audio_can_copy(None)


def test_video_args_copy_h264(config):
    args = build_video_args(CodecInfo(60.0, "h264", "yuv420p"), OUTPUT_DIR, config, 10, 250)

    assert args[:7] == ["ffmpeg", "-hide_banner", "-loglevel", "info", "-y", "-i", "pipe:0"]
    assert _value_after(args, "-map") == "0:v:0"
    assert _value_after(args, "-c:v") == "copy"
    assert "libx264" not in args
    assert _value_after(args, "-g") == "250"
    assert "-an" in args and "-sn" in args


def test_video_args_reencode_high_bit_depth(config):
    args = build_video_args(CodecInfo(60.0, "h264", "yuv420p10le"), OUTPUT_DIR, config, 10, 250)

    assert _value_after(args, "-c:v") == "libx264"
    assert _value_after(args, "-preset") == "ultrafast"
    assert _value_after(args, "-pix_fmt") == "yuv420p"


def test_video_args_reencode_other_codecs(config):
    args = build_video_args(CodecInfo(60.0, "hevc", "yuv420p"), OUTPUT_DIR, config, 10, 250)

    assert _value_after(args, "-c:v") == "libx264"


def test_video_args_hls_output(config):
    args = build_video_args(CodecInfo(60.0, "h264", "yuv420p"), OUTPUT_DIR, config, 6, 250)

    assert _value_after(args, "-hls_time") == "6"
    assert _value_after(args, "-start_number") == "0"
    assert _value_after(args, "-hls_segment_filename") == os.path.join(OUTPUT_DIR, "segment_%03d.ts")
    # segments appear under their final name only once complete
    assert _value_after(args, "-hls_flags") == "temp_file"
    # ffmpeg's playlist must not overwrite the placeholder while encoding.
    assert args[-1] == os.path.join(OUTPUT_DIR, "video.m3u8.encoding")


def test_audio_args_copy_aac(config):
    audio = AudioStreamDescriptor(index=1, name="2", codec="aac")
    args = build_audio_args(audio, OUTPUT_DIR, config, 10)

    assert _value_after(args, "-map") == "0:a:1"
    assert _value_after(args, "-c:a") == "copy"
    assert "-ac" not in args
    assert _value_after(args, "-hls_segment_filename") == os.path.join(OUTPUT_DIR, "audio_1_%03d.ts")
    assert args[-1] == os.path.join(OUTPUT_DIR, "audio_1.m3u8.encoding")


def test_audio_args_reencode_to_stereo_aac(config):
    audio = AudioStreamDescriptor(index=0, name="1", codec="dts")
    args = build_audio_args(audio, OUTPUT_DIR, config, 10)

    assert _value_after(args, "-c:a") == "aac"
    assert _value_after(args, "-ac") == "2"
    assert "-vn" in args and "-sn" in args


def test_subtitle_args_extract_webvtt(config):
    subtitle = SubtitleDescriptor(index=3, title="4")
    args = build_subtitle_args(subtitle, OUTPUT_DIR, config)

    assert _value_after(args, "-map") == "0:s:3"
    assert _value_after(args, "-c:s") == "webvtt"
    assert _value_after(args, "-f") == "webvtt"
    assert args[-1] == os.path.join(OUTPUT_DIR, "subtitles_3.vtt")
