import pytest

from torrentflow.configs import TranscodeConfig
from torrentflow.transcoder import container_probe
from torrentflow.transcoder.container_probe import parse_probe_output, probe_codec_info
from torrentflow.transcoder.errors import ProbeFailure, ProcessSpawnFailure

from conftest import InMemorySource

FFPROBE_OUTPUT = {
    "format": {"duration": "5423.104000", "format_name": "matroska,webm"},
    "streams": [
        {"index": 0, "codec_type": "video", "codec_name": "hevc", "pix_fmt": "yuv420p10le"},
        {"index": 1, "codec_type": "audio", "codec_name": "eac3", "tags": {"language": "eng", "title": "Atmos"}},
        {"index": 2, "codec_type": "audio", "codec_name": "aac", "tags": {"LANGUAGE": "ita"}},
        {"index": 3, "codec_type": "subtitle", "codec_name": "subrip", "tags": {"language": "eng"}},
        {"index": 4, "codec_type": "subtitle", "codec_name": "hdmv_pgs_subtitle", "tags": {"language": "eng"}},
        {"index": 5, "codec_type": "subtitle", "codec_name": "ass", "tags": {"title": "English FORCED"}},
    ],
}


def test_parse_probe_output_video_and_duration():
    info = parse_probe_output(FFPROBE_OUTPUT)

    assert info.duration == pytest.approx(5423.104)
    assert info.video_codec == "hevc"
    assert info.pixel_format == "yuv420p10le"


def test_parse_probe_output_audio_descriptors():
    first, second = parse_probe_output(FFPROBE_OUTPUT).audio_streams

    assert (first.index, first.name, first.language, first.codec, first.default) == (0, "Atmos", "eng", "eac3", True)
    assert (second.index, second.name, second.language, second.codec, second.default) == (1, "2", "ita", "aac", False)


def test_parse_probe_output_skips_bitmap_subtitles_keeping_indices():
    subtitles = parse_probe_output(FFPROBE_OUTPUT).subtitles

    assert [s.index for s in subtitles] == [0, 2]
    assert subtitles[0].title == "1"
    assert subtitles[0].language == "eng"
    assert subtitles[0].default is True
    assert subtitles[0].forced is False
    assert subtitles[1].title == "English FORCED"
    assert subtitles[1].language == "unknown"
    assert subtitles[1].forced is True
    assert subtitles[1].default is False


@pytest.mark.parametrize("fmt", [{}, {"duration": "N/A"}, {"duration": "0"}, {"duration": "nan"}])
def test_parse_probe_output_falls_back_to_default_duration(fmt):
    info = parse_probe_output({"format": fmt, "streams": []}, default_duration=1234.0)

    assert info.duration == 1234.0
    assert info.video_codec is None
    assert info.audio_streams == ()
    assert info.subtitles == ()


@pytest.mark.asyncio
async def test_probe_reads_only_the_probe_window(monkeypatch):
    seen = []

    async def fake_ffprobe(header_data, config):
        seen.append(header_data)
        return FFPROBE_OUTPUT

    monkeypatch.setattr(container_probe, "_run_ffprobe", fake_ffprobe)
    source = InMemorySource(bytes(range(256)) * 8, chunk_size=100)

    info = await probe_codec_info(source, TranscodeConfig(probe_size=300, probe_attempts=1))

    assert seen == [source.data[:300]]
    assert len(info.audio_streams) == 2


@pytest.mark.asyncio
async def test_probe_retries_while_leading_pieces_are_missing(monkeypatch):
    calls = []

    async def flaky_ffprobe(header_data, config):
        calls.append(header_data)
        if len(calls) == 1:
            raise ProbeFailure("Invalid data found when processing input")
        return FFPROBE_OUTPUT

    monkeypatch.setattr(container_probe, "_run_ffprobe", flaky_ffprobe)

    info = await probe_codec_info(InMemorySource(b"x" * 64), TranscodeConfig(probe_attempts=2))

    assert len(calls) == 2
    assert info.video_codec == "hevc"


@pytest.mark.asyncio
async def test_probe_of_empty_source_fails():
    with pytest.raises(ProbeFailure):
        await probe_codec_info(InMemorySource(b""), TranscodeConfig(probe_attempts=1))


@pytest.mark.asyncio
async def test_missing_ffprobe_is_a_spawn_failure():
    config = TranscodeConfig(ffprobe_path="/nonexistent/bin/ffprobe", probe_attempts=3)

    with pytest.raises(ProcessSpawnFailure):
        await probe_codec_info(InMemorySource(b"\x1a\x45\xdf\xa3" * 16), config)
