import asyncio
import logging

import pytest

from torrentflow.transcoder.errors import ProcessSpawnFailure, StreamReadError
from torrentflow.transcoder.track_jobs import TrackJob, TrackKind
from torrentflow.utils.logging_utils import SessionLoggerAdapter

from conftest import FakeProcessFactory, InMemorySource

ARGS = ["ffmpeg", "-i", "pipe:0", "out.m3u8"]


def _job(factory, source, kind=TrackKind.AUDIO, index=1, **kwargs) -> TrackJob:
    logger = SessionLoggerAdapter(logging.getLogger("tests"), "abc/0")
    return TrackJob(kind, index, ARGS, source, logger, process_factory=factory, kill_timeout=0.1, **kwargs)


@pytest.mark.asyncio
async def test_job_feeds_its_own_cursor_and_succeeds():
    factory = FakeProcessFactory()
    source = InMemorySource(b"0123456789" * 10)

    outcome = await _job(factory, source).run()

    assert outcome.succeeded
    assert outcome.returncode == 0
    assert (outcome.kind, outcome.index) == (TrackKind.AUDIO, 1)
    assert bytes(factory.spawned[0].stdin.data) == source.data
    assert factory.spawned[0].args == ARGS
    assert source.cursors == 1


@pytest.mark.asyncio
async def test_job_reports_non_zero_exit():
    factory = FakeProcessFactory(lambda args: {"returncode": 1, "stderr": b"Invalid data found\n"})

    outcome = await _job(factory, InMemorySource(b"x" * 32)).run()

    assert not outcome.succeeded
    assert outcome.error is None
    assert outcome.describe() == "exit code 1"


@pytest.mark.asyncio
async def test_spawn_failure_becomes_outcome():
    factory = FakeProcessFactory(error=FileNotFoundError(2, "No such file or directory", "ffmpeg"))

    outcome = await _job(factory, InMemorySource(b"x")).run()

    assert outcome.returncode is None
    assert isinstance(outcome.error, ProcessSpawnFailure)
    assert not outcome.succeeded


@pytest.mark.asyncio
async def test_source_read_error_kills_only_that_process():
    factory = FakeProcessFactory(lambda args: {"hang": True})
    failing = InMemorySource(b"x" * 64, fail_after=32)
    healthy = InMemorySource(b"y" * 64)

    failed, succeeded = await asyncio.gather(
        _job(factory, failing, index=0).run(),
        _job(FakeProcessFactory(), healthy, index=1).run(),
    )

    assert isinstance(failed.error, StreamReadError)
    assert failed.signal == 9
    assert factory.spawned[0].signals == ["SIGKILL"]
    assert succeeded.succeeded


@pytest.mark.asyncio
async def test_stderr_lines_are_split_on_carriage_returns():
    lines = []
    stderr = b"Opening 'segment_000.ts' for writing\rframe=  10 fps=0.0\nOpening 'segment_001.ts' for writing\n"
    factory = FakeProcessFactory(lambda args: {"stderr": stderr})

    await _job(factory, InMemorySource(b"x" * 16), kind=TrackKind.VIDEO, index=0, on_stderr_line=lines.append).run()

    assert lines == [
        "Opening 'segment_000.ts' for writing",
        "frame=  10 fps=0.0",
        "Opening 'segment_001.ts' for writing",
    ]


@pytest.mark.asyncio
async def test_cancelled_job_terminates_its_process():
    factory = FakeProcessFactory(lambda args: {"hang": True})
    job = _job(factory, InMemorySource(b"x" * 16), kind=TrackKind.VIDEO, index=0)

    task = asyncio.create_task(job.run())
    while not factory.spawned:
        await asyncio.sleep(0.001)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    process = factory.spawned[0]
    assert process.signals == ["SIGTERM"]
    assert process.returncode == -15
    assert not job.running


def test_job_labels():
    source = InMemorySource(b"")
    assert _job(None, source, kind=TrackKind.VIDEO, index=0).label == "video"
    assert _job(None, source, kind=TrackKind.SUBTITLE, index=2).label == "subtitle:2"
