"""
Pytest configuration and shared fakes.

The transcoding tests never launch ffmpeg: ``FakeProcess`` stands in for an
``asyncio.subprocess.Process`` and exits once its stdin is closed, the way
ffmpeg exits after consuming ``pipe:0``.
"""

import asyncio
from pathlib import Path

import pytest
from dotenv import load_dotenv

from torrentflow.configs import settings

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


class InMemorySource:
    """MediaSource over a bytes object, optionally failing after *fail_after* bytes."""

    def __init__(self, data: bytes, chunk_size: int = 16, fail_after: int | None = None, hint: str = ".mkv"):
        self.data = data
        self.chunk_size = chunk_size
        self.fail_after = fail_after
        self.hint = hint
        self.cursors = 0

    @property
    def file_size(self) -> int:
        return len(self.data)

    @property
    def filename_hint(self) -> str:
        return self.hint

    async def stream(self, offset: int = 0, limit: int | None = None):
        self.cursors += 1
        end = len(self.data) if limit is None else min(len(self.data), offset + limit)
        position = offset
        while position < end:
            if self.fail_after is not None and position >= self.fail_after:
                raise OSError("piece not available")
            chunk = self.data[position : min(position + self.chunk_size, end)]
            position += len(chunk)
            yield chunk
            await asyncio.sleep(0)


class FakeStdin:
    def __init__(self):
        self.data = bytearray()
        self._closed = False

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise BrokenPipeError
        self.data += chunk

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class FakeProcess:
    """
    Minimal asyncio.subprocess.Process double.

    Exits with *returncode* once stdin is closed, unless *hang* is set, in
    which case it only exits when terminated or killed. *on_exit* runs before
    a successful exit so tests can drop the files ffmpeg would have written.
    """

    _next_pid = 1000

    def __init__(self, args, returncode=0, stderr=b"", hang=False, on_exit=None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = args
        self.returncode = None
        self.stdin = FakeStdin()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(stderr)
        self.signals = []
        self._exit_code = returncode
        self._hang = hang
        self._on_exit = on_exit

    def _finish(self, returncode: int) -> None:
        if self.returncode is not None:
            return
        if returncode == 0 and self._on_exit is not None:
            self._on_exit(self)
        self.returncode = returncode
        self.stderr.feed_eof()

    async def wait(self) -> int:
        while self.returncode is None:
            if not self._hang and self.stdin.is_closing():
                self._finish(self._exit_code)
                break
            await asyncio.sleep(0.001)
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        self._finish(-15)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self._finish(-9)


class FakeProcessFactory:
    """Replacement for asyncio.create_subprocess_exec recording every spawned process."""

    def __init__(self, behaviour=None, error: OSError | None = None):
        self.behaviour = behaviour
        self.error = error
        self.spawned: list[FakeProcess] = []

    async def __call__(self, *args, **kwargs):
        if self.error is not None:
            raise self.error
        options = self.behaviour(list(args)) if self.behaviour else {}
        process = FakeProcess(list(args), **options)
        self.spawned.append(process)
        return process


@pytest.fixture
def hls_dir(tmp_path, monkeypatch):
    """Isolated HLS working directory with fast readiness settings."""
    path = tmp_path / "hls"
    path.mkdir()
    monkeypatch.setattr(settings, "hls_dir", str(path))
    monkeypatch.setattr(settings, "hls_ready_timeout", 5.0)
    monkeypatch.setattr(settings, "hls_poll_interval", 0.01)
    return path
