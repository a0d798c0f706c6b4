"""
Supervision of the per-track ffmpeg processes.

Each ``TrackJob`` owns one process and one read cursor over the source. The
cursor is copied into the process' stdin by a feeder task while a second
task drains stderr. ``run()`` resolves to a typed ``TrackOutcome`` that the
session aggregates; nothing here decides what a failure means for the
session.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from torrentflow.transcoder.errors import ProcessSpawnFailure, StreamReadError, TranscodeError
from torrentflow.transcoder.media_source import MediaSource
from torrentflow.utils.logging_utils import SessionLoggerAdapter

_LINE_SPLIT_RE = re.compile(rb"[\r\n]")
_STDERR_TAIL_LINES = 20

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]


class TrackKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SUBTITLE = "subtitle"


@dataclass
class TrackOutcome:
    """Result of one track job."""

    kind: TrackKind
    index: int
    returncode: int | None
    error: TranscodeError | None = None

    @property
    def signal(self) -> int | None:
        """Signal number when the process was killed by a signal."""
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.returncode == 0

    def describe(self) -> str:
        if self.error is not None:
            return f"{type(self.error).__name__}: {self.error.message}"
        if self.signal is not None:
            return f"killed by signal {self.signal}"
        return f"exit code {self.returncode}"


class TrackJob:
    def __init__(
        self,
        kind: TrackKind,
        index: int,
        args: list[str],
        source: MediaSource,
        logger: SessionLoggerAdapter,
        *,
        on_stderr_line: Callable[[str], None] | None = None,
        process_factory: ProcessFactory | None = None,
        kill_timeout: float = 5.0,
    ) -> None:
        self.kind = kind
        self.index = index
        self.args = args
        self.source = source
        self.logger = logger.for_track(self.label)
        self.process: asyncio.subprocess.Process | None = None
        self.outcome: TrackOutcome | None = None
        self._on_stderr_line = on_stderr_line
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._kill_timeout = kill_timeout
        self._read_error: StreamReadError | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    @property
    def label(self) -> str:
        if self.kind is TrackKind.VIDEO:
            return self.kind.value
        return f"{self.kind.value}:{self.index}"

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def run(self) -> TrackOutcome:
        """Spawn the process, feed it until it exits and report how it ended."""
        try:
            self.process = await self._process_factory(
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            error = ProcessSpawnFailure(f"Could not launch {self.args[0]}: {e}")
            self.logger.error("Spawn failed: %s", error.message)
            self.outcome = TrackOutcome(self.kind, self.index, None, error)
            return self.outcome

        self.logger.info("Started pid %s", self.process.pid)
        feeder = asyncio.create_task(self._feed_stdin())
        stderr_reader = asyncio.create_task(self._drain_stderr())

        try:
            returncode = await self.process.wait()
        except asyncio.CancelledError:
            feeder.cancel()
            stderr_reader.cancel()
            await self.terminate()
            raise

        if not feeder.done():
            feeder.cancel()
        await asyncio.gather(feeder, stderr_reader, return_exceptions=True)

        self.outcome = TrackOutcome(self.kind, self.index, returncode, self._read_error)
        if self.outcome.succeeded:
            self.logger.info("Finished successfully")
        else:
            self.logger.error(
                "Failed (%s); last ffmpeg output: %s",
                self.outcome.describe(),
                " | ".join(self._stderr_tail) or "<none>",
            )
        return self.outcome

    async def _feed_stdin(self) -> None:
        """Copy this job's own cursor into the process' stdin."""
        stdin = self.process.stdin
        try:
            async with contextlib.aclosing(self.source.stream()) as chunks:
                async for chunk in chunks:
                    stdin.write(chunk)
                    await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # ffmpeg stops reading once it has what it needs (e.g. subtitle extraction).
            self.logger.debug("Process closed its input")
        except Exception as e:
            self._read_error = StreamReadError(f"Source read failed: {e}")
            self.logger.error("Source cursor failed, killing process: %s", e)
            self._kill()
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def _drain_stderr(self) -> None:
        # ffmpeg separates progress updates with '\r', log lines with '\n'.
        buffer = b""
        while True:
            chunk = await self.process.stderr.read(4096)
            if not chunk:
                break
            buffer += chunk
            *lines, buffer = _LINE_SPLIT_RE.split(buffer)
            for line in lines:
                self._handle_stderr_line(line)
        if buffer:
            self._handle_stderr_line(buffer)

    def _handle_stderr_line(self, raw: bytes) -> None:
        line = raw.decode(errors="replace").strip()
        if not line:
            return
        self._stderr_tail.append(line)
        self.logger.debug("ffmpeg: %s", line)
        if self._on_stderr_line is not None:
            self._on_stderr_line(line)

    def _kill(self) -> None:
        if self.running:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()

    async def terminate(self) -> None:
        """SIGTERM the process, escalating to SIGKILL after the grace period."""
        if not self.running:
            return
        with contextlib.suppress(ProcessLookupError):
            self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self._kill_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Did not exit after SIGTERM, killing")
            self._kill()
            await self.process.wait()
