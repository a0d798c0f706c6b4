"""
HLS transcoding sessions.

A session is keyed by ``(source_id, file_idx)`` and owns one directory under
``settings.hls_dir``. Its lifecycle is::

    UNINITIALIZED -> PLANNING -> ENCODING -> READY
                         \\           \\         \\
                          +-----------+---------+--> FAILED

* PLANNING: probe the source and write the placeholder playlists.
* ENCODING: one ffmpeg job per track runs in the background.
* READY: the master playlist and the first ``hls_min_segments`` video
  segments exist (or the video job already finished).
* FAILED: probing failed or the video job failed before READY. The session is dropped
  from the registry and its directory removed, so the next playback
  request starts over.

Exactly one pipeline is started per key: a per-key ``asyncio.Lock`` orders
requests inside a worker and an exclusive claim file inside the session
directory orders workers. A worker that loses the claim serves the session
by polling the directory.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import shutil
from collections.abc import Callable
from enum import Enum

import aiofiles
import aiofiles.os

from torrentflow.configs import settings
from torrentflow.const import (
    CLAIM_FILE,
    MASTER_PLAYLIST,
    VIDEO_PLAYLIST,
    audio_playlist_name,
    subtitle_file_name,
    video_segment_name,
)
from torrentflow.transcoder.container_probe import CodecInfo, probe_codec_info
from torrentflow.transcoder.errors import ReadinessTimeout, SessionFailed, TranscodeError
from torrentflow.transcoder.ffmpeg_commands import (
    build_audio_args,
    build_subtitle_args,
    build_video_args,
    encoding_playlist_path,
)
from torrentflow.transcoder.hls_manifest import write_placeholder_playlists
from torrentflow.transcoder.media_source import MediaSource
from torrentflow.transcoder.subtitles import patch_vtt_timestamp_map
from torrentflow.transcoder.track_jobs import ProcessFactory, TrackJob, TrackKind, TrackOutcome
from torrentflow.utils.logging_utils import SessionLoggerAdapter

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Safety net for the event-driven readiness check, in case ffmpeg is quiet.
_READY_RECHECK_INTERVAL = 1.0

SessionKey = tuple[str, int]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PLANNING = "planning"
    ENCODING = "encoding"
    READY = "ready"
    FAILED = "failed"


def session_dir(hls_dir: str, source_id: str, file_idx: int) -> str:
    """
    Directory of a session.

    The readable part of the name keeps only filesystem-safe characters; the
    digest of the raw id keeps ids that sanitise to the same text apart.
    """
    safe_id = _UNSAFE_PATH_CHARS.sub("_", source_id).strip(".") or "source"
    digest = hashlib.sha256(source_id.encode()).hexdigest()[:12]
    return os.path.join(hls_dir, f"{safe_id}-{digest}", str(file_idx))


def _claim_owner_alive(output_dir: str) -> bool:
    """Whether the process recorded in the claim file of *output_dir* still runs."""
    try:
        with open(os.path.join(output_dir, CLAIM_FILE)) as f:
            pid = int(f.read().strip())
    except (OSError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def clear_stale_sessions(hls_dir: str) -> int:
    """
    Remove session directories left behind by processes that no longer run.

    Directories claimed by a live process (a sibling worker that started
    first) are kept. Returns the number of session directories removed.
    """
    removed = 0
    for source_entry in os.scandir(hls_dir):
        if not source_entry.is_dir(follow_symlinks=False):
            continue
        for session_entry in os.scandir(source_entry.path):
            if session_entry.is_dir(follow_symlinks=False) and not _claim_owner_alive(session_entry.path):
                shutil.rmtree(session_entry.path, ignore_errors=True)
                removed += 1
        try:
            os.rmdir(source_entry.path)
        except OSError:
            # still holds live sessions
            pass
    return removed


def claim_session_dir(output_dir: str) -> bool:
    """
    Atomically claim a session directory.

    Returns True for exactly one caller across all processes sharing the
    filesystem; everyone else gets False.
    """
    os.makedirs(output_dir, exist_ok=True)
    try:
        fd = os.open(os.path.join(output_dir, CLAIM_FILE), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as f:
        f.write(str(os.getpid()))
    return True


def is_ready_on_disk(output_dir: str, min_segments: int) -> bool:
    """Master playlist written and the first *min_segments* video segments present."""
    if not os.path.exists(os.path.join(output_dir, MASTER_PLAYLIST)):
        return False
    return os.path.exists(os.path.join(output_dir, video_segment_name(max(min_segments, 1) - 1)))


async def poll_until_ready(output_dir: str, min_segments: int, timeout: float, interval: float) -> None:
    """
    Readiness gate for sessions owned by another worker: bounded polling.

    Raises:
        SessionFailed: If the directory disappears (the owner gave up on it).
        ReadinessTimeout: If the segments do not appear before *timeout*.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not is_ready_on_disk(output_dir, min_segments):
        if not os.path.isdir(output_dir):
            raise SessionFailed(f"Session directory {output_dir} was removed")
        if loop.time() >= deadline:
            raise ReadinessTimeout(f"No playable segments after {timeout:.0f}s")
        await asyncio.sleep(interval)


class HLSSession:
    def __init__(
        self,
        source_id: str,
        file_idx: int,
        output_dir: str,
        source: MediaSource,
        *,
        process_factory: ProcessFactory | None = None,
        on_failed: Callable[["HLSSession"], None] | None = None,
    ) -> None:
        self.source_id = source_id
        self.file_idx = file_idx
        self.output_dir = output_dir
        self.source = source
        self.state = SessionState.UNINITIALIZED
        self.codec_info: CodecInfo | None = None
        self.jobs: list[TrackJob] = []
        self.outcomes: list[TrackOutcome] = []
        self.failure: TranscodeError | None = None
        self.ready = asyncio.Event()
        self.logger = SessionLoggerAdapter(logger, f"{source_id}/{file_idx}")
        self._process_factory = process_factory
        self._on_failed = on_failed
        self._job_tasks: dict[asyncio.Task, TrackJob] = {}
        self._supervisor: asyncio.Task | None = None

    @property
    def key(self) -> SessionKey:
        return self.source_id, self.file_idx

    async def plan(self) -> None:
        """Probe the source and publish the placeholder playlists."""
        self.state = SessionState.PLANNING
        self.codec_info = await probe_codec_info(self.source, settings.transcode_config)
        await write_placeholder_playlists(self.output_dir, self.codec_info, settings.hls_segment_duration)

    def start(self) -> None:
        """Launch every track job in the background."""
        self.jobs = self._build_jobs()
        self.state = SessionState.ENCODING
        for job in self.jobs:
            self._job_tasks[asyncio.create_task(job.run())] = job
        self._supervisor = asyncio.create_task(self._supervise())
        self.logger.info("Encoding started with %d track jobs", len(self.jobs))

    def _build_jobs(self) -> list[TrackJob]:
        config = settings.transcode_config
        common = {
            "process_factory": self._process_factory,
            "kill_timeout": config.process_kill_timeout,
        }
        jobs = [
            TrackJob(
                TrackKind.VIDEO,
                0,
                build_video_args(
                    self.codec_info,
                    self.output_dir,
                    config,
                    settings.hls_segment_duration,
                    settings.hls_keyframe_interval,
                ),
                self.source,
                self.logger,
                on_stderr_line=self._on_video_output,
                **common,
            )
        ]
        for audio in self.codec_info.audio_streams:
            jobs.append(
                TrackJob(
                    TrackKind.AUDIO,
                    audio.index,
                    build_audio_args(audio, self.output_dir, config, settings.hls_segment_duration),
                    self.source,
                    self.logger,
                    **common,
                )
            )
        for subtitle in self.codec_info.subtitles:
            jobs.append(
                TrackJob(
                    TrackKind.SUBTITLE,
                    subtitle.index,
                    build_subtitle_args(subtitle, self.output_dir, config),
                    self.source,
                    self.logger,
                    **common,
                )
            )
        return jobs

    async def _supervise(self) -> None:
        """Collect job outcomes as they arrive and derive the session state from them."""
        pending = set(self._job_tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                await self._handle_outcome(task.result())

        failed = [o for o in self.outcomes if not o.succeeded]
        self.logger.info(
            "All track jobs finished (%d ok, %d failed), state=%s",
            len(self.outcomes) - len(failed),
            len(failed),
            self.state.value,
        )

    async def _handle_outcome(self, outcome: TrackOutcome) -> None:
        self.outcomes.append(outcome)

        if outcome.kind is TrackKind.VIDEO:
            if outcome.succeeded:
                await self._promote_playlist(VIDEO_PLAYLIST)
                self._mark_ready()
            elif self.state is SessionState.READY:
                # Players already hold the master playlist; keep the segments written so far.
                self.logger.for_track("video").error(
                    "Video job failed after the session became ready (%s)", outcome.describe()
                )
            elif self.state is not SessionState.FAILED:
                await self.fail(SessionFailed(f"Video job failed ({outcome.describe()})"))
            return

        if self.state is SessionState.FAILED:
            return

        if not outcome.succeeded:
            # Audio and subtitle failures only cost that rendition.
            self.logger.for_track(f"{outcome.kind.value}:{outcome.index}").warning(
                "Rendition unavailable (%s)", outcome.describe()
            )
        elif outcome.kind is TrackKind.AUDIO:
            await self._promote_playlist(audio_playlist_name(outcome.index))
        elif outcome.kind is TrackKind.SUBTITLE:
            await patch_vtt_timestamp_map(os.path.join(self.output_dir, subtitle_file_name(outcome.index)))

    async def _promote_playlist(self, name: str) -> None:
        """Replace a placeholder playlist with the one ffmpeg finished writing."""
        target = os.path.join(self.output_dir, name)
        encoded = encoding_playlist_path(target)
        try:
            await aiofiles.os.replace(encoded, target)
        except OSError as e:
            self.logger.warning("Keeping placeholder %s: %s", name, e)

    def _on_video_output(self, _line: str) -> None:
        # Every ffmpeg log line may announce a new segment; checking two paths is cheap.
        self.check_ready()

    def check_ready(self) -> bool:
        if not self.ready.is_set() and is_ready_on_disk(self.output_dir, settings.hls_min_segments):
            self._mark_ready()
        return self.ready.is_set()

    def _mark_ready(self) -> None:
        if self.state in (SessionState.ENCODING, SessionState.PLANNING):
            self.state = SessionState.READY
            self.logger.info("Ready to serve")
        self.ready.set()

    async def fail(self, error: TranscodeError) -> None:
        """Mark the session failed, stop the remaining jobs and wake every waiter."""
        self.failure = error
        self.state = SessionState.FAILED
        self.logger.error("Session failed: %s", error.message)
        self.ready.set()
        await asyncio.gather(*(job.terminate() for job in self.jobs), return_exceptions=True)
        if self._on_failed is not None:
            self._on_failed(self)

    async def wait_until_ready(self, timeout: float) -> None:
        """
        Readiness gate for sessions owned by this worker.

        Raises:
            SessionFailed: If the session failed before or while waiting.
            ReadinessTimeout: If the segments do not appear before *timeout*.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.check_ready():
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ReadinessTimeout(f"No playable segments after {timeout:.0f}s")
            try:
                await asyncio.wait_for(self.ready.wait(), timeout=min(remaining, _READY_RECHECK_INTERVAL))
            except asyncio.TimeoutError:
                continue

        if self.failure is not None:
            raise SessionFailed(self.failure.message)

    async def stop(self) -> None:
        """Cancel every job (terminating its process) and the supervisor."""
        for task in self._job_tasks:
            task.cancel()
        if self._supervisor is not None:
            self._supervisor.cancel()
        await asyncio.gather(*self._job_tasks, return_exceptions=True)
        if self._supervisor is not None:
            await asyncio.gather(self._supervisor, return_exceptions=True)


class SessionManager:
    """Registry of the HLS sessions owned by this worker."""

    def __init__(self, hls_dir: str | None = None, process_factory: ProcessFactory | None = None) -> None:
        self.hls_dir = hls_dir or settings.hls_dir
        self._process_factory = process_factory
        self._sessions: dict[SessionKey, HLSSession] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}

    def get(self, source_id: str, file_idx: int) -> HLSSession | None:
        return self._sessions.get((source_id, file_idx))

    def output_dir(self, source_id: str, file_idx: int) -> str:
        return session_dir(self.hls_dir, source_id, file_idx)

    def _get_lock(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_or_create(self, source_id: str, file_idx: int, source: MediaSource) -> HLSSession | None:
        """
        Return this worker's session for the key, creating it if nobody owns it.

        The request that creates the session waits here for planning only.
        Returns None when another worker owns the session directory.

        Raises:
            ProbeFailure: If the source cannot be probed. Nothing is left behind.
        """
        key = (source_id, file_idx)
        session = self._sessions.get(key)
        if session is not None:
            return session

        async with self._get_lock(key):
            session = self._sessions.get(key)
            if session is not None:
                return session

            output_dir = self.output_dir(source_id, file_idx)
            if not claim_session_dir(output_dir):
                logger.info("[session] %s/%s is owned by another worker", source_id, file_idx)
                return None

            session = HLSSession(
                source_id,
                file_idx,
                output_dir,
                source,
                process_factory=self._process_factory,
                on_failed=self._discard,
            )
            self._sessions[key] = session
            try:
                await session.plan()
            except TranscodeError as e:
                session.failure = e
                session.state = SessionState.FAILED
                session.logger.error("Planning failed: %s", e.message)
                self._discard(session)
                raise
            session.start()
            return session

    def _discard(self, session: HLSSession) -> None:
        """Forget a failed session and delete its output so a retry starts clean."""
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
        shutil.rmtree(session.output_dir, ignore_errors=True)

    async def open_master_playlist(self, source_id: str, file_idx: int, source: MediaSource) -> bytes:
        """
        Make sure a session exists, wait until it is playable and return the master playlist.

        Raises:
            ProbeFailure, SessionFailed, ReadinessTimeout
        """
        session = await self.get_or_create(source_id, file_idx, source)
        if session is not None:
            await session.wait_until_ready(settings.hls_ready_timeout)
            output_dir = session.output_dir
        else:
            output_dir = self.output_dir(source_id, file_idx)
            await poll_until_ready(
                output_dir,
                settings.hls_min_segments,
                settings.hls_ready_timeout,
                settings.hls_poll_interval,
            )

        async with aiofiles.open(os.path.join(output_dir, MASTER_PLAYLIST), "rb") as f:
            return await f.read()

    async def startup(self) -> None:
        # Every worker runs this; sessions claimed by a live sibling must survive.
        if settings.hls_clear_on_startup and os.path.isdir(self.hls_dir):
            removed = await asyncio.to_thread(clear_stale_sessions, self.hls_dir)
            logger.info("[session] Cleared %d leftover sessions in %s", removed, self.hls_dir)
        os.makedirs(self.hls_dir, exist_ok=True)

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(session.stop() for session in sessions), return_exceptions=True)
        logger.info("[session] Stopped %d sessions", len(sessions))


session_manager = SessionManager()
