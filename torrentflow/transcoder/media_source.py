"""
Media source protocol for the torrent payload.

Decouples the probe, the track jobs and the range server from the torrent
engine. Every ``stream()`` call opens an independent read cursor, so each
track pipeline can consume the same file at its own pace.
"""

import logging
import os
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import aiofiles

logger = logging.getLogger(__name__)


@runtime_checkable
class MediaSource(Protocol):
    """What the transcoder and the range server need from a torrent file."""

    @property
    def file_size(self) -> int: ...

    @property
    def filename_hint(self) -> str:
        """Lowercase extension such as ``.mkv``, or ``""`` when the name has none."""
        ...

    def stream(self, offset: int = 0, limit: int | None = None) -> AsyncIterator[bytes]:
        """Read up to *limit* bytes from *offset*; each call is a fresh cursor."""
        ...


class LocalFileMediaSource:
    """MediaSource backed by a payload file the torrent client writes to disk."""

    def __init__(self, path: str, file_size: int | None = None, chunk_size: int = 64 * 1024) -> None:
        self._path = path
        self._file_size = file_size if file_size is not None else os.path.getsize(path)
        self._filename_hint = os.path.splitext(path)[1].lower()
        self._chunk_size = chunk_size

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def filename_hint(self) -> str:
        return self._filename_hint

    async def stream(self, offset: int = 0, limit: int | None = None) -> AsyncIterator[bytes]:
        remaining = self._file_size - offset if limit is None else min(limit, self._file_size - offset)
        if remaining <= 0:
            return

        async with aiofiles.open(self._path, "rb") as f:
            await f.seek(offset)
            while remaining > 0:
                chunk = await f.read(min(self._chunk_size, remaining))
                if not chunk:
                    logger.debug("[media_source] Short read at offset %d of %s", offset, self._path)
                    break
                remaining -= len(chunk)
                offset += len(chunk)
                yield chunk
