"""
Torrent engine collaborator.

The HLS and range paths only need three things from the torrent side: find
(or add) a torrent, list its files with their lengths, and open independent
read cursors over a file. ``TorrentEngine`` captures that; piece selection,
peers and the source catalog live behind it.

``LocalTorrentEngine`` serves payloads a torrent client downloads into
``settings.downloads_dir/<source_id>/``.
"""

import asyncio
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from torrentflow.configs import settings
from torrentflow.transcoder.media_source import LocalFileMediaSource, MediaSource

logger = logging.getLogger(__name__)


@dataclass
class TorrentFile:
    path: str  # path inside the torrent, used for content-type detection
    length: int
    source_factory: Callable[[], MediaSource] = field(repr=False)

    def open_source(self) -> MediaSource:
        return self.source_factory()


@dataclass
class TorrentHandle:
    source_id: str
    files: Sequence[TorrentFile]


@runtime_checkable
class TorrentEngine(Protocol):
    async def get_torrent(self, source_id: str) -> TorrentHandle | None:
        """Return an already known torrent, or None."""
        ...

    async def add_torrent(self, source_ref: str) -> TorrentHandle | None:
        """Start a torrent from a catalog reference, or None if it cannot be resolved."""
        ...


async def resolve_torrent(engine: TorrentEngine, source_id: str) -> TorrentHandle | None:
    """Look a torrent up, adding it to the engine on first use."""
    torrent = await engine.get_torrent(source_id)
    if torrent is None:
        logger.info("[torrent] %s not loaded yet, adding it", source_id)
        torrent = await engine.add_torrent(source_id)
    return torrent


class LocalTorrentEngine:
    """TorrentEngine over a directory of torrent payloads, one entry per source id."""

    def __init__(self, root: str | None = None, chunk_size: int | None = None) -> None:
        self.root = root or settings.downloads_dir
        self.chunk_size = chunk_size or settings.stream_chunk_size
        self._torrents: dict[str, TorrentHandle] = {}

    def _payload_path(self, source_id: str) -> str | None:
        root = os.path.realpath(self.root)
        path = os.path.realpath(os.path.join(root, source_id))
        if os.path.dirname(path) != root:
            return None
        return path

    def _scan(self, source_id: str) -> TorrentHandle | None:
        path = self._payload_path(source_id)
        if path is None or not os.path.exists(path):
            return None

        if os.path.isfile(path):
            paths = [(os.path.basename(path), path)]
        else:
            paths = []
            for dirpath, _dirnames, filenames in os.walk(path):
                for filename in filenames:
                    full_path = os.path.join(dirpath, filename)
                    paths.append((os.path.relpath(full_path, path), full_path))
            paths.sort()

        files = [
            TorrentFile(
                path=relative,
                length=os.path.getsize(full_path),
                source_factory=lambda p=full_path: LocalFileMediaSource(p, chunk_size=self.chunk_size),
            )
            for relative, full_path in paths
        ]
        return TorrentHandle(source_id=source_id, files=files)

    async def get_torrent(self, source_id: str) -> TorrentHandle | None:
        return self._torrents.get(source_id)

    async def add_torrent(self, source_ref: str) -> TorrentHandle | None:
        torrent = await asyncio.to_thread(self._scan, source_ref)
        if torrent is None:
            logger.warning("[torrent] No payload for %s under %s", source_ref, self.root)
            return None
        self._torrents[source_ref] = torrent
        logger.info("[torrent] Loaded %s with %d files", source_ref, len(torrent.files))
        return torrent


torrent_engine = LocalTorrentEngine()
