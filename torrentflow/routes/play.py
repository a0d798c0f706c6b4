"""
Playback routes for torrent files.

- /play/{source_id}/{file_idx}/stream - Byte-range streaming of the original file
- /play/{source_id}/{file_idx}/hls - HLS master playlist (starts transcoding)
- /play/{source_id}/{file_idx}/hls/{name} - Session playlists, segments and subtitles
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response

from torrentflow.schemas import DeliveryType
from torrentflow.torrent.engine import TorrentEngine, TorrentFile, resolve_torrent, torrent_engine
from torrentflow.transcoder.transcode_handler import handle_hls_file, handle_hls_play, handle_range_stream

logger = logging.getLogger(__name__)
play_router = APIRouter()

FileIndex = Annotated[int, Path(ge=0, description="Index of the file inside the torrent.")]


def get_torrent_engine() -> TorrentEngine:
    return torrent_engine


async def get_torrent_file(
    source_id: str,
    file_idx: FileIndex,
    engine: Annotated[TorrentEngine, Depends(get_torrent_engine)],
) -> TorrentFile:
    """Resolve the requested file, 404 when the torrent or the index is unknown."""
    torrent = await resolve_torrent(engine, source_id)
    if torrent is None:
        raise HTTPException(status_code=404, detail=f"Unknown source {source_id}")
    if file_idx >= len(torrent.files):
        raise HTTPException(status_code=404, detail=f"Source {source_id} has no file {file_idx}")
    return torrent.files[file_idx]


@play_router.head("/{source_id}/{file_idx}/hls/{name}")
@play_router.get("/{source_id}/{file_idx}/hls/{name}")
async def hls_file(request: Request, source_id: str, file_idx: FileIndex, name: str) -> Response:
    """
    Serve a file of a running HLS session.

    Args:
        request: The incoming HTTP request
        source_id: Identifier of the torrent
        file_idx: Index of the file inside the torrent
        name: Playlist, segment or subtitle name as referenced by the master playlist

    Returns:
        The playlist, MPEG-TS segment or WebVTT file
    """
    return await handle_hls_file(request, source_id, file_idx, name)


@play_router.head("/{source_id}/{file_idx}/{delivery}")
@play_router.get("/{source_id}/{file_idx}/{delivery}")
async def play(
    request: Request,
    source_id: str,
    file_idx: FileIndex,
    delivery: DeliveryType,
    torrent_file: Annotated[TorrentFile, Depends(get_torrent_file)],
) -> Response:
    """
    Play a torrent file.

    Args:
        request: The incoming HTTP request
        source_id: Identifier of the torrent
        file_idx: Index of the file inside the torrent
        delivery: ``stream`` for byte ranges, ``hls`` for the transcoded playlist
        torrent_file: The resolved file inside the torrent

    Returns:
        A 206 byte range for ``stream``, the master playlist for ``hls``
    """
    logger.debug("[play] %s %s/%s via %s", request.method, source_id, file_idx, delivery)
    if delivery == "stream":
        return await handle_range_stream(request, torrent_file)
    return await handle_hls_play(request, source_id, file_idx, torrent_file)
