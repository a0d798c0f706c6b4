"""
Request handlers for both delivery modes of a torrent file.

**Range streaming** (``handle_range_stream``):
  The original container is served byte-for-byte. Every request opens its
  own cursor over the torrent file, so players can seek freely.

**HLS** (``handle_hls_play`` / ``handle_hls_file``):
  The first request for a ``(source_id, file_idx)`` plans a session and is
  held until the first video segments exist; the master playlist it returns
  points at ``hls/<name>`` which ``handle_hls_file`` serves from the session
  directory.
"""

import asyncio
import logging
import mimetypes
import os

from fastapi import Request, Response
from starlette.responses import FileResponse

from torrentflow.const import HLS_CONTENT_TYPE, SESSION_FILE_CONTENT_TYPES, SESSION_FILE_PATTERN
from torrentflow.torrent.engine import TorrentFile
from torrentflow.transcoder.errors import RangeUnsatisfiable, TranscodeError
from torrentflow.transcoder.session import session_manager
from torrentflow.utils.http_utils import RangeStreamingResponse, parse_range_header

logger = logging.getLogger(__name__)


def get_content_type(file_name: str) -> str:
    """Determine content type from the file name inside the torrent."""
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: An HTTP response corresponding to the exception type.
    """
    if isinstance(exception, RangeUnsatisfiable):
        logger.info(f"[range] {exception.message}")
        return Response(status_code=416, headers={"content-range": f"bytes */{exception.file_size}"})
    elif isinstance(exception, TranscodeError):
        logger.error(f"[hls] {type(exception).__name__}: {exception.message}")
        return Response(status_code=exception.status_code, content=exception.message)
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return Response(status_code=502, content=f"Internal server error: {exception}")


async def handle_range_stream(request: Request, torrent_file: TorrentFile) -> Response:
    """
    Serve a byte range of a torrent file.

    HEAD answers with the full length and no body. GET requires a single
    satisfiable range and answers 206 with exactly that span.
    """
    file_size = torrent_file.length
    content_type = get_content_type(torrent_file.path)

    if request.method == "HEAD":
        return Response(
            headers={
                "content-type": content_type,
                "content-length": str(file_size),
                "accept-ranges": "bytes",
            }
        )

    try:
        start, end = parse_range_header(request.headers.get("range"), file_size)
    except RangeUnsatisfiable as e:
        return handle_exceptions(e)

    content_length = end - start + 1
    source = torrent_file.open_source()

    async def stream_content():
        try:
            async for chunk in source.stream(offset=start, limit=content_length):
                yield chunk
        except asyncio.CancelledError:
            # Client disconnected (e.g., seeking in video player) - this is normal
            logger.debug("[range] Stream cancelled by client")
        except GeneratorExit:
            logger.debug("[range] Stream generator closed")
        except OSError as e:
            # Headers are already sent; ending the body is all that is left.
            logger.error(f"[range] Error reading {torrent_file.path}: {e}")

    return RangeStreamingResponse(
        stream_content(),
        status_code=206,
        headers={
            "content-range": f"bytes {start}-{end}/{file_size}",
            "content-length": str(content_length),
            "accept-ranges": "bytes",
        },
        media_type=content_type,
    )


async def handle_hls_play(request: Request, source_id: str, file_idx: int, torrent_file: TorrentFile) -> Response:
    """
    Return the master playlist of the file's HLS session, starting the session if needed.

    HEAD is answered from the torrent metadata alone and never starts a session.
    """
    if request.method == "HEAD":
        return Response(
            headers={
                "content-type": HLS_CONTENT_TYPE,
                "content-length": str(torrent_file.length),
            }
        )

    try:
        playlist = await session_manager.open_master_playlist(source_id, file_idx, torrent_file.open_source())
    except TranscodeError as e:
        return handle_exceptions(e)

    return Response(content=playlist, media_type=HLS_CONTENT_TYPE, headers={"cache-control": "no-cache"})


async def handle_hls_file(request: Request, source_id: str, file_idx: int, name: str) -> Response:
    """Serve a playlist, segment or subtitle file of an existing session."""
    if not SESSION_FILE_PATTERN.match(name):
        return Response(status_code=404, content="Unknown HLS file")

    path = os.path.join(session_manager.output_dir(source_id, file_idx), name)
    if not os.path.isfile(path):
        return Response(status_code=404, content="HLS file not available")

    media_type = SESSION_FILE_CONTENT_TYPES[os.path.splitext(name)[1]]
    if request.method == "HEAD":
        return Response(headers={"content-type": media_type, "content-length": str(os.path.getsize(path))})
    # Playlists are rewritten when a track finishes.
    headers = {"cache-control": "no-cache"} if name.endswith(".m3u8") else None
    return FileResponse(path, media_type=media_type, headers=headers)
