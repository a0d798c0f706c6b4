import logging
import re
import typing

import anyio
import h11
from starlette.responses import StreamingResponse
from starlette.types import Send

from torrentflow.transcoder.errors import RangeUnsatisfiable

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def parse_range_header(range_header: typing.Optional[str], file_size: int) -> tuple[int, int]:
    """
    Parse a single-range HTTP Range header.

    Args:
        range_header: The Range header value (e.g., "bytes=0-999", "bytes=500-", "bytes=-500")
        file_size: Total file size

    Returns:
        Tuple of inclusive (start, end) byte positions. An end past the file is clamped.

    Raises:
        RangeUnsatisfiable: If the header is missing, malformed, a multi-range,
            reversed (start > end) or starts at or beyond the end of the file.
    """
    if not range_header:
        raise RangeUnsatisfiable("Missing Range header", file_size)

    match = _RANGE_RE.match(range_header.strip())
    if not match:
        raise RangeUnsatisfiable(f"Unsupported Range header: {range_header}", file_size)

    start_str, end_str = match.groups()

    if start_str:
        start = int(start_str)
        end = int(end_str) if end_str else file_size - 1
    elif end_str:
        # Suffix range: last N bytes
        suffix_length = int(end_str)
        if suffix_length == 0:
            raise RangeUnsatisfiable("Empty suffix range", file_size)
        start = max(0, file_size - suffix_length)
        end = file_size - 1
    else:
        raise RangeUnsatisfiable(f"Empty Range header: {range_header}", file_size)

    if start > end or start >= file_size:
        raise RangeUnsatisfiable(f"Range {start}-{end} not satisfiable for {file_size} bytes", file_size)

    return start, min(end, file_size - 1)


class RangeStreamingResponse(StreamingResponse):
    """
    Streaming response for one byte range of a torrent payload.

    Starlette drives the body and stops it when the player disconnects, which
    releases the source cursor on every seek. The Content-Length of partial
    responses is kept since players match it against the requested span. A
    source that ends short of it or a socket that goes away is logged
    instead of surfacing as a server error.
    """

    sent_bytes = 0

    async def stream_response(self, send: Send) -> None:
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        try:
            async for chunk in self.body_iterator:
                if isinstance(chunk, str):
                    chunk = chunk.encode(self.charset)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.sent_bytes += len(chunk)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info("Player went away after %d bytes", self.sent_bytes)
        except h11.LocalProtocolError as e:
            logger.warning("Source ended after %d of the announced bytes: %s", self.sent_bytes, e)
