import logging
from typing import Any, MutableMapping


class SessionLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attributes records to a transcoding session and track.

    Messages are prefixed with ``[<source_id>/<file_idx>]`` or
    ``[<source_id>/<file_idx> audio:1]`` and the identity is also attached as
    ``session`` / ``track`` record attributes for structured handlers.
    """

    def __init__(self, logger: logging.Logger, session: str, track: str | None = None):
        super().__init__(logger, {"session": session, "track": track})

    def for_track(self, track: str) -> "SessionLoggerAdapter":
        return SessionLoggerAdapter(self.logger, self.extra["session"], track)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        session = self.extra["session"]
        track = self.extra["track"]
        prefix = f"[{session} {track}]" if track else f"[{session}]"
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return f"{prefix} {msg}", kwargs
