class TranscodeError(Exception):
    """Base exception for the HLS transcoding pipeline."""

    status_code = 502

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProbeFailure(TranscodeError):
    """Codec metadata could not be extracted from the source prefix."""


class ProcessSpawnFailure(TranscodeError):
    """An external tool is missing or could not be launched."""


class StreamReadError(TranscodeError):
    """A source cursor failed while feeding a track process."""


class SessionFailed(TranscodeError):
    """The session's video job failed, no playable output will appear."""


class ReadinessTimeout(TranscodeError):
    """The minimum segment count was not reached before the deadline."""

    status_code = 504


class RangeUnsatisfiable(TranscodeError):
    """The Range header is missing, malformed or outside the file."""

    status_code = 416

    def __init__(self, message: str, file_size: int):
        self.file_size = file_size
        super().__init__(message)
