import os
import tempfile

from pydantic import Field
from pydantic_settings import BaseSettings


class TranscodeConfig(BaseSettings):
    """FFmpeg / ffprobe configuration for the HLS pipeline"""

    ffmpeg_path: str = Field("ffmpeg", description="Path to the ffmpeg executable.")
    ffprobe_path: str = Field("ffprobe", description="Path to the ffprobe executable.")
    ffmpeg_loglevel: str = Field(
        "info", description="ffmpeg log level. 'info' or more verbose is needed to follow segment progress."
    )
    video_preset: str = Field("ultrafast", description="x264 preset used when the video has to be re-encoded.")
    audio_channels: int = Field(2, description="Channel count of re-encoded audio tracks.")
    probe_size: int = Field(512 * 1024, description="Number of leading bytes handed to ffprobe.")
    probe_timeout: float = Field(30.0, description="Timeout for a single ffprobe run in seconds.")
    probe_attempts: int = Field(3, description="How many times the probe is attempted before giving up.")
    default_duration: float = Field(3600.0, description="Duration assumed when the probe cannot determine one.")
    process_kill_timeout: float = Field(5.0, description="Grace period between SIGTERM and SIGKILL.")

    class Config:
        env_file = ".env"
        env_prefix = "TRANSCODE_"
        extra = "ignore"


class Settings(BaseSettings):
    api_password: str | None = None  # The password for protecting the API endpoints.
    log_level: str = "INFO"  # The logging level to use.
    transcode_config: TranscodeConfig = Field(default_factory=TranscodeConfig)  # Configuration for ffmpeg jobs.
    downloads_dir: str = os.path.join(tempfile.gettempdir(), "torrentflow", "downloads")  # Torrent payload root.
    hls_dir: str = os.path.join(tempfile.gettempdir(), "torrentflow", "hls")  # Root of the per-session directories.
    hls_clear_on_startup: bool = True  # Whether to wipe leftover sessions on startup (transcodes are not resumed).
    hls_segment_duration: int = 10  # Nominal HLS segment length in seconds.
    hls_keyframe_interval: int = 250  # GOP size in frames for re-encoded video.
    hls_min_segments: int = 5  # Number of video segments that must exist before the master playlist is served.
    hls_ready_timeout: float = 120.0  # Maximum time a playback request waits for the first segments.
    hls_poll_interval: float = 0.1  # Poll interval used when the session belongs to another worker.
    vtt_mpegts_offset: int = 135000  # MPEG-TS time the subtitle local zero is mapped to (90 kHz clock).
    stream_chunk_size: int = 64 * 1024  # Chunk size for reading torrent payload files.

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
