"""
HLS transcoding package.

Turns one torrent file into an HLS session with an ffmpeg process per track:

- media_source: MediaSource protocol, one read cursor per stream() call
- codec_utils: HLS-compatible codec sets and copy-vs-reencode decisions
- container_probe: ffprobe over the leading bytes of the source
- hls_manifest: placeholder media playlists and the master playlist
- ffmpeg_commands: argument builders for the video, audio and subtitle jobs
- subtitles: WebVTT timestamp alignment with the MPEG-TS segments
- track_jobs: spawning, feeding and supervising one ffmpeg process
- session: session lifecycle, registry and readiness gate
- transcode_handler: request handlers for range streaming and HLS
"""
