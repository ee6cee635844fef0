"""
Environment-driven configuration for the download-and-mux service.
"""

import os
import re
from typing import Any, Dict


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "5000"))
CORS_ORIGIN: str = os.getenv("CORS_ORIGIN", "").strip()
API_PREFIX: str = os.getenv("API_PREFIX", "/api/v1/downloads").rstrip("/")

SCRATCH_DIR: str = os.getenv("SCRATCH_DIR", "").strip()
TEMP_DIR_PREFIX: str = "tubemux_"

FETCH_CHUNK_SIZE: int = int(os.getenv("FETCH_CHUNK_SIZE", str(64 * 1024)))
FETCH_TIMEOUT_SECONDS: int = int(os.getenv("FETCH_TIMEOUT_SECONDS", "600"))

FFMPEG_BINARY: str = os.getenv("FFMPEG_BINARY", "ffmpeg").strip() or "ffmpeg"
FFMPEG_TERMINATE_GRACE_SECONDS: float = float(os.getenv("FFMPEG_TERMINATE_GRACE_SECONDS", "5"))

SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "256"))

# The audio leg always uses the best audio-only rendition.
BEST_AUDIO_SELECTOR: str = "bestaudio"

VIDEO_ATTACHMENT_NAME: str = "video.mp4"
AUDIO_ATTACHMENT_NAME: str = "audio.mp3"
PLAYLIST_ATTACHMENT_NAME: str = "playlist.zip"

YTDLP_COOKIES_FILE: str = os.getenv("YTDLP_COOKIES_FILE", "").strip()

YTDL_BASE_OPTS: Dict[str, Any] = {
    "quiet": True,
    "no_warnings": True,
    "noplaylist": True,
    "skip_download": True,
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/121.0.0.0 Safari/537.36"
    ),
}

YOUTUBE_HOSTS: tuple[str, ...] = (
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "gaming.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
)
YOUTU_BE_HOSTS: tuple[str, ...] = ("youtu.be", "www.youtu.be")

VIDEO_ID_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9_-]{11}$")
VIDEO_PATH_RE: re.Pattern[str] = re.compile(
    r"^/(?:embed|shorts|v|e|live)/(?P<id>[A-Za-z0-9_-]{11})(?:[/?#]|$)"
)
PLAYLIST_ID_RE: re.Pattern[str] = re.compile(r"^(?:PL|UU|LL|RD|OL|FL|UL)[A-Za-z0-9_-]{10,}$")
PLAYLIST_QUERY_ID_RE: re.Pattern[str] = re.compile(r"^[A-Za-z0-9_-]{10,}$")
