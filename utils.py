"""
Utilities for URL validation, trim parsing and naming.
"""

import logging
import re
from typing import Optional
from urllib.parse import parse_qs, quote, urlparse

from config import (
    PLAYLIST_ID_RE,
    PLAYLIST_QUERY_ID_RE,
    VIDEO_ID_RE,
    VIDEO_PATH_RE,
    YOUTU_BE_HOSTS,
    YOUTUBE_HOSTS,
)
from models import TrimWindow

logger = logging.getLogger(__name__)


def extract_video_id(url: str) -> Optional[str]:
    """Return the video id of a YouTube watch/short/embed URL, or None."""
    if not url or len(url) > 2000:
        return None

    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"}:
        return None

    host = (parsed.hostname or "").lower()
    if host in YOUTU_BE_HOSTS:
        candidate = parsed.path.lstrip("/").split("/", 1)[0]
        return candidate if VIDEO_ID_RE.match(candidate) else None

    if host not in YOUTUBE_HOSTS:
        return None

    if parsed.path in ("/watch", "/watch/"):
        candidate = parse_qs(parsed.query).get("v", [""])[0]
        return candidate if VIDEO_ID_RE.match(candidate) else None

    match = VIDEO_PATH_RE.match(parsed.path)
    return match.group("id") if match else None


def is_valid_video_url(url: str) -> bool:
    return extract_video_id(url) is not None


def extract_playlist_id(value: str) -> Optional[str]:
    """Accept a playlist URL carrying ``list=`` or a bare playlist id."""
    if not value:
        return None

    value = value.strip()
    if PLAYLIST_ID_RE.match(value):
        return value

    try:
        parsed = urlparse(value)
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    if host not in YOUTUBE_HOSTS and host not in YOUTU_BE_HOSTS:
        return None

    candidate = parse_qs(parsed.query).get("list", [""])[0]
    return candidate if PLAYLIST_QUERY_ID_RE.match(candidate) else None


def parse_timestamp(value: Optional[str]) -> Optional[float]:
    """
    Parse seconds from ``SS``, ``MM:SS`` or ``HH:MM:SS`` (fractions allowed).

    Returns None for anything that is not a finite number.
    """
    if value is None:
        return None

    text = str(value).strip()
    if not text:
        return None

    sign = -1.0 if text.startswith("-") else 1.0
    parts = text.lstrip("-").split(":")
    if len(parts) > 3:
        return None

    total = 0.0
    for part in parts:
        if not re.fullmatch(r"\d+(?:\.\d+)?", part.strip()):
            return None
        total = total * 60 + float(part)
    return sign * total


def parse_trim(start_time: Optional[str], duration: Optional[str]) -> Optional[TrimWindow]:
    """
    Build a trim window from raw query values.

    A missing start, a negative start or a duration that is not a positive
    number disables trimming instead of failing the request.
    """
    if start_time is None and duration is None:
        return None

    start = parse_timestamp(start_time)
    length = parse_timestamp(duration)
    if start is None or length is None or start < 0 or length <= 0:
        logger.debug("Ignoring trim window start=%r duration=%r", start_time, duration)
        return None
    return TrimWindow(start=start, duration=length)


def make_task_id(source_url: str, track_selector: str) -> str:
    """Deterministic task id for single downloads."""
    return f"{source_url}-{track_selector}"


def build_download_base(prefix: str, route: str, url: str) -> str:
    """Download link prefix the caller completes with an itag."""
    return f"{prefix}/{route}/download?url={quote(url, safe='')}&itag="


def format_percent(progress: Optional[float]) -> str:
    if progress is None:
        return "?"
    return f"{progress:.1f}%"
