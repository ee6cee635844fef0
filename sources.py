"""
Media source backed by yt-dlp metadata and direct HTTP streaming.
"""

import asyncio
import logging
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiofiles
import aiohttp

from config import (
    BEST_AUDIO_SELECTOR,
    FETCH_CHUNK_SIZE,
    FETCH_TIMEOUT_SECONDS,
    YTDL_BASE_OPTS,
    YTDLP_COOKIES_FILE,
)
from errors import MetadataFetchFailed, StageFailure, TrackUnavailable
from models import (
    MediaInfo,
    PlaylistEntry,
    PlaylistInfo,
    ResolvedMedia,
    StreamControl,
    TrackDescriptor,
)
from utils import extract_playlist_id, is_valid_video_url

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], None]

STREAMABLE_PROTOCOLS = {"http", "https"}


def _is_video_only(fmt: Dict[str, Any]) -> bool:
    return fmt.get("vcodec") not in (None, "none") and fmt.get("acodec") == "none"


def _is_audio_only(fmt: Dict[str, Any]) -> bool:
    return fmt.get("acodec") not in (None, "none") and fmt.get("vcodec") == "none"


def _quality_label(fmt: Dict[str, Any]) -> Optional[str]:
    if fmt.get("format_note"):
        return fmt["format_note"]
    if fmt.get("height"):
        return f"{fmt['height']}p"
    return None


def to_descriptor(fmt: Dict[str, Any]) -> TrackDescriptor:
    return TrackDescriptor(
        itag=str(fmt.get("format_id", "")),
        url=fmt.get("url", ""),
        ext=fmt.get("ext") or "",
        http_headers=dict(fmt.get("http_headers") or {}),
        filesize=fmt.get("filesize") or fmt.get("filesize_approx"),
        has_video=fmt.get("vcodec") not in (None, "none"),
        has_audio=fmt.get("acodec") not in (None, "none"),
        quality_label=_quality_label(fmt),
        bitrate=fmt.get("abr") or fmt.get("tbr"),
    )


def select_track(info: Dict[str, Any], selector: str) -> TrackDescriptor:
    """
    Pick the rendition named by ``selector`` from an extracted info dict.

    ``bestaudio`` picks the audio-only rendition with the highest bitrate;
    anything else must match a format id exactly.
    """
    formats = [
        fmt
        for fmt in info.get("formats") or []
        if fmt.get("url") and fmt.get("protocol", "https") in STREAMABLE_PROTOCOLS
    ]

    if selector == BEST_AUDIO_SELECTOR:
        candidates = [fmt for fmt in formats if _is_audio_only(fmt)]
        if not candidates:
            raise TrackUnavailable(f"no audio-only rendition for {info.get('webpage_url')}")
        best = max(candidates, key=lambda fmt: fmt.get("abr") or fmt.get("tbr") or 0)
        return to_descriptor(best)

    for fmt in formats:
        if str(fmt.get("format_id")) == str(selector):
            return to_descriptor(fmt)
    raise TrackUnavailable(f"itag {selector!r} not available")


def build_media_info(info: Dict[str, Any]) -> MediaInfo:
    formats = info.get("formats") or []
    thumbnail = info.get("thumbnail")
    if not thumbnail and info.get("thumbnails"):
        thumbnail = info["thumbnails"][0].get("url")

    return MediaInfo(
        title=info.get("title") or "",
        thumbnail=thumbnail,
        duration=info.get("duration"),
        video_formats=[
            {
                "qualityLabel": _quality_label(fmt),
                "itag": fmt.get("format_id"),
                "container": fmt.get("ext"),
            }
            for fmt in formats
            if _is_video_only(fmt)
        ],
        audio_formats=[
            {
                "bitrate": fmt.get("abr"),
                "itag": fmt.get("format_id"),
                "container": fmt.get("ext"),
            }
            for fmt in formats
            if _is_audio_only(fmt)
        ],
    )


def build_playlist_info(info: Dict[str, Any]) -> PlaylistInfo:
    entries: List[PlaylistEntry] = []
    for entry in info.get("entries") or []:
        if not entry:
            continue
        url = entry.get("url") or entry.get("webpage_url")
        if not url and entry.get("id"):
            url = f"https://www.youtube.com/watch?v={entry['id']}"
        if not url:
            continue
        entries.append(
            PlaylistEntry(
                title=entry.get("title") or "",
                url=url,
                thumbnails=list(entry.get("thumbnails") or []),
            )
        )
    return PlaylistInfo(title=info.get("title") or "", entries=entries)


class YouTubeSource:
    """Resolves tracks with yt-dlp and streams their bytes over HTTP."""

    def __init__(
        self,
        chunk_size: int = FETCH_CHUNK_SIZE,
        read_timeout: int = FETCH_TIMEOUT_SECONDS,
    ):
        self.chunk_size = chunk_size
        self.read_timeout = read_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def is_valid_url(self, url: str) -> bool:
        return is_valid_video_url(url)

    def is_valid_playlist(self, url: str) -> bool:
        return extract_playlist_id(url) is not None

    async def get_info(self, url: str, flat: bool = False) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._extract_info, url, flat)
        except MetadataFetchFailed:
            raise
        except Exception as error:
            raise MetadataFetchFailed(str(error)) from error

    def _build_ytdlp_options(self, flat: bool) -> Dict[str, Any]:
        ydl_opts: Dict[str, Any] = dict(YTDL_BASE_OPTS)
        if flat:
            ydl_opts.update({"extract_flat": "in_playlist", "noplaylist": False})

        cookie_file = (YTDLP_COOKIES_FILE or "").strip()
        if cookie_file:
            if os.path.exists(cookie_file):
                ydl_opts["cookiefile"] = cookie_file
            else:
                logger.warning("YTDLP_COOKIES_FILE is set but file does not exist: %s", cookie_file)
        return ydl_opts

    def _extract_info(self, url: str, flat: bool) -> Dict[str, Any]:
        """Blocking yt-dlp extraction used in thread pool."""
        from yt_dlp import YoutubeDL

        with YoutubeDL(self._build_ytdlp_options(flat)) as ydl:
            info = ydl.extract_info(url, download=False)
        if not info:
            raise MetadataFetchFailed(f"no metadata returned for {url}")
        return ydl.sanitize_info(info)

    async def describe(self, url: str) -> MediaInfo:
        return build_media_info(await self.get_info(url))

    async def list_playlist(self, url: str) -> PlaylistInfo:
        return build_playlist_info(await self.get_info(url, flat=True))

    async def resolve(
        self,
        url: str,
        video_selector: str,
        audio_selector: str = BEST_AUDIO_SELECTOR,
    ) -> ResolvedMedia:
        info = await self.get_info(url)
        return ResolvedMedia(
            title=info.get("title") or "",
            duration=info.get("duration"),
            video=select_track(info, video_selector),
            audio=select_track(info, audio_selector),
        )

    async def resolve_track(self, url: str, selector: str) -> TrackDescriptor:
        return select_track(await self.get_info(url), selector)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_read=self.read_timeout)
            )
        return self._session

    async def fetch(
        self,
        track: TrackDescriptor,
        path: str,
        on_progress: ProgressCallback,
        control: StreamControl,
        leg: str = "video",
    ) -> int:
        """
        Stream ``track`` into ``path``.

        While ``control`` is paused no further chunk is read and no progress is
        reported; the connection is simply left idle.
        """
        session = await self._get_session()
        read = 0
        try:
            async with session.get(track.url, headers=track.http_headers) as response:
                response.raise_for_status()
                total = response.content_length or track.filesize
                async with aiofiles.open(path, "wb") as file:
                    async for chunk in response.content.iter_chunked(self.chunk_size):
                        await file.write(chunk)
                        read += len(chunk)
                        await control.checkpoint()
                        on_progress(read, total)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as error:
            raise StageFailure("fetch", leg, str(error)) from error
        return read

    async def iter_track(self, track: TrackDescriptor) -> AsyncIterator[bytes]:
        """Yield raw bytes of ``track`` without touching the disk."""
        session = await self._get_session()
        try:
            async with session.get(track.url, headers=track.http_headers) as response:
                response.raise_for_status()
                async for chunk in response.content.iter_chunked(self.chunk_size):
                    yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise StageFailure("fetch", "audio", str(error)) from error

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
