"""
HTTP routes for metadata, downloads, task control and progress.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import WSMsgType, web

from broadcaster import ProgressBroadcaster
from config import (
    API_PREFIX,
    AUDIO_ATTACHMENT_NAME,
    CORS_ORIGIN,
    PLAYLIST_ATTACHMENT_NAME,
    VIDEO_ATTACHMENT_NAME,
)
from errors import InvalidSource, StageFailure, TrackUnavailable, error_manager
from managers import BatchOrchestrator, PipelineEngine
from utils import build_download_base, make_task_id

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _attachment(filename: str) -> Dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn pipeline errors into plain-text responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as error:
        status, text = error_manager.to_response(error)
        if error_manager.is_expected(error):
            logger.warning("%s %s -> %s: %s", request.method, request.path, status, error)
        else:
            logger.error("%s %s -> %s", request.method, request.path, status, exc_info=error)
        return web.Response(status=status, text=text)


def _allow_origin(headers: Any, origin: str) -> None:
    headers["Access-Control-Allow-Origin"] = origin
    headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    headers["Access-Control-Allow-Headers"] = "Content-Type"


def cors_middleware(origin: str) -> Any:
    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=200)
        else:
            try:
                response = await handler(request)
            except web.HTTPException as error:
                _allow_origin(error.headers, origin)
                raise
        if not response.prepared:
            _allow_origin(response.headers, origin)
        return response

    return middleware


class ApiHandlers:
    """Registers the download API on an aiohttp application."""

    def __init__(
        self,
        app: web.Application,
        engine: PipelineEngine,
        batch: BatchOrchestrator,
        broadcaster: ProgressBroadcaster,
        prefix: str = API_PREFIX,
    ):
        self.app = app
        self.engine = engine
        self.batch = batch
        self.source = engine.source
        self.broadcaster = broadcaster
        self.prefix = prefix
        self._register_handlers()

    def _register_handlers(self) -> None:
        router = self.app.router
        router.add_get("/", self.handle_health)
        router.add_get("/health", self.handle_health)
        router.add_post(f"{self.prefix}/video", self.handle_video_info)
        router.add_get(f"{self.prefix}/video/download", self.handle_video_download)
        router.add_get(f"{self.prefix}/video/tasks", self.handle_list_tasks)
        router.add_post(f"{self.prefix}/video/pause", self.handle_pause)
        router.add_post(f"{self.prefix}/video/resume", self.handle_resume)
        router.add_post(f"{self.prefix}/video/cancel", self.handle_cancel)
        router.add_get(f"{self.prefix}/audio/download", self.handle_audio_download)
        router.add_post(f"{self.prefix}/playlist", self.handle_playlist_info)
        router.add_get(f"{self.prefix}/playlist/download", self.handle_playlist_download)
        router.add_get(f"{self.prefix}/progress", self.handle_progress_socket)

    @staticmethod
    async def _read_json(request: web.Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise web.HTTPBadRequest(text="Request body must be JSON") from None
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="Request body must be a JSON object")
        return body

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "activeTasks": len(self.engine.registry)})

    async def handle_video_info(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        url = str(body.get("url") or "")
        if not self.source.is_valid_url(url):
            raise InvalidSource(url)

        info = await self.source.describe(url)
        return web.json_response(
            {
                "title": info.title,
                "thumbnail": info.thumbnail,
                "duration": info.duration,
                "videoFormats": info.video_formats,
                "audioFormats": info.audio_formats,
                "downloadVideoBase": build_download_base(self.prefix, "video", url),
                "downloadAudioBase": build_download_base(self.prefix, "audio", url),
            }
        )

    async def handle_video_download(self, request: web.Request) -> web.StreamResponse:
        query = request.query
        async with self.engine.download(
            query.get("url", ""),
            query.get("itag", ""),
            start_time=query.get("startTime"),
            duration=query.get("duration"),
        ) as output_path:
            response = web.FileResponse(output_path, headers=_attachment(VIDEO_ATTACHMENT_NAME))
            try:
                await response.prepare(request)
            except (ConnectionResetError, asyncio.CancelledError):
                logger.warning("Client disconnected while sending %s", output_path)
                raise
        return response

    async def handle_audio_download(self, request: web.Request) -> web.StreamResponse:
        url = request.query.get("url", "")
        itag = request.query.get("itag", "")
        if not self.source.is_valid_url(url):
            raise InvalidSource(url)
        if not itag:
            raise TrackUnavailable("itag is required")

        track = await self.source.resolve_track(url, itag)
        logger.info("Streaming audio itag=%s for %s", itag, url)

        response = web.StreamResponse(headers=_attachment(AUDIO_ATTACHMENT_NAME))
        response.content_type = "application/octet-stream"
        await response.prepare(request)
        try:
            async for chunk in self.source.iter_track(track):
                await response.write(chunk)
        except StageFailure as error:
            # Headers are already sent: drop the connection so the body never terminates cleanly.
            logger.warning("Audio stream for %s broke: %s", url, error)
            if request.transport is not None:
                request.transport.close()
            return response
        await response.write_eof()
        return response

    async def handle_playlist_info(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        url = str(body.get("url") or "")
        if not self.source.is_valid_playlist(url):
            raise InvalidSource(url)

        playlist = await self.source.list_playlist(url)
        details = await asyncio.gather(*(self.source.describe(entry.url) for entry in playlist.entries))

        videos: List[Dict[str, Any]] = []
        unique_formats: Dict[Any, Dict[str, Any]] = {}
        for entry, info in zip(playlist.entries, details):
            for fmt in info.video_formats:
                unique_formats.setdefault(fmt["itag"], fmt)
            videos.append(
                {
                    "title": entry.title or info.title,
                    "url": entry.url,
                    "thumbnails": entry.thumbnails,
                    "formats": info.video_formats,
                    "downloadVideoBase": build_download_base(self.prefix, "video", entry.url),
                }
            )

        return web.json_response(
            {"title": playlist.title, "videos": videos, "formats": list(unique_formats.values())}
        )

    async def handle_playlist_download(self, request: web.Request) -> web.StreamResponse:
        url = request.query.get("url", "")
        itag = request.query.get("itag", "")
        if not self.source.is_valid_playlist(url):
            raise InvalidSource(url)

        playlist = await self.source.list_playlist(url)
        items = [entry.url for entry in playlist.entries]
        batch_id = make_task_id(url, itag)
        async with self.batch.download(items, itag, batch_id=batch_id) as archive_path:
            response = web.FileResponse(archive_path, headers=_attachment(PLAYLIST_ATTACHMENT_NAME))
            await response.prepare(request)
        return response

    async def handle_list_tasks(self, request: web.Request) -> web.Response:
        return web.json_response({"tasks": self.engine.snapshot()})

    async def _task_id(self, request: web.Request) -> str:
        body = await self._read_json(request)
        return str(body.get("taskId") or "")

    async def handle_pause(self, request: web.Request) -> web.Response:
        self.engine.pause(await self._task_id(request))
        return web.Response(text="Download paused")

    async def handle_resume(self, request: web.Request) -> web.Response:
        self.engine.resume(await self._task_id(request))
        return web.Response(text="Download resumed")

    async def handle_cancel(self, request: web.Request) -> web.Response:
        await self.engine.cancel(await self._task_id(request))
        return web.Response(text="Download canceled")

    async def handle_progress_socket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        queue = self.broadcaster.subscribe()
        sender = asyncio.create_task(self._pump_events(ws, queue))
        logger.info("Progress listener connected: %s", request.remote)
        try:
            async for message in ws:
                if message.type == WSMsgType.ERROR:
                    logger.debug("Progress socket error: %s", ws.exception())
        finally:
            self.broadcaster.unsubscribe(queue)
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender
            logger.info("Progress listener disconnected: %s", request.remote)
        return ws

    @staticmethod
    async def _pump_events(ws: web.WebSocketResponse, queue: asyncio.Queue) -> None:
        while not ws.closed:
            event = await queue.get()
            try:
                await ws.send_json(event.to_payload())
            except (ConnectionResetError, RuntimeError):
                logger.debug("Progress event for %s not delivered", event.task_id)
                return


def build_middlewares(cors_origin: Optional[str] = CORS_ORIGIN) -> List[Any]:
    middlewares: List[Any] = [error_middleware]
    if cors_origin:
        middlewares.insert(0, cors_middleware(cors_origin))
    return middlewares
