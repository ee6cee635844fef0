"""
Tests for the HTTP surface.
"""

import asyncio
import os

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from errors import MetadataFetchFailed, StageFailure
from fakes import PLAYLIST_URL, URL, FakeSource, drain, make_engine, wait_for
from handlers import ApiHandlers, build_middlewares
from managers import PHASE_PLAYLIST, BatchOrchestrator

PREFIX = "/api/v1/downloads"


def _make_app(tmp_path, source=None, cors_origin=None):
    engine = make_engine(tmp_path, source=source or FakeSource())
    app = web.Application(middlewares=build_middlewares(cors_origin=cors_origin))
    ApiHandlers(
        app=app,
        engine=engine,
        batch=BatchOrchestrator(engine),
        broadcaster=engine.broadcaster,
        prefix=PREFIX,
    )
    return app, engine


def _run(app, callback):
    async def scenario():
        async with TestClient(TestServer(app)) as client:
            return await callback(client)

    return asyncio.run(scenario())


def test_health(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        response = await client.get("/health")
        assert response.status == 200
        assert (await response.json()) == {"status": "ok", "activeTasks": 0}

    _run(app, check)


def test_video_info_rejects_invalid_url(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        response = await client.post(f"{PREFIX}/video", json={"url": "https://nowhere/clip"})
        assert response.status == 400
        assert await response.text() == "Invalid YouTube URL"

    _run(app, check)


def test_video_info_returns_formats(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        response = await client.post(f"{PREFIX}/video", json={"url": URL})
        assert response.status == 200
        body = await response.json()
        assert body["title"] == f"title of {URL}"
        assert [fmt["itag"] for fmt in body["videoFormats"]] == ["22", "137"]
        assert body["audioFormats"][0]["itag"] == "140"
        assert body["downloadVideoBase"].startswith(f"{PREFIX}/video/download?url=")
        assert body["downloadAudioBase"].endswith("&itag=")

    _run(app, check)


def test_video_info_metadata_failure(tmp_path):
    source = FakeSource()

    async def broken(url):
        raise MetadataFetchFailed("ERROR: Video unavailable")

    source.describe = broken
    app, _ = _make_app(tmp_path, source=source)

    async def check(client):
        response = await client.post(f"{PREFIX}/video", json={"url": URL})
        assert response.status == 500
        assert (await response.text()).startswith("Failed to fetch video details")

    _run(app, check)


def test_invalid_json_body(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        response = await client.post(f"{PREFIX}/video/pause", data=b"not json")
        assert response.status == 400

    _run(app, check)


def test_video_download_streams_merged_file(tmp_path):
    app, engine = _make_app(tmp_path)

    async def check(client):
        response = await client.get(
            f"{PREFIX}/video/download", params={"url": URL, "itag": "22"}
        )
        assert response.status == 200
        assert 'filename="video.mp4"' in response.headers["Content-Disposition"]
        body = await response.read()
        assert body == b"v" * 4096 + b"a" * 4096

        await wait_for(lambda: len(engine.registry) == 0, delay=0.01)
        await wait_for(lambda: os.listdir(engine.allocator.directory) == [], delay=0.01)

    _run(app, check)


def test_video_download_stage_failure(tmp_path):
    app, engine = _make_app(tmp_path, source=FakeSource(fail_leg="video"))

    async def check(client):
        response = await client.get(
            f"{PREFIX}/video/download", params={"url": URL, "itag": "22"}
        )
        assert response.status == 500
        assert await response.text() == "Error downloading video"
        assert os.listdir(engine.allocator.directory) == []

    _run(app, check)


def test_control_on_unknown_task(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        for action in ("pause", "resume", "cancel"):
            response = await client.post(f"{PREFIX}/video/{action}", json={"taskId": "nope"})
            assert response.status == 404
            assert await response.text() == "Task not found"

    _run(app, check)


def test_pause_resume_cancel_live_task(tmp_path):
    source = FakeSource(block_at=1)
    app, engine = _make_app(tmp_path, source=source)

    async def check(client):
        task_id = engine.submit(URL, "22")
        await source.blocked.wait()

        response = await client.post(f"{PREFIX}/video/pause", json={"taskId": task_id})
        assert response.status == 200
        assert await response.text() == "Download paused"

        listing = await (await client.get(f"{PREFIX}/video/tasks")).json()
        assert listing["tasks"][0]["state"] == "paused"

        response = await client.post(f"{PREFIX}/video/resume", json={"taskId": task_id})
        assert await response.text() == "Download resumed"

        response = await client.post(f"{PREFIX}/video/cancel", json={"taskId": task_id})
        assert await response.text() == "Download canceled"

        response = await client.post(f"{PREFIX}/video/cancel", json={"taskId": task_id})
        assert response.status == 404
        assert os.listdir(engine.allocator.directory) == []

    _run(app, check)


def test_audio_download(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        response = await client.get(f"{PREFIX}/audio/download", params={"url": URL, "itag": "140"})
        assert response.status == 200
        assert 'filename="audio.mp3"' in response.headers["Content-Disposition"]
        assert await response.read() == b"a" * 4096

        missing = await client.get(f"{PREFIX}/audio/download", params={"url": URL, "itag": "999"})
        assert missing.status == 500
        assert await missing.text() == "Desired quality not found"

    _run(app, check)


def test_playlist_info_deduplicates_formats(tmp_path):
    app, _ = _make_app(tmp_path)

    async def check(client):
        response = await client.post(f"{PREFIX}/playlist", json={"url": PLAYLIST_URL})
        assert response.status == 200
        body = await response.json()
        assert body["title"] == "demo playlist"
        assert len(body["videos"]) == 3
        assert [fmt["itag"] for fmt in body["formats"]] == ["22", "137"]

        bad = await client.post(f"{PREFIX}/playlist", json={"url": URL})
        assert bad.status == 400

    _run(app, check)


def test_playlist_download_failure_leaves_no_files(tmp_path):
    source = FakeSource()
    source.fail_urls = {source.playlist[2]}
    app, engine = _make_app(tmp_path, source=source)

    async def check(client):
        response = await client.get(
            f"{PREFIX}/playlist/download", params={"url": PLAYLIST_URL, "itag": "22"}
        )
        assert response.status == 500
        assert await response.text() == "Error downloading playlist videos"
        assert os.listdir(engine.allocator.directory) == []

    _run(app, check)


def test_playlist_download_archive(tmp_path):
    app, engine = _make_app(tmp_path)

    async def check(client):
        response = await client.get(
            f"{PREFIX}/playlist/download", params={"url": PLAYLIST_URL, "itag": "22"}
        )
        assert response.status == 200
        assert 'filename="playlist.zip"' in response.headers["Content-Disposition"]
        assert (await response.read())[:2] == b"PK"
        await wait_for(lambda: os.listdir(engine.allocator.directory) == [], delay=0.01)

    _run(app, check)


def test_progress_socket_receives_events(tmp_path):
    app, engine = _make_app(tmp_path)

    async def check(client):
        ws = await client.ws_connect(f"{PREFIX}/progress")
        await wait_for(lambda: engine.broadcaster.subscriber_count == 1, delay=0.01)

        engine.broadcaster.publish("t1", 42.0, "Merging")
        message = await ws.receive_json(timeout=2)
        assert message == {"event": "progress", "taskId": "t1", "progress": 42.0, "step": "Merging"}

        await ws.close()
        await wait_for(lambda: engine.broadcaster.subscriber_count == 0, delay=0.01)

    _run(app, check)


def test_cors_headers(tmp_path):
    app, _ = _make_app(tmp_path, cors_origin="https://frontend.example")

    async def check(client):
        response = await client.get("/health")
        assert response.headers["Access-Control-Allow-Origin"] == "https://frontend.example"
        preflight = await client.options(f"{PREFIX}/video")
        assert preflight.status == 200

    _run(app, check)


def test_unexpected_error_maps_to_500(tmp_path):
    source = FakeSource()

    async def broken(url):
        raise StageFailure("fetch", "video", "boom")

    source.list_playlist = broken
    app, _ = _make_app(tmp_path, source=source)

    async def check(client):
        response = await client.get(
            f"{PREFIX}/playlist/download", params={"url": PLAYLIST_URL, "itag": "22"}
        )
        assert response.status == 500

    _run(app, check)


class BrokenStreamSource(FakeSource):
    """Audio passthrough that dies after the first chunk."""

    async def iter_track(self, track):
        yield b"a" * self.chunk_size
        await asyncio.sleep(0)
        raise StageFailure("fetch", "audio", "connection reset by peer")


def test_audio_download_broken_stream_is_not_a_complete_body(tmp_path):
    app, _ = _make_app(tmp_path, source=BrokenStreamSource())

    async def check(client):
        response = await client.get(f"{PREFIX}/audio/download", params={"url": URL, "itag": "140"})
        assert response.status == 200
        with pytest.raises(aiohttp.ClientPayloadError):
            await response.read()

    _run(app, check)


def test_cors_headers_on_http_errors(tmp_path):
    app, _ = _make_app(tmp_path, cors_origin="https://frontend.example")

    async def check(client):
        bad_json = await client.post(f"{PREFIX}/video/pause", data=b"not json")
        assert bad_json.status == 400
        assert bad_json.headers["Access-Control-Allow-Origin"] == "https://frontend.example"

        missing = await client.get(f"{PREFIX}/nowhere")
        assert missing.status == 404
        assert missing.headers["Access-Control-Allow-Origin"] == "https://frontend.example"

    _run(app, check)


def test_playlist_progress_is_keyed_by_url_and_itag(tmp_path):
    app, engine = _make_app(tmp_path)
    events = []

    async def check(client):
        queue = engine.broadcaster.subscribe()
        response = await client.get(
            f"{PREFIX}/playlist/download", params={"url": PLAYLIST_URL, "itag": "22"}
        )
        assert response.status == 200
        await response.read()
        events.extend(event for event in drain(queue) if event.step == PHASE_PLAYLIST)

    _run(app, check)
    assert events
    assert {event.task_id for event in events} == {f"{PLAYLIST_URL}-22"}
