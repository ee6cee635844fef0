"""
Entry point for the download-and-mux HTTP service.
"""

import asyncio
import logging
import signal
import sys

from aiohttp import web
from dotenv import load_dotenv

load_dotenv()

from broadcaster import ProgressBroadcaster  # noqa: E402
from config import HOST, LOG_FORMAT, LOG_LEVEL, PORT  # noqa: E402
from errors import setup_logging  # noqa: E402
from handlers import ApiHandlers, build_middlewares  # noqa: E402
from managers import BatchOrchestrator, PipelineEngine, ZipArchiver  # noqa: E402
from muxer import FfmpegMuxer  # noqa: E402
from scratch import ScratchAllocator  # noqa: E402
from sources import YouTubeSource  # noqa: E402

shutdown_event = asyncio.Event()


def create_app() -> web.Application:
    """Wire the engine and its collaborators into an aiohttp application."""
    allocator = ScratchAllocator()
    broadcaster = ProgressBroadcaster()
    source = YouTubeSource()
    engine = PipelineEngine(
        source=source,
        muxer=FfmpegMuxer(),
        allocator=allocator,
        broadcaster=broadcaster,
    )
    batch = BatchOrchestrator(engine, ZipArchiver())

    app = web.Application(middlewares=build_middlewares())
    ApiHandlers(app=app, engine=engine, batch=batch, broadcaster=broadcaster)

    async def on_cleanup(_: web.Application) -> None:
        await engine.shutdown()
        await source.close()
        allocator.close()

    app.on_cleanup.append(on_cleanup)
    return app


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting download service")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            pass

    runner = None
    try:
        runner = web.AppRunner(create_app())
        await runner.setup()
        site = web.TCPSite(runner, host=HOST, port=PORT)
        await site.start()
        logging.getLogger(__name__).info("Listening on %s:%s", HOST, PORT)
        await shutdown_event.wait()
    except Exception:
        logging.getLogger(__name__).exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        if runner is not None:
            await runner.cleanup()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
