"""
ffmpeg-based muxing of one video and one audio file into a single container.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from config import FFMPEG_BINARY, FFMPEG_TERMINATE_GRACE_SECONDS
from errors import StageFailure
from models import TrimWindow

logger = logging.getLogger(__name__)

PercentCallback = Callable[[Optional[float]], None]


def format_seconds(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".")


def expected_duration(
    trim: Optional[TrimWindow],
    source_duration: Optional[float],
) -> Optional[float]:
    """Length of the output the progress percentage is measured against."""
    if trim is None:
        return source_duration if source_duration and source_duration > 0 else None
    if source_duration and source_duration > 0:
        remaining = source_duration - trim.start
        if remaining <= 0:
            return None
        return min(trim.duration, remaining)
    return trim.duration


def parse_progress_line(line: str) -> Optional[float]:
    """
    Return elapsed output seconds from one ``-progress`` line, if it has them.

    ffmpeg writes ``out_time_us`` and, for historical reasons, ``out_time_ms``
    in microseconds as well.
    """
    key, _, value = line.strip().partition("=")
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        micros = int(value)
    except ValueError:
        return None
    if micros < 0:
        return None
    return micros / 1_000_000


class FfmpegMuxer:
    """Copies the video stream and re-encodes audio to AAC."""

    def __init__(
        self,
        binary: str = FFMPEG_BINARY,
        terminate_grace: float = FFMPEG_TERMINATE_GRACE_SECONDS,
    ):
        self.binary = binary
        self.terminate_grace = terminate_grace

    def build_command(
        self,
        video_path: str,
        audio_path: str,
        output_path: str,
        trim: Optional[TrimWindow] = None,
    ) -> List[str]:
        cmd = [
            self.binary,
            "-y",
            "-hide_banner",
            "-nostats",
            "-loglevel", "error",
            "-i", video_path,
            "-i", audio_path,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
        ]
        if trim is not None:
            cmd += ["-ss", format_seconds(trim.start), "-t", format_seconds(trim.duration)]
        cmd += ["-progress", "pipe:1", output_path]
        return cmd

    async def mux(
        self,
        video_path: str,
        audio_path: str,
        output_path: str,
        trim: Optional[TrimWindow],
        on_progress: PercentCallback,
        source_duration: Optional[float] = None,
    ) -> None:
        cmd = self.build_command(video_path, audio_path, output_path, trim)
        total = expected_duration(trim, source_duration)
        logger.info("Running ffmpeg: %s", " ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise StageFailure("mux", detail=f"failed to start ffmpeg: {error}") from error

        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            last_percent = 0.0
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                elapsed = parse_progress_line(line.decode("utf-8", errors="ignore"))
                if elapsed is None:
                    continue
                if total is None:
                    on_progress(None)
                    continue
                percent = min(100.0, max(last_percent, elapsed / total * 100))
                last_percent = percent
                on_progress(percent)

            return_code = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="ignore")
        except asyncio.CancelledError:
            await self._terminate(process)
            stderr_task.cancel()
            raise

        if return_code != 0:
            tail = stderr.strip().splitlines()[-5:]
            raise StageFailure("mux", detail=f"ffmpeg exited with {return_code}: {' | '.join(tail)}")
        on_progress(100.0)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop ffmpeg: SIGTERM first, SIGKILL after the grace period."""
        if process.returncode is not None:
            return

        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
            logger.debug("ffmpeg terminated with SIGTERM")
            return
        except asyncio.TimeoutError:
            pass

        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
        logger.warning("ffmpeg killed forcefully")
