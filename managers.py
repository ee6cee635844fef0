"""
Task pipeline engine: registry, per-task state machine and batch fan-out.
"""

import asyncio
import logging
import os
import time
import uuid
import zipfile
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence

from broadcaster import ProgressBroadcaster
from config import BEST_AUDIO_SELECTOR
from errors import (
    BatchFailed,
    DuplicateTask,
    InvalidSource,
    InvalidTaskState,
    MetadataFetchFailed,
    PipelineError,
    StageFailure,
    TaskCanceled,
    TaskNotFound,
)
from models import ScratchKind, Task, TaskState, TrackDescriptor
from scratch import ScratchAllocator
from utils import format_percent, make_task_id, parse_trim

logger = logging.getLogger(__name__)

PHASE_VIDEO = "Downloading video"
PHASE_AUDIO = "Downloading audio"
PHASE_MUX = "Merging"
PHASE_PLAYLIST = "Downloading playlist"

TASK_SCRATCH_KINDS = (ScratchKind.VIDEO, ScratchKind.AUDIO, ScratchKind.OUTPUT)


def fetch_percent(read: int, total: Optional[int]) -> Optional[float]:
    """Percent of a fetch leg, or None when the source did not report a size."""
    if not total or total <= 0:
        return None
    return min(100.0, read / total * 100)


class TaskRegistry:
    """
    Live tasks by id.

    Every method is synchronous, so an insert or removal is never interleaved
    with another task's update.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}

    def add(self, task: Task) -> None:
        if task.task_id in self._tasks:
            raise DuplicateTask(task.task_id)
        self._tasks[task.task_id] = task

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFound(task_id) from None

    def discard(self, task: Task) -> bool:
        """Remove ``task`` if it is still the registered owner of its id."""
        if self._tasks.get(task.task_id) is task:
            del self._tasks[task.task_id]
            return True
        return False

    def values(self) -> List[Task]:
        return list(self._tasks.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._tasks))


class PipelineEngine:
    """Drives download-and-mux tasks and exposes pause/resume/cancel."""

    def __init__(
        self,
        source: Any,
        muxer: Any,
        allocator: ScratchAllocator,
        broadcaster: ProgressBroadcaster,
        registry: Optional[TaskRegistry] = None,
    ):
        self.source = source
        self.muxer = muxer
        self.allocator = allocator
        self.broadcaster = broadcaster
        self.registry = registry if registry is not None else TaskRegistry()

    def submit(
        self,
        source_url: str,
        track_selector: str,
        start_time: Optional[str] = None,
        duration: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """Register a task and start its pipeline; returns without waiting."""
        if not source_url or not self.source.is_valid_url(source_url):
            raise InvalidSource(source_url)

        selector = str(track_selector or "")
        task_id = task_id or make_task_id(source_url, selector)
        if task_id in self.registry:
            raise DuplicateTask(task_id)

        task = Task(
            task_id=task_id,
            source_url=source_url,
            track_selector=selector,
            audio_selector=BEST_AUDIO_SELECTOR,
            trim=parse_trim(start_time, duration),
        )
        for kind in TASK_SCRATCH_KINDS:
            task.scratch[kind] = self.allocator.allocate(kind)
        self.registry.add(task)

        task.runner = asyncio.create_task(self._run_pipeline(task))
        task.runner.add_done_callback(self._on_runner_done)
        logger.info("Task %s submitted (itag=%s trim=%s)", task_id, selector, task.trim)
        return task_id

    def get(self, task_id: str) -> Task:
        return self.registry.get(task_id)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [task.snapshot() for task in self.registry.values()]

    async def _run_pipeline(self, task: Task) -> str:
        try:
            media = await self.source.resolve(
                task.source_url, task.track_selector, task.audio_selector
            )
            await self._fetch_leg(task, TaskState.FETCHING_VIDEO, media.video, ScratchKind.VIDEO, PHASE_VIDEO)
            await self._fetch_leg(task, TaskState.FETCHING_AUDIO, media.audio, ScratchKind.AUDIO, PHASE_AUDIO)
            await self._mux(task, media.duration)
        except asyncio.CancelledError:
            self._retire(task, TaskState.CANCELED)
            raise
        except PipelineError as error:
            logger.warning("Task %s failed: %s", task.task_id, error)
            self._retire(task, TaskState.FAILED, error)
            raise
        except Exception as error:
            failure = self._failure_for(task, error)
            logger.error("Task %s failed", task.task_id, exc_info=True)
            self._retire(task, TaskState.FAILED, failure)
            raise failure from error

        self._set_state(task, TaskState.READY)
        self._release(task, ScratchKind.VIDEO, ScratchKind.AUDIO)
        logger.info("Task %s ready: %s", task.task_id, task.output_path)
        return task.output_path

    async def _fetch_leg(
        self,
        task: Task,
        state: TaskState,
        track: TrackDescriptor,
        kind: ScratchKind,
        phase: str,
    ) -> None:
        await task.control.checkpoint()
        self._set_state(task, state)
        logger.info("Task %s: %s (itag=%s)", task.task_id, phase.lower(), track.itag)

        def on_progress(read: int, total: Optional[int]) -> None:
            self.broadcaster.publish(task.task_id, fetch_percent(read, total), phase)

        await self.source.fetch(
            track, task.scratch[kind], on_progress, task.control, leg=kind.value
        )

    async def _mux(self, task: Task, source_duration: Optional[float]) -> None:
        await task.control.checkpoint()
        self._set_state(task, TaskState.MUXING)
        logger.info("Task %s: merging video and audio", task.task_id)
        self.broadcaster.publish(task.task_id, 0.0, PHASE_MUX)

        def on_progress(percent: Optional[float]) -> None:
            logger.debug("Task %s merging %s", task.task_id, format_percent(percent))
            self.broadcaster.publish(task.task_id, percent, PHASE_MUX)

        await self.muxer.mux(
            task.video_path,
            task.audio_path,
            task.output_path,
            task.trim,
            on_progress,
            source_duration=source_duration,
        )
        if not os.path.exists(task.output_path):
            raise StageFailure("mux", detail="muxer finished without producing output")

    @staticmethod
    def _failure_for(task: Task, error: Exception) -> PipelineError:
        state = task.paused_from if task.state is TaskState.PAUSED else task.state
        if state is TaskState.FETCHING_VIDEO:
            return StageFailure("fetch", "video", str(error))
        if state is TaskState.FETCHING_AUDIO:
            return StageFailure("fetch", "audio", str(error))
        if state is TaskState.MUXING:
            return StageFailure("mux", detail=str(error))
        return MetadataFetchFailed(str(error))

    @staticmethod
    def _on_runner_done(runner: "asyncio.Task[str]") -> None:
        # Failures are logged by the runner itself; mark them retrieved.
        if not runner.cancelled():
            runner.exception()

    def _set_state(self, task: Task, state: TaskState) -> None:
        task.state = state
        task.history.append(state)

    def _release(self, task: Task, *kinds: ScratchKind) -> None:
        for kind in kinds:
            path = task.scratch.pop(kind, None)
            if path:
                self.allocator.release(path)

    def _retire(self, task: Task, state: TaskState, error: Optional[Exception] = None) -> None:
        """Deregister ``task``, move it to a terminal state and drop its scratch files."""
        self.registry.discard(task)
        if not task.state.is_terminal:
            if error is not None:
                task.error = str(error)
            self._set_state(task, state)
            task.finished_at = time.time()
        self._release(task, *list(task.scratch))

    async def wait_until_ready(self, task_id: str) -> str:
        """Wait for the output path of a submitted task."""
        return await self._wait(self.registry.get(task_id))

    async def _wait(self, task: Task) -> str:
        try:
            return await asyncio.shield(task.runner)
        except asyncio.CancelledError:
            if task.runner.cancelled():
                raise TaskCanceled(task.task_id) from None
            raise

    async def _wait_or_abandon(self, task: Task) -> str:
        try:
            return await self._wait(task)
        except asyncio.CancelledError:
            if task.task_id in self.registry and not task.state.is_terminal:
                logger.info("Caller went away, canceling task %s", task.task_id)
                await self.cancel(task.task_id)
            raise

    def complete(self, task_id: str) -> None:
        """Mark a ready task delivered and delete its output file."""
        task = self.registry.get(task_id)
        if task.state is not TaskState.READY:
            raise InvalidTaskState(f"task {task_id} is {task.state.value}")
        self._retire(task, TaskState.COMPLETED)
        logger.info("Task %s completed", task_id)

    def handoff(self, task_id: str) -> str:
        """Complete a ready task, passing ownership of its output file to the caller."""
        task = self.registry.get(task_id)
        if task.state is not TaskState.READY:
            raise InvalidTaskState(f"task {task_id} is {task.state.value}")
        path = task.scratch.pop(ScratchKind.OUTPUT)
        self._retire(task, TaskState.COMPLETED)
        return path

    @asynccontextmanager
    async def download(
        self,
        source_url: str,
        track_selector: str,
        start_time: Optional[str] = None,
        duration: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """
        Run one task to ``ready`` and yield its output path.

        The output is deleted and the task completed once the block exits,
        whether or not delivery succeeded.
        """
        task_id = self.submit(source_url, track_selector, start_time, duration)
        task = self.registry.get(task_id)
        output_path = await self._wait_or_abandon(task)
        try:
            yield output_path
        finally:
            if task.state is TaskState.READY:
                self._retire(task, TaskState.COMPLETED)
                logger.info("Task %s completed", task_id)
            else:
                self._release(task, *list(task.scratch))

    async def produce(self, source_url: str, track_selector: str, task_id: Optional[str] = None) -> str:
        """Run one task to ``ready`` and take ownership of its output file."""
        task_id = self.submit(source_url, track_selector, task_id=task_id)
        await self._wait_or_abandon(self.registry.get(task_id))
        return self.handoff(task_id)

    def pause(self, task_id: str) -> None:
        task = self.registry.get(task_id)
        if task.state is TaskState.CREATED:
            raise InvalidTaskState("the download is still resolving its tracks, retry once fetching starts")
        if task.state is TaskState.MUXING:
            raise InvalidTaskState("merging cannot be paused")
        if not task.state.is_pausable:
            raise InvalidTaskState(f"cannot pause while {task.state.value}")
        task.paused_from = task.state
        task.control.pause()
        self._set_state(task, TaskState.PAUSED)
        logger.info("Task %s paused", task_id)

    def resume(self, task_id: str) -> None:
        task = self.registry.get(task_id)
        if task.state is not TaskState.PAUSED:
            raise InvalidTaskState("the download is not paused")
        previous = task.paused_from
        task.paused_from = None
        self._set_state(task, previous)
        task.control.resume()
        logger.info("Task %s resumed (%s)", task_id, previous.value)

    async def cancel(self, task_id: str) -> None:
        """Stop a live task and delete its scratch files; unknown ids raise TaskNotFound."""
        task = self.registry.get(task_id)
        self.registry.discard(task)
        self._set_state(task, TaskState.CANCELED)
        task.finished_at = time.time()

        runner = task.runner
        if runner is not None and not runner.done():
            runner.cancel()
            # asyncio.wait does not re-raise the runner's CancelledError.
            await asyncio.wait({runner})
        self._release(task, *list(task.scratch))
        logger.info("Task %s canceled", task_id)

    async def shutdown(self) -> None:
        """Cancel every live task."""
        for task_id in list(self.registry):
            try:
                await self.cancel(task_id)
            except TaskNotFound:
                continue


class ZipArchiver:
    """Bundles finished outputs into one zip archive."""

    def __init__(self, entry_template: str = "video{index}.mp4"):
        self.entry_template = entry_template

    def _write(self, paths: Sequence[str], archive_path: str) -> None:
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for index, path in enumerate(paths, start=1):
                archive.write(path, arcname=self.entry_template.format(index=index))

    async def build(self, paths: Sequence[str], archive_path: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, list(paths), archive_path)


class BatchOrchestrator:
    """Runs playlist items one at a time and archives the results."""

    def __init__(self, engine: PipelineEngine, archiver: Optional[ZipArchiver] = None):
        self.engine = engine
        self.archiver = archiver or ZipArchiver()

    async def run_batch(
        self,
        items: Sequence[str],
        track_selector: str,
        batch_id: Optional[str] = None,
    ) -> str:
        """
        Produce every item, then archive them.

        Returns the archive path, owned by the caller. On any item failure the
        outputs collected so far are deleted and BatchFailed is raised.
        """
        if not items:
            raise InvalidSource("playlist has no downloadable items")

        batch_id = batch_id or uuid.uuid4().hex
        allocator = self.engine.allocator
        outputs: List[str] = []
        archive_path: Optional[str] = None
        logger.info("Batch %s started with %s items (itag=%s)", batch_id, len(items), track_selector)

        try:
            for index, url in enumerate(items):
                try:
                    outputs.append(
                        await self.engine.produce(url, track_selector, task_id=uuid.uuid4().hex)
                    )
                except PipelineError as error:
                    logger.warning("Batch %s aborted at item #%s: %s", batch_id, index + 1, error)
                    raise BatchFailed(index, error) from error
                self.engine.broadcaster.publish(
                    batch_id, (index + 1) / len(items) * 100, PHASE_PLAYLIST
                )

            archive_path = allocator.allocate(ScratchKind.ARCHIVE)
            await self.archiver.build(outputs, archive_path)
        except BaseException:
            allocator.release(archive_path)
            raise
        finally:
            for path in outputs:
                allocator.release(path)

        logger.info("Batch %s archived to %s", batch_id, archive_path)
        return archive_path

    @asynccontextmanager
    async def download(
        self, items: Sequence[str], track_selector: str, batch_id: Optional[str] = None
    ) -> AsyncIterator[str]:
        archive_path = await self.run_batch(items, track_selector, batch_id=batch_id)
        try:
            yield archive_path
        finally:
            self.engine.allocator.release(archive_path)
