"""
Data models for download-and-mux tasks.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskState(Enum):
    """Lifecycle states for a single download-and-mux task."""

    CREATED = "created"
    FETCHING_VIDEO = "fetching_video"
    FETCHING_AUDIO = "fetching_audio"
    MUXING = "muxing"
    READY = "ready"
    PAUSED = "paused"
    CANCELED = "canceled"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_pausable(self) -> bool:
        return self in (TaskState.FETCHING_VIDEO, TaskState.FETCHING_AUDIO)


TERMINAL_STATES = frozenset({TaskState.CANCELED, TaskState.FAILED, TaskState.COMPLETED})


class ScratchKind(Enum):
    """Kinds of scratch files, mapped to their container extension."""

    VIDEO = "video"
    AUDIO = "audio"
    OUTPUT = "output"
    ARCHIVE = "archive"

    @property
    def extension(self) -> str:
        return {
            ScratchKind.VIDEO: ".mp4",
            ScratchKind.AUDIO: ".m4a",
            ScratchKind.OUTPUT: ".mp4",
            ScratchKind.ARCHIVE: ".zip",
        }[self]


@dataclass(frozen=True)
class TrimWindow:
    """Sub-range of the source to keep, in seconds."""

    start: float
    duration: float


class StreamControl:
    """Pause gate shared by the fetch legs of one task."""

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    async def checkpoint(self) -> None:
        """Return immediately while running, otherwise wait for resume."""
        await self._running.wait()


@dataclass
class TrackDescriptor:
    """One directly streamable rendition of a media asset."""

    itag: str
    url: str
    ext: str = ""
    http_headers: Dict[str, str] = field(default_factory=dict)
    filesize: Optional[int] = None
    has_video: bool = False
    has_audio: bool = False
    quality_label: Optional[str] = None
    bitrate: Optional[float] = None


@dataclass
class ResolvedMedia:
    """Tracks chosen for one task."""

    title: str
    duration: Optional[float]
    video: TrackDescriptor
    audio: TrackDescriptor


@dataclass
class MediaInfo:
    """Metadata shown to the caller before a download is requested."""

    title: str
    thumbnail: Optional[str]
    duration: Optional[float]
    video_formats: List[Dict[str, Any]] = field(default_factory=list)
    audio_formats: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PlaylistEntry:
    title: str
    url: str
    thumbnails: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PlaylistInfo:
    title: str
    entries: List[PlaylistEntry] = field(default_factory=list)


@dataclass
class ProgressEvent:
    """A single progress publication; progress is None when indeterminate."""

    task_id: str
    progress: Optional[float]
    step: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "event": "progress",
            "taskId": self.task_id,
            "progress": self.progress,
            "step": self.step,
        }


@dataclass
class Task:
    """Runtime info for one download-and-mux job."""

    task_id: str
    source_url: str
    track_selector: str
    audio_selector: str
    trim: Optional[TrimWindow] = None
    state: TaskState = TaskState.CREATED
    history: List[TaskState] = field(default_factory=lambda: [TaskState.CREATED])
    paused_from: Optional[TaskState] = None
    scratch: Dict[ScratchKind, str] = field(default_factory=dict)
    control: StreamControl = field(default_factory=StreamControl)
    runner: Optional["asyncio.Task[str]"] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def video_path(self) -> Optional[str]:
        return self.scratch.get(ScratchKind.VIDEO)

    @property
    def audio_path(self) -> Optional[str]:
        return self.scratch.get(ScratchKind.AUDIO)

    @property
    def output_path(self) -> Optional[str]:
        return self.scratch.get(ScratchKind.OUTPUT)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "state": self.state.value,
            "url": self.source_url,
            "itag": self.track_selector,
            "trim": (
                {"startTime": self.trim.start, "duration": self.trim.duration}
                if self.trim
                else None
            ),
            "createdAt": self.created_at,
            "error": self.error,
        }
