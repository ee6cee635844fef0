"""
Error taxonomy, response mapping and logging setup.
"""

import logging
from typing import Optional, Tuple


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    return logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for errors reported to API callers."""

    status: int = 500
    message: str = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.message)
        self.detail = detail


class InvalidSource(PipelineError):
    status = 400
    message = "Invalid YouTube URL"


class MetadataFetchFailed(PipelineError):
    status = 500
    message = "Failed to fetch video details"


class TrackUnavailable(PipelineError):
    status = 500
    message = "Desired quality not found"


class StageFailure(PipelineError):
    """A fetch or mux stage broke mid-pipeline."""

    status = 500

    def __init__(self, stage: str, leg: Optional[str] = None, detail: Optional[str] = None):
        self.stage = stage
        self.leg = leg
        if stage == "mux":
            self.message = "Error during merging"
        else:
            self.message = f"Error downloading {leg or 'media'}"
        super().__init__(detail)


class TaskNotFound(PipelineError):
    status = 404
    message = "Task not found"


class InvalidTaskState(PipelineError):
    status = 409
    message = "Operation not allowed in the current task state"


class DuplicateTask(PipelineError):
    status = 409
    message = "A download with the same parameters is already running"


class TaskCanceled(PipelineError):
    status = 410
    message = "Download canceled"


class BatchFailed(PipelineError):
    status = 500
    message = "Error downloading playlist videos"

    def __init__(self, index: int, cause: Exception):
        self.index = index
        self.cause = cause
        super().__init__(f"item #{index + 1} failed: {cause}")


class ErrorManager:
    """Convert internal exceptions to compact API responses."""

    def to_response(self, error: Exception) -> Tuple[int, str]:
        if isinstance(error, MetadataFetchFailed):
            return error.status, self._describe_metadata_failure(error)
        if isinstance(error, InvalidTaskState) and error.detail:
            return error.status, f"{error.message}: {error.detail}"
        if isinstance(error, PipelineError):
            return error.status, error.message
        return 500, PipelineError.message

    @staticmethod
    def _describe_metadata_failure(error: MetadataFetchFailed) -> str:
        msg = str(error).lower()

        if "private" in msg:
            return f"{error.message}: the video is private"
        if "sign in" in msg or "age" in msg:
            return f"{error.message}: the video requires sign-in"
        if "unavailable" in msg or "not available" in msg:
            return f"{error.message}: the video is unavailable"
        if "drm" in msg:
            return f"{error.message}: the video is DRM protected"
        return error.message

    @staticmethod
    def is_expected(error: Exception) -> bool:
        """Client-side mistakes are logged without a traceback."""
        return isinstance(error, PipelineError) and error.status < 500


error_manager = ErrorManager()
