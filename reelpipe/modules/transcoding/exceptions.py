"""Errors raised while processing a media asset."""

from typing import Optional


class PipelineError(Exception):
    """Base exception for processing pipeline errors."""

    pass


class InvalidMediaError(PipelineError):
    """Raised when the source is not a probeable video. Fatal to the run."""

    pass


class RenditionError(PipelineError):
    """Raised when a single rendition fails. The run continues without it."""

    def __init__(self, quality: str, message: str):
        super().__init__(f"{quality}: {message}")
        self.quality = quality
        self.reason = message


class TotalFailureError(PipelineError):
    """Raised when every planned rendition failed."""

    def __init__(self, attempted: int, last_error: Optional[BaseException] = None):
        message = f"All {attempted} renditions failed"
        if last_error is not None:
            message = f"{message}; last error: {last_error}"
        super().__init__(message)
        self.attempted = attempted
        self.last_error = last_error


class ThumbnailError(PipelineError):
    """Raised when a thumbnail cannot be extracted. Never fails a run."""

    pass


class StorageIOError(PipelineError):
    """Raised when an output file cannot be written."""

    pass
