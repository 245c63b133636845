"""Exception types raised by the pipeline.

Decode failures are recoverable and reported per navigation; validation
errors reject a single edit; worker pool failures are fatal and must
reach the process.
"""

from __future__ import annotations

from enum import Enum


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class DecodeFailure(str, Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    CORRUPT = "corrupt"
    TRUNCATED = "truncated"
    UNSUPPORTED_COLOR_SPACE = "unsupported_color_space"
    RASTERIZATION = "rasterization"
    UNREADABLE = "unreadable"


class DecodeError(PipelineError):
    """An image could not be turned into a canonical raster."""

    def __init__(self, reason: DecodeFailure, message: str = "", codec: str | None = None) -> None:
        self.reason = reason
        self.message = message or reason.value.replace("_", " ")
        self.codec = codec
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.codec:
            return f"{self.reason.value} ({self.codec}): {self.message}"
        return f"{self.reason.value}: {self.message}"


class ValidationError(PipelineError, ValueError):
    """Edit parameters are out of range for the raster they target."""


class WorkerPoolError(PipelineError, RuntimeError):
    """The decode worker pool can no longer accept work."""
