"""Error taxonomy surfaced by staging runs."""

from __future__ import annotations

from typing import Optional


class StagingError(Exception):
    """Base class for failures that abort a staging run.

    Every error carries the name of the operation that failed so the operator
    can tell which phase of the run went wrong.
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class EngineError(StagingError):
    """The container engine rejected a request or could not be reached."""


class ArtifactIOError(StagingError, OSError):
    """Local filesystem, archive or download failure."""


class FormatError(StagingError):
    """Malformed archive or metadata document."""


class NotFoundError(StagingError):
    """An expected path is absent inside a container."""


class MissingStartCommand(NotFoundError):
    """The build metadata has no usable ``web`` process type."""


class NonZeroExit(StagingError):
    """The lifecycle binary inside the container reported failure."""

    def __init__(self, operation: str, code: int, message: Optional[str] = None) -> None:
        super().__init__(operation, message or f"failed with status code: {code}")
        self.code = code


class StagingTimeout(StagingError):
    """The container did not finish before the run deadline."""

    def __init__(self, operation: str, timeout: float, message: Optional[str] = None) -> None:
        super().__init__(operation, message or f"container still running after {timeout:g}s; killed")
        self.timeout = timeout


class StreamConsumedError(RuntimeError):
    """An artifact stream was read after it had already been consumed."""


__all__ = [
    "ArtifactIOError",
    "EngineError",
    "FormatError",
    "MissingStartCommand",
    "NonZeroExit",
    "NotFoundError",
    "StagingError",
    "StagingTimeout",
    "StreamConsumedError",
]
