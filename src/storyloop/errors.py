from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from storyloop.events import StorySnapshot


class StoryloopError(RuntimeError):
    """Base class for every error raised by storyloop."""


class CorruptStateError(StoryloopError):
    """Raised when the plan document cannot be parsed even after repair."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class PlanNotFoundError(CorruptStateError):
    """Raised when the plan document does not exist."""


class PlanValidationError(CorruptStateError):
    """Raised when a plan parses but violates structural limits."""


class PlanStorageError(CorruptStateError):
    """Raised when the plan document or its lock cannot be read or written."""


class LockTimeoutError(StoryloopError):
    """Raised when the plan lock cannot be acquired in time."""

    def __init__(self, path: Path, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out acquiring lock on {path} after {timeout_seconds:.1f}s; "
            "remove the lock file if no storyloop process is running"
        )
        self.path = path
        self.timeout_seconds = timeout_seconds


class GenerationError(StoryloopError):
    """Raised when planning produced no usable plan."""

    def __init__(self, message: str, *, findings: list[Any] | None = None) -> None:
        super().__init__(message)
        self.findings = list(findings or [])


class LoadError(StoryloopError):
    """Raised when resume was requested without a valid persisted plan."""


class CancellationError(StoryloopError):
    """Raised when a run stops because cancellation was requested."""


class RunFailedError(StoryloopError):
    """Terminal run failure carrying the stories that could not be completed."""

    def __init__(
        self,
        message: str,
        *,
        failed_stories: list[StorySnapshot] | None = None,
        iterations: int = 0,
    ) -> None:
        super().__init__(message)
        self.failed_stories = list(failed_stories or [])
        self.iterations = iterations


class RetryExhaustedError(RunFailedError):
    """Raised when every remaining story has used up its retries."""


class IterationCeilingError(RunFailedError):
    """Raised when the run exceeds the configured iteration ceiling."""


class GitError(StoryloopError):
    """Raised when a git operation fails."""

    def __init__(self, operation: str, detail: str = "") -> None:
        message = f"git {operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
