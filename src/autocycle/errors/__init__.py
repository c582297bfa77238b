"""Autocycle error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    SPAWN = "spawn"
    TIMEOUT = "timeout"
    TRIVIAL_RUN = "trivial_run"
    TESTS = "tests"
    REVIEW = "review"
    MERGE = "merge"
    ISOLATION = "isolation"
    CANCELLATION = "cancellation"
    BUDGET = "budget"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class AutocycleError(Exception):
    """Base error for all orchestration exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class SpawnFailedError(AutocycleError):
    """The agent process could not be started (missing binary or limits)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.SPAWN, retryable=False, **kwargs)


class TaskTimeoutError(AutocycleError):
    """A task (or the run) ran out of time and its session was killed."""

    def __init__(self, timeout_seconds: float, *, task_id: str | None = None) -> None:
        super().__init__(
            f"timeout after {timeout_seconds:.0f}s",
            category=ErrorCategory.TIMEOUT,
            retryable=True,
            details={"task_id": task_id} if task_id else None,
        )
        self.timeout_seconds = timeout_seconds


class TrivialRunError(AutocycleError):
    """The session exited too fast to have done any real work."""

    def __init__(self, elapsed_seconds: float, threshold_seconds: float) -> None:
        super().__init__(
            f"trivial run: session exited after {elapsed_seconds:.2f}s "
            f"(minimum {threshold_seconds:.2f}s)",
            category=ErrorCategory.TRIVIAL_RUN,
        )
        self.elapsed_seconds = elapsed_seconds
        self.threshold_seconds = threshold_seconds


class TestRunnerUnavailableError(AutocycleError):
    """The test command could not be started at all."""

    __test__ = False

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.TESTS)


class ReviewUnavailableError(AutocycleError):
    """No review decision could be obtained."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.REVIEW, retryable=True)


class MergeConflictError(AutocycleError):
    """Merging a task branch failed; the base line was left untouched."""

    def __init__(self, message: str, *, branch: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.MERGE)
        self.branch = branch


class IsolationCreateFailedError(AutocycleError):
    """An isolated worktree could not be created for a task."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message, category=ErrorCategory.ISOLATION)
        self.task_id = task_id


class ConfigError(AutocycleError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION)


class BudgetExhaustedError(AutocycleError):
    """The run budget ran out before a session could be started."""

    def __init__(self, limit: str) -> None:
        super().__init__(f"limit_reached: {limit}", category=ErrorCategory.BUDGET, details={"limit": limit})


class RunAbortedError(AutocycleError):
    """Work was interrupted by a stop request or process shutdown."""

    def __init__(self, message: str = "stopped by user") -> None:
        super().__init__(message, category=ErrorCategory.CANCELLATION)
