"""Queue-level error taxonomy."""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base queue failure."""


class QueueUnavailableError(QueueError):
    """State could not be read or written after exhausting retries.

    Callers should treat this as retryable ("temporarily unavailable").
    """

    def __init__(self, message: str, *, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class CorruptStateError(QueueError):
    """Stored blob is not a valid queue state document."""


class InvalidTransitionError(QueueError):
    """Task status change that would not advance the lifecycle."""


class TaskExecutionError(RuntimeError):
    """Raised by executors when a task's work fails."""
