"""Execution collaborators that perform a task's work."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from taskgate.dispatch.errors import TaskExecutionError
from taskgate.dispatch.models import Task

logger = logging.getLogger(__name__)

SIMULATED_FAILURE_KEY = "simulate_failure"


class TaskExecutor(Protocol):
    """Protocol implemented by execution collaborators."""

    def execute(self, task: Task) -> None:
        """Run the task's work; return on success, raise on failure."""


class SimulatedExecutor:
    """Fixed-duration stand-in for real work.

    A dict payload with a truthy ``simulate_failure`` entry fails after the
    same duration, which is handy for exercising the failure path from the CLI.
    """

    def __init__(
        self,
        *,
        duration_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.duration_seconds = duration_seconds
        self._sleep = sleep

    def execute(self, task: Task) -> None:
        logger.debug("Simulating %s for %.1fs", task.task_id, self.duration_seconds)
        if self.duration_seconds > 0:
            self._sleep(self.duration_seconds)
        if isinstance(task.payload, dict) and task.payload.get(SIMULATED_FAILURE_KEY):
            raise TaskExecutionError(f"Simulated failure for {task.task_id}")


class CallableExecutor:
    """Adapts a plain ``payload -> Any`` callable."""

    def __init__(self, func: Callable[[Any], object]) -> None:
        self._func = func

    def execute(self, task: Task) -> None:
        self._func(task.payload)
