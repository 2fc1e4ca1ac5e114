"""Embedded dispatch runner: worker threads that turn wakes into dispatch turns."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from taskgate.dispatch.dispatcher import Dispatcher
from taskgate.dispatch.models import DispatchTurnResult, TurnOutcome
from taskgate.dispatch.wake import LocalWakeQueue, send_wake

logger = logging.getLogger(__name__)

_RECEIVE_TIMEOUT_SECONDS = 0.2
_DRAIN_POLL_SECONDS = 0.05


@dataclass(slots=True)
class RunnerSummary:
    """Aggregate turn counters for CLI reporting."""

    turns: int = 0
    completed: int = 0
    failed: int = 0
    idle: int = 0
    saturated: int = 0
    rate_limited: int = 0
    unavailable: int = 0
    errors: int = 0

    def record(self, result: DispatchTurnResult) -> None:
        self.turns += 1
        if result.outcome is TurnOutcome.COMPLETED:
            self.completed += 1
        elif result.outcome is TurnOutcome.FAILED:
            self.failed += 1
        elif result.outcome is TurnOutcome.IDLE:
            self.idle += 1
        elif result.outcome is TurnOutcome.CONCURRENCY_SATURATED:
            self.saturated += 1
        elif result.outcome is TurnOutcome.RATE_LIMITED:
            self.rate_limited += 1
        elif result.outcome is TurnOutcome.UNAVAILABLE:
            self.unavailable += 1


class DispatchRunner:
    """Runs one dispatch turn per wake on a pool of daemon threads.

    The dispatcher must send its wakes to the same ``wake_queue`` so that
    turns keep feeding each other until the backlog is drained.
    """

    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        wake_queue: LocalWakeQueue,
        workers: int = 6,
        name: str = "taskgate-dispatch",
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.dispatcher = dispatcher
        self.wake_queue = wake_queue
        self.workers = workers
        self.name = name
        self.summary = RunnerSummary()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._active_turns = 0
        self._last_activity = time.monotonic()

    def start(self) -> None:
        """Start worker threads and request one turn for any backlog left behind."""

        if self._threads:
            return
        self._stop.clear()
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"{self.name}-{index}",
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Dispatch runner started with %d workers", self.workers)
        send_wake(self.wake_queue, "runner_start")

    def stop(self, *, timeout: float | None = None) -> None:
        """Stop claiming new work and wait for turns already running to finish."""

        if not self._threads:
            return
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Dispatch runner stopped")

    def drain(self, *, idle_seconds: float = 2.0, max_seconds: float | None = None) -> RunnerSummary:
        """Run until every wake is handled and nothing happened for ``idle_seconds``.

        After ``max_seconds`` no further turn starts; turns already executing
        still finish and record their outcome before this returns.
        """

        self.start()
        started = time.monotonic()
        try:
            while True:
                if max_seconds is not None and time.monotonic() - started >= max_seconds:
                    logger.warning(
                        "Dispatch drain stopped claiming after %.1fs; waiting for running turns",
                        max_seconds,
                    )
                    break
                with self._lock:
                    active = self._active_turns
                    quiet_for = time.monotonic() - self._last_activity
                if (
                    active == 0
                    and self.wake_queue.unfinished_count() == 0
                    and quiet_for >= idle_seconds
                ):
                    break
                time.sleep(_DRAIN_POLL_SECONDS)
        finally:
            self.stop()
        return self.summary

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            event = self.wake_queue.receive(timeout=_RECEIVE_TIMEOUT_SECONDS)
            if event is None:
                continue
            if self._stop.is_set():
                self.wake_queue.task_done()
                break
            with self._lock:
                self._active_turns += 1
                self._last_activity = time.monotonic()
            try:
                result = self.dispatcher.run_turn()
                logger.debug(
                    "Turn %s (%s) -> %s %s",
                    result.turn_id,
                    event.reason,
                    result.outcome.value,
                    result.task_id or "",
                )
                with self._lock:
                    self.summary.record(result)
            except Exception:
                logger.exception("Dispatch turn error")
                with self._lock:
                    self.summary.errors += 1
            finally:
                with self._lock:
                    self._active_turns -= 1
                    self._last_activity = time.monotonic()
                self.wake_queue.task_done()
