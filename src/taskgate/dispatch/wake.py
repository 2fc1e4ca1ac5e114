"""Dispatch wake signals: fire-and-forget "run a turn now" messages."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

DISPATCH_EVENT = "process-task"


class WakeDeliveryError(RuntimeError):
    """Wake could not be handed to the transport."""


class WakeSignal(Protocol):
    """Outbound transport asking some worker to run one dispatch turn."""

    def send(self, reason: str, *, delay_seconds: float = 0.0) -> None:
        """Deliver at least once, or raise."""


class NullWake:
    """Drops every wake; pending work waits for an external trigger."""

    def send(self, reason: str, *, delay_seconds: float = 0.0) -> None:
        logger.debug("Wake dropped (reason=%s delay=%.2fs)", reason, delay_seconds)


@dataclass(slots=True, order=True)
class WakeEvent:
    """One queued wake, ordered by due time then arrival."""

    due: float
    sequence: int
    reason: str = field(compare=False)
    event_name: str = field(default=DISPATCH_EVENT, compare=False)


class LocalWakeQueue:
    """In-process wake transport with delayed delivery."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list[WakeEvent] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._closed = False
        self._unfinished = 0

    def send(self, reason: str, *, delay_seconds: float = 0.0) -> None:
        with self._condition:
            if self._closed:
                raise WakeDeliveryError("Wake queue is closed.")
            heapq.heappush(
                self._heap,
                WakeEvent(
                    due=self._clock() + max(0.0, delay_seconds),
                    sequence=next(self._sequence),
                    reason=reason,
                ),
            )
            self._unfinished += 1
            self._condition.notify()

    def receive(self, *, timeout: float | None = None) -> WakeEvent | None:
        """Block until a wake is due. Returns ``None`` on timeout or once closed."""

        deadline = None if timeout is None else self._clock() + timeout
        with self._condition:
            while True:
                if self._closed:
                    return None
                now = self._clock()
                if self._heap and self._heap[0].due <= now:
                    return heapq.heappop(self._heap)
                wait_for = None if not self._heap else self._heap[0].due - now
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._condition.wait(timeout=wait_for)

    def pending_count(self) -> int:
        with self._condition:
            return len(self._heap)

    def unfinished_count(self) -> int:
        """Wakes sent but not yet marked done, queued or in hand."""

        with self._condition:
            return self._unfinished

    def task_done(self) -> None:
        """Mark one received wake as handled."""

        with self._condition:
            if self._unfinished <= 0:
                raise ValueError("task_done() called more times than wakes were sent")
            self._unfinished -= 1

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()


def send_wake(wake: WakeSignal, reason: str, *, delay_seconds: float = 0.0) -> bool:
    """Best-effort wake; delivery failure is logged and swallowed."""

    try:
        wake.send(reason, delay_seconds=delay_seconds)
    except Exception as error:  # noqa: BLE001
        logger.warning("Failed to deliver dispatch wake (reason=%s): %s", reason, error)
        return False
    return True
