"""Queue test doubles and builders."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from taskgate.config import GateSettings, HistorySettings, RetrySettings, RunnerSettings, Settings
from taskgate.dispatch.models import QueueState, Task
from taskgate.dispatch.services import QueueService
from taskgate.dispatch.wake import NullWake, WakeSignal
from taskgate.storage.store import StateStore, VersionedMemoryStateStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += timedelta(seconds=seconds)


class GatedExecutor:
    """Blocks every task until ``release`` is set; records start order."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.release = threading.Event()
        self._lock = threading.Lock()

    def execute(self, task: Task) -> None:
        with self._lock:
            self.started.append(task.task_id)
        if not self.release.wait(timeout=10):
            raise TimeoutError(f"{task.task_id} was never released")


class RecordingWake:
    """Collects wakes instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, float]] = []
        self._lock = threading.Lock()

    def send(self, reason: str, *, delay_seconds: float = 0.0) -> None:
        with self._lock:
            self.sent.append((reason, delay_seconds))


class BrokenWake:
    def send(self, reason: str, *, delay_seconds: float = 0.0) -> None:
        raise ConnectionError("wake transport down")


def make_settings(
    *,
    max_concurrency: int | None = None,
    rate_limit: int | None = None,
    rate_window_seconds: float = 60.0,
    max_attempts: int = 50,
    completed_retention: int = 0,
    stale_in_flight_seconds: float = 0.0,
    fan_out: bool = True,
) -> Settings:
    return Settings(
        gates=GateSettings(
            max_concurrency=max_concurrency,
            rate_limit=rate_limit,
            rate_window_seconds=rate_window_seconds,
        ),
        retry=RetrySettings(max_attempts=max_attempts, base_seconds=0.001, max_seconds=0.01),
        history=HistorySettings(
            completed_retention=completed_retention,
            stale_in_flight_seconds=stale_in_flight_seconds,
        ),
        runner=RunnerSettings(task_duration_seconds=0.0, fan_out=fan_out),
    )


def make_service(
    *,
    store: StateStore | None = None,
    wake: WakeSignal | None = None,
    clock: Callable[[], datetime] | None = None,
    **settings_kwargs,
) -> QueueService:
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return QueueService(
        settings=make_settings(**settings_kwargs),
        store=store if store is not None else VersionedMemoryStateStore(),
        wake=wake if wake is not None else NullWake(),
        **kwargs,
    )


def wait_until(predicate: Callable[[], bool], *, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("Condition not met before timeout")


def read_state(service: QueueService) -> QueueState:
    return service.reconciler.read()
