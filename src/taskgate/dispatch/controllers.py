"""Controllers for queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgate.config import Settings
from taskgate.dispatch.executor import SimulatedExecutor
from taskgate.dispatch.projection import render_status_lines
from taskgate.dispatch.runner import DispatchRunner
from taskgate.dispatch.services import QueueService
from taskgate.dispatch.wake import LocalWakeQueue, NullWake, WakeSignal
from taskgate.storage.store import SQLiteStateStore


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for task admission."""

    db_path: Path | None
    payload: Any
    count: int = 1


@dataclass(slots=True)
class QueueStatusCommand:
    """CLI input for status projection."""

    db_path: Path | None
    as_json: bool
    tail: int | None


@dataclass(slots=True)
class QueueClearCommand:
    """CLI input for queue reset."""

    db_path: Path | None


@dataclass(slots=True)
class QueueDispatchCommand:
    """CLI input for one dispatch turn."""

    db_path: Path | None
    task_seconds: float | None


@dataclass(slots=True)
class QueueRunCommand:
    """CLI input for the embedded dispatch runner."""

    db_path: Path | None
    workers: int | None
    idle_seconds: float | None
    task_seconds: float | None
    max_seconds: float | None = None


class QueueCliController:
    """Coordinates admission, status, clear and dispatch CLI operations."""

    def add(self, command: QueueAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        lines: list[str] = []
        with _service(settings, wake=NullWake()) as service:
            for _ in range(max(1, command.count)):
                result = service.admit(command.payload)
                lines.append(f"Task queued: task_id={result.task_id} position={result.position}")
        return lines

    def status(self, command: QueueStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings, wake=NullWake()) as service:
            view = service.status(completed_tail=command.tail)
        if command.as_json:
            return [json.dumps(view.to_dict(), ensure_ascii=False, indent=2)]
        return render_status_lines(view)

    def clear(self, command: QueueClearCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings, wake=NullWake()) as service:
            service.clear()
        return ["Queue cleared."]

    def dispatch(self, command: QueueDispatchCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _service(settings, wake=NullWake()) as service:
            dispatcher = service.dispatcher(
                SimulatedExecutor(duration_seconds=_task_seconds(settings, command.task_seconds)),
            )
            result = dispatcher.run_turn()
        line = f"Turn {result.turn_id}: outcome={result.outcome.value}"
        if result.task_id:
            line += f" task_id={result.task_id}"
        if result.retry_after_seconds is not None:
            line += f" retry_after={result.retry_after_seconds:.1f}s"
        if result.error:
            line += f" error={result.error}"
        return [line]

    def run(self, command: QueueRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        wake_queue = LocalWakeQueue()
        with _service(settings, wake=wake_queue) as service:
            dispatcher = service.dispatcher(
                SimulatedExecutor(duration_seconds=_task_seconds(settings, command.task_seconds)),
            )
            runner = DispatchRunner(
                dispatcher=dispatcher,
                wake_queue=wake_queue,
                workers=command.workers or settings.runner.workers,
            )
            summary = runner.drain(
                idle_seconds=(
                    settings.runner.idle_seconds
                    if command.idle_seconds is None
                    else command.idle_seconds
                ),
                max_seconds=command.max_seconds,
            )
            wake_queue.close()
            view = service.status()

        return [
            "Runner summary: "
            f"turns={summary.turns} completed={summary.completed} failed={summary.failed} "
            f"idle={summary.idle} saturated={summary.saturated} "
            f"rate_limited={summary.rate_limited} unavailable={summary.unavailable} "
            f"errors={summary.errors}",
            *render_status_lines(view)[:1],
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _task_seconds(settings: Settings, override: float | None) -> float:
    return settings.runner.task_duration_seconds if override is None else override


@contextmanager
def _service(settings: Settings, *, wake: WakeSignal) -> Iterator[QueueService]:
    store = SQLiteStateStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.init_schema()
    try:
        yield QueueService(settings=settings, store=store, wake=wake)
    finally:
        store.close()
