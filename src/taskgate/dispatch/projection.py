"""Read-only status view over the queue state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from taskgate.config import GateSettings
from taskgate.dispatch.models import QueueState, Task, TaskStatus


@dataclass(slots=True)
class RateLimitView:
    """Sliding-window start budget at the time of the read."""

    limit: int
    window_seconds: float
    used: int
    remaining: int
    reset_at: datetime | None


@dataclass(slots=True)
class ConcurrencyView:
    """In-flight occupancy against the ceiling."""

    limit: int
    in_flight: int
    available: int


@dataclass(slots=True)
class QueueStatusView:
    """Snapshot for dashboards and the CLI."""

    pending: list[Task]
    in_flight: list[Task]
    completed_tail: list[Task]
    counts: dict[str, int]
    rate_limit: RateLimitView | None
    concurrency: ConcurrencyView | None
    version: int
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "pending": [task.to_dict() for task in self.pending],
            "in_flight": [task.to_dict() for task in self.in_flight],
            "completed_tail": [task.to_dict() for task in self.completed_tail],
            "counts": dict(self.counts),
            "version": self.version,
            "generated_at": self.generated_at.isoformat(),
        }
        if self.rate_limit is not None:
            payload["rate_limit"] = {
                "limit": self.rate_limit.limit,
                "window_seconds": self.rate_limit.window_seconds,
                "used": self.rate_limit.used,
                "remaining": self.rate_limit.remaining,
                "reset_at": (
                    self.rate_limit.reset_at.isoformat()
                    if self.rate_limit.reset_at is not None
                    else None
                ),
            }
        if self.concurrency is not None:
            payload["concurrency"] = {
                "limit": self.concurrency.limit,
                "in_flight": self.concurrency.in_flight,
                "available": self.concurrency.available,
            }
        return payload


def build_status(
    state: QueueState,
    *,
    gates: GateSettings,
    now: datetime,
    completed_tail: int = 50,
) -> QueueStatusView:
    """Project state into lists, counts and gate utilization. Never mutates ``state``."""

    pending = state.resolve(state.pending)
    in_flight = state.resolve(state.in_flight)
    tail_ids = state.completed[-completed_tail:] if completed_tail > 0 else []
    completed_tail_tasks = state.resolve(tail_ids)

    finished = state.resolve(state.completed)
    counts = {
        "pending": len(pending),
        "in_flight": len(in_flight),
        "completed": sum(1 for task in finished if task.status is TaskStatus.COMPLETED),
        "failed": sum(1 for task in finished if task.status is TaskStatus.FAILED),
        "total": len(state.tasks),
    }

    rate_limit = None
    if gates.rate_limit is not None:
        recent = state.recent_starts(now=now, window_seconds=gates.rate_window_seconds)
        reset_at = (
            min(recent) + timedelta(seconds=gates.rate_window_seconds) if recent else None
        )
        rate_limit = RateLimitView(
            limit=gates.rate_limit,
            window_seconds=gates.rate_window_seconds,
            used=len(recent),
            remaining=max(0, gates.rate_limit - len(recent)),
            reset_at=reset_at,
        )

    concurrency = None
    if gates.max_concurrency is not None:
        concurrency = ConcurrencyView(
            limit=gates.max_concurrency,
            in_flight=len(in_flight),
            available=max(0, gates.max_concurrency - len(in_flight)),
        )

    return QueueStatusView(
        pending=pending,
        in_flight=in_flight,
        completed_tail=completed_tail_tasks,
        counts=counts,
        rate_limit=rate_limit,
        concurrency=concurrency,
        version=state.version,
        generated_at=now,
    )


def render_status_lines(view: QueueStatusView) -> list[str]:
    """Human-readable status for the CLI."""

    counts = view.counts
    lines = [
        "Queue: "
        f"pending={counts['pending']} in_flight={counts['in_flight']} "
        f"completed={counts['completed']} failed={counts['failed']} "
        f"total={counts['total']} version={view.version}",
    ]
    if view.concurrency is not None:
        lines.append(
            "Concurrency: "
            f"{view.concurrency.in_flight}/{view.concurrency.limit} "
            f"available={view.concurrency.available}",
        )
    if view.rate_limit is not None:
        reset_at = view.rate_limit.reset_at.isoformat() if view.rate_limit.reset_at else "-"
        lines.append(
            "Rate limit: "
            f"used={view.rate_limit.used}/{view.rate_limit.limit} "
            f"per {view.rate_limit.window_seconds:g}s "
            f"remaining={view.rate_limit.remaining} reset_at={reset_at}",
        )
    for title, tasks in (
        ("In flight", view.in_flight),
        ("Pending", view.pending),
        ("Recently finished", view.completed_tail),
    ):
        lines.append(f"{title}: {len(tasks)}")
        for task in tasks:
            lines.append(f"  {_task_line(task)}")
    return lines


def _task_line(task: Task) -> str:
    parts = [task.task_id, f"status={task.status.value}", f"created={task.created_at.isoformat()}"]
    if task.started_at is not None:
        parts.append(f"started={task.started_at.isoformat()}")
    if task.completed_at is not None:
        parts.append(f"finished={task.completed_at.isoformat()}")
    if task.error:
        parts.append(f"error={task.error}")
    return " ".join(parts)
