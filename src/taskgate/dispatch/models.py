"""Domain models for the shared queue state and dispatch results."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from taskgate.dispatch.errors import CorruptStateError, InvalidTransitionError
from taskgate.timeutil import parse_timestamp

STATE_FORMAT_VERSION = 1


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_NEXT_STATUSES: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_FLIGHT}),
    TaskStatus.IN_FLIGHT: TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass(slots=True)
class Task:
    """Single task record; the source of truth for its lifecycle."""

    task_id: str
    status: TaskStatus
    created_at: datetime
    payload: Any = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    claim_token: str | None = None
    error: str | None = None

    def advance(self, status: TaskStatus, *, at: datetime) -> None:
        """Move forward in the lifecycle, stamping start/finish times."""

        if status not in _NEXT_STATUSES[self.status]:
            raise InvalidTransitionError(
                f"Task {self.task_id}: {self.status.value} -> {status.value} is not allowed",
            )
        self.status = status
        if status is TaskStatus.IN_FLIGHT:
            self.started_at = at
        else:
            self.completed_at = at

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso_or_none(self.started_at),
            "completed_at": _iso_or_none(self.completed_at),
            "claim_token": self.claim_token,
            "error": self.error,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        return cls(
            task_id=str(raw["task_id"]),
            status=TaskStatus(raw["status"]),
            created_at=parse_timestamp(raw["created_at"]),
            payload=raw.get("payload"),
            started_at=_parse_optional(raw.get("started_at")),
            completed_at=_parse_optional(raw.get("completed_at")),
            claim_token=raw.get("claim_token"),
            error=raw.get("error"),
        )


@dataclass(slots=True)
class QueueState:
    """The single shared aggregate persisted under one store key."""

    pending: list[str] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    tasks: dict[str, Task] = field(default_factory=dict)
    starts: list[datetime] = field(default_factory=list)
    version: int = 0

    def copy(self) -> QueueState:
        """Deep copy; mutators always work on a copy, never on a loaded snapshot."""

        return copy.deepcopy(self)

    def reset(self) -> None:
        """Drop all tasks and start history. The version counter keeps growing."""

        self.pending.clear()
        self.in_flight.clear()
        self.completed.clear()
        self.tasks.clear()
        self.starts.clear()

    def recent_starts(self, *, now: datetime, window_seconds: float) -> list[datetime]:
        """Start timestamps inside the trailing window ending at ``now``."""

        cutoff = now - timedelta(seconds=window_seconds)
        return [started for started in self.starts if started > cutoff]

    def prune_starts(self, *, now: datetime, retention_seconds: float) -> int:
        """Drop start timestamps older than the retention horizon."""

        cutoff = now - timedelta(seconds=retention_seconds)
        kept = [started for started in self.starts if started > cutoff]
        dropped = len(self.starts) - len(kept)
        self.starts[:] = kept
        return dropped

    def resolve(self, task_ids: list[str]) -> list[Task]:
        """Map ids to records, silently skipping ids without a record."""

        return [self.tasks[task_id] for task_id in task_ids if task_id in self.tasks]

    def to_json(self) -> str:
        payload = {
            "format": STATE_FORMAT_VERSION,
            "version": self.version,
            "pending": self.pending,
            "in_flight": self.in_flight,
            "completed": self.completed,
            "tasks": {task_id: task.to_dict() for task_id, task in self.tasks.items()},
            "starts": [started.isoformat() for started in self.starts],
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> QueueState:
        """Parse a stored blob; an absent blob is the empty state."""

        if raw is None or not raw.strip():
            return cls()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise CorruptStateError(f"Queue state is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise CorruptStateError("Queue state must be a JSON object.")
        try:
            return cls(
                pending=[str(item) for item in payload.get("pending", [])],
                in_flight=[str(item) for item in payload.get("in_flight", [])],
                completed=[str(item) for item in payload.get("completed", [])],
                tasks={
                    str(task_id): Task.from_dict(task)
                    for task_id, task in payload.get("tasks", {}).items()
                },
                starts=[parse_timestamp(item) for item in payload.get("starts", [])],
                version=int(payload.get("version", 0)),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as error:
            raise CorruptStateError(f"Queue state document is malformed: {error}") from error


@dataclass(slots=True)
class AdmissionResult:
    """Outcome of admitting one task."""

    task_id: str
    position: int
    woke: bool


class TurnOutcome(str, Enum):
    """What a single dispatch turn ended up doing."""

    IDLE = "idle"
    CLAIMED = "claimed"
    CONCURRENCY_SATURATED = "concurrency_saturated"
    RATE_LIMITED = "rate_limited"
    COMPLETED = "completed"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class ClaimResult:
    """Result of the claim step of a dispatch turn."""

    outcome: TurnOutcome
    task: Task | None = None
    more_ready: bool = False
    retry_after_seconds: float | None = None
    reaped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DispatchTurnResult:
    """Aggregate result of one dispatch turn for logging and CLI reporting."""

    turn_id: str
    outcome: TurnOutcome
    task_id: str | None = None
    retry_after_seconds: float | None = None
    error: str | None = None


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_optional(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return parse_timestamp(str(value))
