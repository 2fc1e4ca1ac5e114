"""Runtime configuration for queue admission and dispatch."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class GateSettings:
    """Admission gates applied when a pending task is started.

    ``None`` disables a gate. A limit of ``0`` keeps it permanently closed.
    """

    max_concurrency: int | None = 6
    rate_limit: int | None = None
    rate_window_seconds: float = 60.0
    start_retention_seconds: float = 3_600.0

    @property
    def concurrency_enabled(self) -> bool:
        return self.max_concurrency is not None

    @property
    def rate_enabled(self) -> bool:
        return self.rate_limit is not None


@dataclass(slots=True)
class RetrySettings:
    """Optimistic-concurrency retry policy for state mutations."""

    max_attempts: int = 5
    base_seconds: float = 0.05
    max_seconds: float = 1.0


@dataclass(slots=True)
class HistorySettings:
    """Retention of finished tasks and stale claims."""

    completed_tail: int = 50
    completed_retention: int = 0
    stale_in_flight_seconds: float = 0.0


@dataclass(slots=True)
class RunnerSettings:
    """Embedded dispatch runner tunables."""

    task_duration_seconds: float = 30.0
    workers: int = 6
    idle_seconds: float = 2.0
    fan_out: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskgate.db")
    state_key: str = "queue-state"
    sqlite_busy_timeout_ms: int = 5_000
    gates: GateSettings = field(default_factory=GateSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    runner: RunnerSettings = field(default_factory=RunnerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKGATE_DB_PATH", ".taskgate.db")),
            state_key=os.getenv("TASKGATE_STATE_KEY", "queue-state").strip() or "queue-state",
            sqlite_busy_timeout_ms=int(os.getenv("TASKGATE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            gates=GateSettings(
                max_concurrency=_env_limit("TASKGATE_MAX_CONCURRENCY", default=6),
                rate_limit=_env_limit("TASKGATE_RATE_LIMIT", default=None),
                rate_window_seconds=float(os.getenv("TASKGATE_RATE_WINDOW_SECONDS", "60")),
                start_retention_seconds=float(
                    os.getenv("TASKGATE_START_RETENTION_SECONDS", "3600"),
                ),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("TASKGATE_RETRY_MAX_ATTEMPTS", "5")),
                base_seconds=float(os.getenv("TASKGATE_RETRY_BASE_SECONDS", "0.05")),
                max_seconds=float(os.getenv("TASKGATE_RETRY_MAX_SECONDS", "1.0")),
            ),
            history=HistorySettings(
                completed_tail=int(os.getenv("TASKGATE_COMPLETED_TAIL", "50")),
                completed_retention=int(os.getenv("TASKGATE_COMPLETED_RETENTION", "0")),
                stale_in_flight_seconds=float(
                    os.getenv("TASKGATE_STALE_IN_FLIGHT_SECONDS", "0"),
                ),
            ),
            runner=RunnerSettings(
                task_duration_seconds=float(
                    os.getenv("TASKGATE_TASK_DURATION_SECONDS", "30"),
                ),
                workers=int(os.getenv("TASKGATE_RUNNER_WORKERS", "6")),
                idle_seconds=float(os.getenv("TASKGATE_RUNNER_IDLE_SECONDS", "2.0")),
                fan_out=_env_bool("TASKGATE_DISPATCH_FAN_OUT", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.gates.max_concurrency is not None and self.gates.max_concurrency < 0:
            raise ValueError("TASKGATE_MAX_CONCURRENCY must be >= 0 or off.")
        if self.gates.rate_limit is not None and self.gates.rate_limit < 0:
            raise ValueError("TASKGATE_RATE_LIMIT must be >= 0 or off.")
        if self.gates.rate_window_seconds <= 0:
            raise ValueError("TASKGATE_RATE_WINDOW_SECONDS must be > 0.")
        if self.gates.start_retention_seconds < self.gates.rate_window_seconds:
            raise ValueError(
                "TASKGATE_START_RETENTION_SECONDS must be >= TASKGATE_RATE_WINDOW_SECONDS.",
            )
        if self.retry.max_attempts < 1:
            raise ValueError("TASKGATE_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_seconds < 0 or self.retry.max_seconds < 0:
            raise ValueError("TASKGATE_RETRY_BASE_SECONDS/MAX_SECONDS must be >= 0.")
        if self.history.completed_tail < 0:
            raise ValueError("TASKGATE_COMPLETED_TAIL must be >= 0.")
        if self.history.completed_retention < 0:
            raise ValueError("TASKGATE_COMPLETED_RETENTION must be >= 0.")
        if self.history.stale_in_flight_seconds < 0:
            raise ValueError("TASKGATE_STALE_IN_FLIGHT_SECONDS must be >= 0.")
        if self.runner.task_duration_seconds < 0:
            raise ValueError("TASKGATE_TASK_DURATION_SECONDS must be >= 0.")
        if self.runner.workers < 1:
            raise ValueError("TASKGATE_RUNNER_WORKERS must be >= 1.")
        if not self.state_key:
            raise ValueError("TASKGATE_STATE_KEY must be non-empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_limit(name: str, default: int | None) -> int | None:
    """Read a gate limit; ``off``, ``none`` or ``-1`` disable the gate."""

    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "off", "none", "-1"}:
        return None
    try:
        return int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid limit for {name}: {value!r}") from error
