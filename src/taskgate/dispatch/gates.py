"""Start gates: independently selectable policies that decide whether a task may start."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from taskgate.config import GateSettings
from taskgate.dispatch.models import QueueState, TurnOutcome


@dataclass(slots=True, frozen=True)
class GateDecision:
    """Whether a start is allowed now; closed decisions carry the reason."""

    open: bool
    outcome: TurnOutcome | None = None
    retry_after_seconds: float | None = None


OPEN = GateDecision(open=True)


class StartGate(Protocol):
    """Policy evaluated against current state before popping the pending head."""

    def check(self, state: QueueState, *, now: datetime) -> GateDecision:
        """Return whether one more task may start at ``now``."""


@dataclass(slots=True, frozen=True)
class ConcurrencyGate:
    """At most ``limit`` tasks in flight."""

    limit: int

    def check(self, state: QueueState, *, now: datetime) -> GateDecision:  # noqa: ARG002
        if len(state.in_flight) < self.limit:
            return OPEN
        return GateDecision(open=False, outcome=TurnOutcome.CONCURRENCY_SATURATED)


@dataclass(slots=True, frozen=True)
class RateGate:
    """At most ``limit`` starts inside any trailing ``window_seconds``.

    Accounting is keyed on start time only; how long tasks run is irrelevant.
    """

    limit: int
    window_seconds: float

    def check(self, state: QueueState, *, now: datetime) -> GateDecision:
        if self.limit <= 0:
            return GateDecision(open=False, outcome=TurnOutcome.RATE_LIMITED)
        recent = state.recent_starts(now=now, window_seconds=self.window_seconds)
        if len(recent) < self.limit:
            return OPEN
        # The slot frees once the oldest start that still keeps the window full ages out.
        freeing = sorted(recent)[len(recent) - self.limit]
        reset_at = freeing + timedelta(seconds=self.window_seconds)
        return GateDecision(
            open=False,
            outcome=TurnOutcome.RATE_LIMITED,
            retry_after_seconds=max(0.0, (reset_at - now).total_seconds()),
        )


def build_gates(settings: GateSettings) -> tuple[StartGate, ...]:
    """Gates enabled by configuration; an empty tuple means starts are unlimited."""

    gates: list[StartGate] = []
    if settings.max_concurrency is not None:
        gates.append(ConcurrencyGate(limit=settings.max_concurrency))
    if settings.rate_limit is not None:
        gates.append(RateGate(limit=settings.rate_limit, window_seconds=settings.rate_window_seconds))
    return tuple(gates)


def evaluate_gates(gates: Sequence[StartGate], state: QueueState, *, now: datetime) -> GateDecision:
    """First closed gate wins; all open means the start may proceed."""

    for gate in gates:
        decision = gate.check(state, now=now)
        if not decision.open:
            return decision
    return OPEN
