"""Dispatch turns: claim the pending head, execute it, record the outcome, wake the next turn."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from uuid import uuid4

from taskgate.dispatch.errors import QueueUnavailableError
from taskgate.dispatch.executor import TaskExecutor
from taskgate.dispatch.gates import StartGate, evaluate_gates
from taskgate.dispatch.models import (
    TERMINAL_STATUSES,
    ClaimResult,
    DispatchTurnResult,
    QueueState,
    Task,
    TaskStatus,
    TurnOutcome,
)
from taskgate.dispatch.reconcile import StateReconciler
from taskgate.dispatch.wake import WakeSignal, send_wake
from taskgate.timeutil import utc_now

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "stale in-flight claim reaped"


class Dispatcher:
    """Runs independent dispatch turns against the shared queue state.

    A turn holds no state while the task executes. Any number of turns may
    run in parallel; with an unversioned store the gates are soft limits and
    may transiently overshoot while racing turns settle.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        reconciler: StateReconciler,
        executor: TaskExecutor,
        wake: WakeSignal,
        gates: Sequence[StartGate] = (),
        start_retention_seconds: float = 3_600.0,
        completed_retention: int = 0,
        stale_in_flight_seconds: float = 0.0,
        fan_out: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.reconciler = reconciler
        self.executor = executor
        self.wake = wake
        self.gates = tuple(gates)
        self.start_retention_seconds = start_retention_seconds
        self.completed_retention = completed_retention
        self.stale_in_flight_seconds = stale_in_flight_seconds
        self.fan_out = fan_out
        self._clock = clock

    def run_turn(self) -> DispatchTurnResult:
        """Claim at most one task, run it to completion and request the next turn."""

        turn_id = f"turn-{uuid4().hex[:12]}"
        try:
            claim = self.claim_next(turn_id=turn_id)
        except QueueUnavailableError as error:
            logger.error("Dispatch turn %s could not claim: %s", turn_id, error)
            return DispatchTurnResult(
                turn_id=turn_id,
                outcome=TurnOutcome.UNAVAILABLE,
                error=str(error),
            )

        if claim.task is None:
            if claim.outcome is TurnOutcome.RATE_LIMITED and claim.retry_after_seconds is not None:
                send_wake(self.wake, "rate_window", delay_seconds=claim.retry_after_seconds)
            return DispatchTurnResult(
                turn_id=turn_id,
                outcome=claim.outcome,
                retry_after_seconds=claim.retry_after_seconds,
            )

        task = claim.task
        if self.fan_out and claim.more_ready:
            send_wake(self.wake, "fan_out")

        error_summary = self._execute(task)
        try:
            finished = self.finish(
                task_id=task.task_id,
                claim_token=turn_id,
                error=error_summary,
            )
        except QueueUnavailableError as error:
            logger.error(
                "Dispatch turn %s could not record completion of %s: %s",
                turn_id,
                task.task_id,
                error,
            )
            return DispatchTurnResult(
                turn_id=turn_id,
                outcome=TurnOutcome.UNAVAILABLE,
                task_id=task.task_id,
                error=str(error),
            )

        self._request_next_turn()
        failed = finished is not None and finished.status is TaskStatus.FAILED
        return DispatchTurnResult(
            turn_id=turn_id,
            outcome=TurnOutcome.FAILED if failed or error_summary else TurnOutcome.COMPLETED,
            task_id=task.task_id,
            error=error_summary,
        )

    def claim_next(self, *, turn_id: str) -> ClaimResult:
        """Move the pending head to in-flight if every gate is open.

        Closed gates never consume pending work. Safe to retry: a cycle that
        finds a task already claimed under ``turn_id`` returns it unchanged.
        """

        def _claim(state: QueueState) -> ClaimResult:
            now = self._clock()
            reaped = self._reap_in_flight(state, now=now)

            for task_id in state.in_flight:
                existing = state.tasks.get(task_id)
                if existing is not None and existing.claim_token == turn_id:
                    return ClaimResult(outcome=TurnOutcome.CLAIMED, task=existing, reaped=reaped)

            _drop_unrunnable_pending(state)
            if not state.pending:
                return ClaimResult(outcome=TurnOutcome.IDLE, reaped=reaped)

            decision = evaluate_gates(self.gates, state, now=now)
            if not decision.open:
                return ClaimResult(
                    outcome=decision.outcome or TurnOutcome.CONCURRENCY_SATURATED,
                    retry_after_seconds=decision.retry_after_seconds,
                    reaped=reaped,
                )

            task_id = state.pending.pop(0)
            task = state.tasks[task_id]
            task.advance(TaskStatus.IN_FLIGHT, at=now)
            task.claim_token = turn_id
            state.in_flight.append(task_id)
            state.starts.append(now)
            state.prune_starts(now=now, retention_seconds=self.start_retention_seconds)
            more_ready = bool(state.pending) and evaluate_gates(self.gates, state, now=now).open
            return ClaimResult(
                outcome=TurnOutcome.CLAIMED,
                task=task,
                more_ready=more_ready,
                reaped=reaped,
            )

        result = self.reconciler.mutate(_claim)
        claim = result.value
        if claim.reaped:
            logger.warning("Turn %s reaped stale claims: %s", turn_id, ", ".join(claim.reaped))
        if claim.task is not None:
            logger.info(
                "Turn %s claimed %s (%d in flight, %d pending)",
                turn_id,
                claim.task.task_id,
                len(result.state.in_flight),
                len(result.state.pending),
            )
        else:
            logger.debug("Turn %s did not claim: %s", turn_id, claim.outcome.value)
        return claim

    def finish(
        self,
        *,
        task_id: str,
        claim_token: str,
        error: str | None = None,
    ) -> Task | None:
        """Record the outcome of an executed task against freshly read state.

        Returns the finished record, or ``None`` when the record vanished
        (queue cleared, history trimmed) or belongs to another claim.
        """

        def _finish(state: QueueState) -> Task | None:
            now = self._clock()
            task = state.tasks.get(task_id)
            if task is None:
                logger.error("Finished task %s has no record; skipping", task_id)
                if task_id in state.in_flight:
                    state.in_flight.remove(task_id)
                return None
            if task.status in TERMINAL_STATUSES:
                if task_id in state.in_flight:
                    state.in_flight.remove(task_id)
                return task
            if task.claim_token != claim_token:
                logger.error(
                    "Task %s is claimed by %s, not %s; skipping",
                    task_id,
                    task.claim_token,
                    claim_token,
                )
                return None
            if task.status is not TaskStatus.IN_FLIGHT:
                logger.error("Task %s finished while %s; skipping", task_id, task.status.value)
                return None

            if task_id in state.in_flight:
                state.in_flight.remove(task_id)
            task.advance(TaskStatus.FAILED if error else TaskStatus.COMPLETED, at=now)
            task.error = error
            state.completed.append(task_id)
            self._trim_history(state)
            return task

        result = self.reconciler.mutate(_finish)
        finished = result.value
        if finished is not None:
            logger.info("Task %s %s", task_id, finished.status.value)
        return finished

    def _execute(self, task: Task) -> str | None:
        try:
            self.executor.execute(task)
        except Exception as error:  # noqa: BLE001
            logger.warning("Task %s failed: %s", task.task_id, error)
            return f"{type(error).__name__}: {error}"
        return None

    def _request_next_turn(self) -> None:
        try:
            state = self.reconciler.read()
        except QueueUnavailableError as error:
            logger.warning("Could not re-check queue after completion: %s", error)
            send_wake(self.wake, "completed")
            return
        if not state.pending:
            return
        decision = evaluate_gates(self.gates, state, now=self._clock())
        if decision.open:
            send_wake(self.wake, "completed")
        elif decision.retry_after_seconds is not None:
            send_wake(self.wake, "rate_window", delay_seconds=decision.retry_after_seconds)

    def _reap_in_flight(self, state: QueueState, *, now: datetime) -> list[str]:
        """Drop in-flight ids without a record and fail claims older than the stale horizon."""

        reaped: list[str] = []
        stale_before = (
            now - timedelta(seconds=self.stale_in_flight_seconds)
            if self.stale_in_flight_seconds > 0
            else None
        )
        for task_id in list(state.in_flight):
            task = state.tasks.get(task_id)
            if task is None:
                logger.error("In-flight task %s has no record; dropping it", task_id)
                state.in_flight.remove(task_id)
                continue
            if task.status in TERMINAL_STATUSES:
                state.in_flight.remove(task_id)
                continue
            if stale_before is None or task.started_at is None or task.started_at > stale_before:
                continue
            logger.debug("Reaping stale in-flight task %s started at %s", task_id, task.started_at)
            state.in_flight.remove(task_id)
            task.advance(TaskStatus.FAILED, at=now)
            task.error = STALE_CLAIM_ERROR
            state.completed.append(task_id)
            reaped.append(task_id)
        if reaped:
            self._trim_history(state)
        return reaped

    def _trim_history(self, state: QueueState) -> None:
        if self.completed_retention <= 0:
            return
        while len(state.completed) > self.completed_retention:
            oldest = state.completed.pop(0)
            state.tasks.pop(oldest, None)


def _drop_unrunnable_pending(state: QueueState) -> None:
    """Remove pending ids that have no record or are no longer pending."""

    kept: list[str] = []
    for task_id in state.pending:
        task = state.tasks.get(task_id)
        if task is None:
            logger.error("Pending task %s has no record; dropping it", task_id)
            continue
        if task.status is not TaskStatus.PENDING:
            logger.error("Pending task %s is already %s; dropping it", task_id, task.status.value)
            continue
        kept.append(task_id)
    state.pending[:] = kept
