"""Use-case wiring for the queue: admission, status, clear and dispatch turns."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from taskgate.config import Settings
from taskgate.dispatch.admission import AdmissionService
from taskgate.dispatch.dispatcher import Dispatcher
from taskgate.dispatch.executor import TaskExecutor
from taskgate.dispatch.gates import build_gates
from taskgate.dispatch.models import AdmissionResult
from taskgate.dispatch.projection import QueueStatusView, build_status
from taskgate.dispatch.reconcile import StateReconciler
from taskgate.dispatch.wake import WakeSignal
from taskgate.timeutil import utc_now
from taskgate.storage.store import StateStore


class QueueService:
    """Coordinates the inbound queue operations over one state store."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: StateStore,
        wake: WakeSignal,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.wake = wake
        self._clock = clock
        self.reconciler = StateReconciler(
            store=store,
            key=settings.state_key,
            max_attempts=settings.retry.max_attempts,
            base_seconds=settings.retry.base_seconds,
            max_seconds=settings.retry.max_seconds,
        )
        self.admission = AdmissionService(reconciler=self.reconciler, wake=wake, clock=clock)

    def admit(self, payload: Any = None) -> AdmissionResult:
        return self.admission.admit(payload)

    def status(self, *, completed_tail: int | None = None) -> QueueStatusView:
        state = self.reconciler.read()
        return build_status(
            state,
            gates=self.settings.gates,
            now=self._clock(),
            completed_tail=(
                self.settings.history.completed_tail if completed_tail is None else completed_tail
            ),
        )

    def clear(self) -> None:
        """Reset to the empty queue; clearing twice is the same as clearing once."""

        self.reconciler.clear()

    def dispatcher(self, executor: TaskExecutor) -> Dispatcher:
        """Build a dispatcher sharing this service's reconciler, wake and clock."""

        return Dispatcher(
            reconciler=self.reconciler,
            executor=executor,
            wake=self.wake,
            gates=build_gates(self.settings.gates),
            start_retention_seconds=self.settings.gates.start_retention_seconds,
            completed_retention=self.settings.history.completed_retention,
            stale_in_flight_seconds=self.settings.history.stale_in_flight_seconds,
            fan_out=self.settings.runner.fan_out,
            clock=self._clock,
        )
