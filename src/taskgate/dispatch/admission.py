"""Admission: accept new work into the pending sequence."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from taskgate.dispatch.ids import new_task_id
from taskgate.dispatch.models import AdmissionResult, QueueState, Task, TaskStatus
from taskgate.dispatch.reconcile import StateReconciler
from taskgate.dispatch.wake import WakeSignal, send_wake
from taskgate.timeutil import utc_now

logger = logging.getLogger(__name__)


class AdmissionService:
    """Appends tasks to the queue; admission itself is never gated."""

    def __init__(
        self,
        *,
        reconciler: StateReconciler,
        wake: WakeSignal,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_task_id,
    ) -> None:
        self.reconciler = reconciler
        self.wake = wake
        self._clock = clock
        self._id_factory = id_factory

    def admit(self, payload: Any = None) -> AdmissionResult:
        """Queue one task and request a dispatch turn.

        Raises :class:`~taskgate.dispatch.errors.QueueUnavailableError` when the
        append could not be persisted; the task is then not queued. A failed
        wake does not fail admission: the task stays queued for the next turn.
        """

        task = Task(
            task_id=self._id_factory(),
            status=TaskStatus.PENDING,
            created_at=self._clock(),
            payload=payload,
        )

        def _append(state: QueueState) -> int:
            if task.task_id not in state.tasks:
                state.tasks[task.task_id] = Task(
                    task_id=task.task_id,
                    status=task.status,
                    created_at=task.created_at,
                    payload=task.payload,
                )
                state.pending.append(task.task_id)
            if task.task_id in state.pending:
                return state.pending.index(task.task_id) + 1
            return 0

        result = self.reconciler.mutate(_append)
        logger.info(
            "Admitted %s at position %d (pending=%d in_flight=%d)",
            task.task_id,
            result.value,
            len(result.state.pending),
            len(result.state.in_flight),
        )
        woke = send_wake(self.wake, f"admitted:{task.task_id}")
        return AdmissionResult(task_id=task.task_id, position=result.value, woke=woke)
