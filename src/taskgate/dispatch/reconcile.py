"""Optimistic-concurrency read-modify-write over the shared state blob."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from taskgate.dispatch.errors import QueueUnavailableError
from taskgate.dispatch.models import QueueState
from taskgate.storage.store import (
    StateStore,
    StoreConflictError,
    StoreUnavailableError,
    VersionedStateStore,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class MutationResult(Generic[T]):
    """State as written (or as read, when nothing changed) plus the mutator's value."""

    state: QueueState
    value: T
    changed: bool
    attempts: int


class StateReconciler:
    """Runs every state mutation as a retried read -> copy -> mutate -> write cycle.

    The mutator receives a fresh copy of the state on each attempt and must be
    safe to run again: a write that raised may still have landed, so a retried
    cycle can observe the effect of its own earlier attempt.

    With a :class:`VersionedStateStore` the write is a compare-and-set and a
    lost race raises a conflict that is retried. With a plain store the write
    is last-writer-wins: two mutators that read the same snapshot can silently
    drop each other's changes. Only failed writes are retried there.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        key: str,
        max_attempts: int = 5,
        base_seconds: float = 0.05,
        max_seconds: float = 1.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.key = key
        self.max_attempts = max_attempts
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._random = rng or random.Random()  # noqa: S311
        self._sleep = sleep

    @property
    def versioned(self) -> bool:
        return isinstance(self.store, VersionedStateStore)

    def read(self) -> QueueState:
        """Single read without retry, for projections that never write."""

        try:
            state, _ = self._load()
        except StoreUnavailableError as error:
            raise QueueUnavailableError(
                f"Queue state read failed: {error}",
                attempts=1,
                cause=error,
            ) from error
        return state

    def mutate(self, mutator: Callable[[QueueState], T]) -> MutationResult[T]:
        """Apply ``mutator`` to fresh state and persist it, retrying on conflict."""

        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                current, store_version = self._load()
                draft = current.copy()
                value = mutator(draft)
                if draft.to_json() == current.to_json():
                    return MutationResult(state=current, value=value, changed=False, attempts=attempt)
                self._write(draft, base=current, store_version=store_version)
                return MutationResult(state=draft, value=value, changed=True, attempts=attempt)
            except (StoreConflictError, StoreUnavailableError) as error:
                last_error = error
                if attempt >= self.max_attempts:
                    break
                delay = self._compute_backoff(attempt=attempt)
                logger.debug(
                    "State mutation attempt %d/%d failed (%s); retrying in %.3fs",
                    attempt,
                    self.max_attempts,
                    error,
                    delay,
                )
                self._sleep(delay)

        logger.warning(
            "State mutation gave up after %d attempts: %s",
            self.max_attempts,
            last_error,
        )
        raise QueueUnavailableError(
            f"Queue state unavailable after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            cause=last_error,
        ) from last_error

    def clear(self) -> QueueState:
        """Reset to the empty state. Clearing an empty state writes nothing."""

        return self.mutate(_reset).state

    def _load(self) -> tuple[QueueState, int]:
        if isinstance(self.store, VersionedStateStore):
            raw, store_version = self.store.get_versioned(self.key)
            return QueueState.from_json(raw), store_version
        raw = self.store.get(self.key)
        state = QueueState.from_json(raw)
        return state, state.version

    def _write(self, draft: QueueState, *, base: QueueState, store_version: int) -> None:
        if isinstance(self.store, VersionedStateStore):
            draft.version = store_version + 1
            self.store.compare_and_set(
                self.key,
                draft.to_json(),
                expected_version=store_version,
                new_version=draft.version,
            )
            return
        draft.version = base.version + 1
        self.store.set(self.key, draft.to_json())

    def _compute_backoff(self, *, attempt: int) -> float:
        max_delay = min(self.max_seconds, self.base_seconds * (2 ** max(attempt - 1, 0)))
        return self._random.uniform(0, max_delay)


def _reset(state: QueueState) -> None:
    state.reset()
