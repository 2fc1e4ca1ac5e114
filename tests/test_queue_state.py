from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from taskgate.dispatch.errors import CorruptStateError, InvalidTransitionError
from taskgate.dispatch.ids import new_task_id
from taskgate.dispatch.models import QueueState, Task, TaskStatus
from taskgate.timeutil import parse_timestamp

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Queue State"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _task(task_id: str = "task-1", status: TaskStatus = TaskStatus.PENDING) -> Task:
    return Task(task_id=task_id, status=status, created_at=NOW, payload={"n": 1})


def test_task_advances_forward_and_stamps_times() -> None:
    task = _task()

    task.advance(TaskStatus.IN_FLIGHT, at=NOW + timedelta(seconds=1))
    task.advance(TaskStatus.COMPLETED, at=NOW + timedelta(seconds=5))

    assert task.status is TaskStatus.COMPLETED
    assert task.started_at == NOW + timedelta(seconds=1)
    assert task.completed_at == NOW + timedelta(seconds=5)


@pytest.mark.parametrize(
    ("start", "target"),
    [
        (TaskStatus.PENDING, TaskStatus.COMPLETED),
        (TaskStatus.PENDING, TaskStatus.FAILED),
        (TaskStatus.IN_FLIGHT, TaskStatus.PENDING),
        (TaskStatus.COMPLETED, TaskStatus.IN_FLIGHT),
        (TaskStatus.FAILED, TaskStatus.COMPLETED),
    ],
)
def test_task_rejects_non_advancing_transitions(start: TaskStatus, target: TaskStatus) -> None:
    task = _task(status=start)

    with pytest.raises(InvalidTransitionError):
        task.advance(target, at=NOW)
    assert task.status is start


def test_state_json_preserves_order_records_and_starts() -> None:
    state = QueueState(
        pending=["task-b", "task-a"],
        in_flight=["task-c"],
        completed=[],
        tasks={
            "task-a": _task("task-a"),
            "task-b": _task("task-b"),
            "task-c": Task(
                task_id="task-c",
                status=TaskStatus.IN_FLIGHT,
                created_at=NOW,
                started_at=NOW,
                claim_token="turn-1",
                payload=[1, "two", None],
            ),
        },
        starts=[NOW],
        version=7,
    )

    restored = QueueState.from_json(state.to_json())

    assert restored.pending == ["task-b", "task-a"]
    assert restored.in_flight == ["task-c"]
    assert restored.tasks["task-c"].claim_token == "turn-1"
    assert restored.tasks["task-c"].payload == [1, "two", None]
    assert restored.starts == [NOW]
    assert restored.version == 7


def test_absent_blob_is_empty_state() -> None:
    state = QueueState.from_json(None)

    assert state == QueueState()


@pytest.mark.parametrize("raw", ["{not json", "[]", '{"tasks": {"x": {"status": "pending"}}}'])
def test_corrupt_blob_raises(raw: str) -> None:
    with pytest.raises(CorruptStateError):
        QueueState.from_json(raw)


def test_copy_is_independent() -> None:
    state = QueueState(pending=["task-a"], tasks={"task-a": _task("task-a")})

    draft = state.copy()
    draft.pending.pop()
    draft.tasks["task-a"].status = TaskStatus.IN_FLIGHT

    assert state.pending == ["task-a"]
    assert state.tasks["task-a"].status is TaskStatus.PENDING


def test_recent_starts_and_prune_use_trailing_windows() -> None:
    state = QueueState(
        starts=[
            NOW - timedelta(seconds=7200),
            NOW - timedelta(seconds=90),
            NOW - timedelta(seconds=60),
            NOW - timedelta(seconds=10),
        ],
    )

    assert state.recent_starts(now=NOW, window_seconds=60) == [NOW - timedelta(seconds=10)]
    assert state.prune_starts(now=NOW, retention_seconds=3600) == 1
    assert len(state.starts) == 3


def test_reset_clears_everything_but_version() -> None:
    state = QueueState(
        pending=["task-a"],
        tasks={"task-a": _task("task-a")},
        starts=[NOW],
        version=3,
    )

    state.reset()

    assert state == QueueState(version=3)


def test_task_ids_are_unique_and_creation_ordered_within_one_millisecond() -> None:
    ids = [new_task_id(now=NOW) for _ in range(500)]

    assert len(set(ids)) == len(ids)
    assert all(task_id.startswith(f"task-{int(NOW.timestamp() * 1000):013d}-") for task_id in ids)
    later = new_task_id(now=NOW + timedelta(milliseconds=1))
    assert later > max(ids)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2026-03-01T12:00:00+00:00", NOW),
        ("2026-03-01T14:00:00+02:00", NOW),
        ("2026-03-01T12:00:00", NOW),
    ],
)
def test_stored_timestamps_parse_to_utc(raw: str, expected: datetime) -> None:
    parsed = parse_timestamp(raw)

    assert parsed == expected
    assert parsed.tzinfo is UTC
