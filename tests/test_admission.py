from __future__ import annotations

import threading

import allure
import pytest

from support import BrokenWake, RecordingWake, make_service, read_state
from taskgate.dispatch.errors import QueueUnavailableError
from taskgate.dispatch.models import TaskStatus
from taskgate.storage.store import MemoryStateStore, StoreUnavailableError

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Admission"),
]


class DownStore(MemoryStateStore):
    def set(self, key: str, value: str) -> None:
        raise StoreUnavailableError("blob store timed out")


def test_admitted_task_is_visible_in_status_with_payload(clock) -> None:
    service = make_service(clock=clock)

    result = service.admit({"url": "https://example.com/a"})
    view = service.status()

    assert result.position == 1
    assert [task.task_id for task in view.pending] == [result.task_id]
    assert view.pending[0].payload == {"url": "https://example.com/a"}
    assert view.pending[0].status is TaskStatus.PENDING
    assert view.pending[0].created_at == clock()
    assert view.counts["pending"] == 1
    assert view.counts["total"] == 1


def test_admission_appends_at_tail_and_reports_position() -> None:
    service = make_service()

    positions = [service.admit({"n": n}).position for n in range(3)]
    state = read_state(service)

    assert positions == [1, 2, 3]
    assert [state.tasks[task_id].payload for task_id in state.pending] == [
        {"n": 0},
        {"n": 1},
        {"n": 2},
    ]


def test_admission_is_not_gated_by_limits() -> None:
    service = make_service(max_concurrency=1, rate_limit=1)

    for _ in range(5):
        service.admit(None)

    assert len(read_state(service).pending) == 5


def test_concurrent_identical_admissions_get_distinct_entries() -> None:
    service = make_service()
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def _admit() -> None:
        barrier.wait()
        result = service.admit({"same": True})
        with lock:
            results.append(result)

    threads = [threading.Thread(target=_admit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    state = read_state(service)
    assert len(results) == 2
    assert results[0].task_id != results[1].task_id
    assert sorted(state.pending) == sorted(result.task_id for result in results)
    assert sorted(result.position for result in results) == [1, 2]


def test_admission_requests_a_dispatch_turn() -> None:
    wake = RecordingWake()
    service = make_service(wake=wake)

    result = service.admit({})

    assert result.woke
    assert wake.sent == [(f"admitted:{result.task_id}", 0.0)]


def test_failed_wake_does_not_fail_admission() -> None:
    service = make_service(wake=BrokenWake())

    result = service.admit({"n": 1})

    assert not result.woke
    assert read_state(service).pending == [result.task_id]


def test_unavailable_store_rejects_admission() -> None:
    wake = RecordingWake()
    store = DownStore()
    service = make_service(store=store, wake=wake, max_attempts=3)

    with pytest.raises(QueueUnavailableError):
        service.admit({"n": 1})

    assert store.get(service.settings.state_key) is None
    assert wake.sent == []
