from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskgate.storage.store import (
    MemoryStateStore,
    SQLiteStateStore,
    StoreConflictError,
    VersionedMemoryStateStore,
    VersionedStateStore,
)

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("State Store"),
]


def test_memory_store_is_last_writer_wins_without_versioning() -> None:
    store = MemoryStateStore()

    assert store.get("state") is None
    store.set("state", "a")
    store.set("state", "b")

    assert store.get("state") == "b"
    assert not isinstance(store, VersionedStateStore)


def test_versioned_memory_store_rejects_stale_compare_and_set() -> None:
    store = VersionedMemoryStateStore()
    assert isinstance(store, VersionedStateStore)

    store.compare_and_set("state", "first", expected_version=0, new_version=1)
    with pytest.raises(StoreConflictError) as info:
        store.compare_and_set("state", "stale", expected_version=0, new_version=1)

    assert info.value.actual_version == 1
    assert store.get_versioned("state") == ("first", 1)


def test_sqlite_store_round_trip_and_version_bumps(tmp_path: Path) -> None:
    store = SQLiteStateStore(tmp_path / "state.db")
    store.init_schema()
    try:
        assert store.get_versioned("state") == (None, 0)
        store.set("state", "one")
        store.set("state", "two")

        assert store.get("state") == "two"
        assert store.get_versioned("state") == ("two", 2)
        assert store.get("other") is None
    finally:
        store.close()


def test_sqlite_store_connections_use_wal_journal(tmp_path: Path) -> None:
    store = SQLiteStateStore(tmp_path / "state.db", busy_timeout_ms=2_500)
    try:
        with store.engine.connect() as connection:
            journal = connection.exec_driver_sql("PRAGMA journal_mode").scalar()
            busy_timeout = connection.exec_driver_sql("PRAGMA busy_timeout").scalar()
    finally:
        store.close()

    assert journal == "wal"
    assert busy_timeout == 2500


def test_sqlite_compare_and_set_detects_lost_race_across_connections(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    first = SQLiteStateStore(db_path)
    second = SQLiteStateStore(db_path)
    first.init_schema()
    second.init_schema()
    try:
        first.compare_and_set("state", "v1", expected_version=0, new_version=1)
        with pytest.raises(StoreConflictError):
            second.compare_and_set("state", "racing insert", expected_version=0, new_version=1)

        _, version_seen_by_both = second.get_versioned("state")
        first.compare_and_set(
            "state",
            "v2",
            expected_version=version_seen_by_both,
            new_version=version_seen_by_both + 1,
        )
        with pytest.raises(StoreConflictError) as info:
            second.compare_and_set(
                "state",
                "lost update",
                expected_version=version_seen_by_both,
                new_version=version_seen_by_both + 1,
            )

        assert info.value.actual_version == 2
        assert second.get_versioned("state") == ("v2", 2)
    finally:
        first.close()
        second.close()
