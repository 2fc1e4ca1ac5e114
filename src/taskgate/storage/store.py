"""Named-blob state stores with last-writer-wins semantics.

Every store exposes ``get``/``set`` on a single key. Stores that can detect
concurrent writers additionally implement :class:`VersionedStateStore`, which
lets the reconciliation layer turn lost updates into explicit conflicts.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from sqlalchemy import event
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import NullPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from taskgate.storage.sqlmodel_models import StateBlob
from taskgate.timeutil import utc_now

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Base state store failure."""


class StoreUnavailableError(StoreError):
    """Backend could not serve the read or write (transient outage)."""


class StoreConflictError(StoreError):
    """A versioned write lost the race against another writer."""

    def __init__(self, key: str, *, expected_version: int, actual_version: int | None) -> None:
        super().__init__(
            f"Version conflict on {key!r}: expected={expected_version} actual={actual_version}",
        )
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version


class StateStore(Protocol):
    """Opaque get/set of named serialized blobs."""

    def get(self, key: str) -> str | None:
        """Return the stored blob or ``None`` when the key is absent."""

    def set(self, key: str, value: str) -> None:
        """Overwrite the blob; raise :class:`StoreUnavailableError` on failure."""


@runtime_checkable
class VersionedStateStore(Protocol):
    """Optional conditional-write capability."""

    def get_versioned(self, key: str) -> tuple[str | None, int]:
        """Return the blob and its store version (``0`` when absent)."""

    def compare_and_set(
        self,
        key: str,
        value: str,
        *,
        expected_version: int,
        new_version: int,
    ) -> None:
        """Write only if the stored version still equals ``expected_version``."""


class MemoryStateStore:
    """Process-local store; single-key reads and writes are atomic, nothing more."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value


class VersionedMemoryStateStore(MemoryStateStore):
    """Process-local store with compare-and-set on a per-key version counter."""

    def __init__(self) -> None:
        super().__init__()
        self._versions: dict[str, int] = {}

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value
            self._versions[key] = self._versions.get(key, 0) + 1

    def get_versioned(self, key: str) -> tuple[str | None, int]:
        with self._lock:
            return self._values.get(key), self._versions.get(key, 0)

    def compare_and_set(
        self,
        key: str,
        value: str,
        *,
        expected_version: int,
        new_version: int,
    ) -> None:
        with self._lock:
            actual = self._versions.get(key, 0)
            if actual != expected_version:
                raise StoreConflictError(
                    key,
                    expected_version=expected_version,
                    actual_version=actual,
                )
            self._values[key] = value
            self._versions[key] = new_version


class SQLiteStateStore:
    """Blob persistence backed by SQLModel + SQLite.

    ``set`` is an unconditional upsert. ``compare_and_set`` is a
    rowcount-checked ``UPDATE ... WHERE version = expected`` so that two
    writers that read the same version cannot both win.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = _sqlite_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the blob table if missing."""

        try:
            SQLModel.metadata.create_all(self.engine, tables=[StateBlob.__table__])
        except OperationalError as error:
            raise StoreUnavailableError(f"Schema init failed: {error}") from error

    def get(self, key: str) -> str | None:
        value, _ = self.get_versioned(key)
        return value

    def get_versioned(self, key: str) -> tuple[str | None, int]:
        try:
            with Session(self.engine) as session:
                row = session.exec(select(StateBlob).where(StateBlob.key == key)).one_or_none()
        except OperationalError as error:
            raise StoreUnavailableError(f"Read of {key!r} failed: {error}") from error
        if row is None:
            return None, 0
        return row.value, row.version

    def set(self, key: str, value: str) -> None:
        now = utc_now()
        try:
            with Session(self.engine) as session:
                row = session.exec(select(StateBlob).where(StateBlob.key == key)).one_or_none()
                if row is None:
                    session.add(StateBlob(key=key, value=value, version=1, updated_at=now))
                else:
                    row.value = value
                    row.version += 1
                    row.updated_at = now
                    session.add(row)
                session.commit()
        except IntegrityError as error:
            raise StoreUnavailableError(f"Write of {key!r} raced an insert: {error}") from error
        except OperationalError as error:
            raise StoreUnavailableError(f"Write of {key!r} failed: {error}") from error

    def compare_and_set(
        self,
        key: str,
        value: str,
        *,
        expected_version: int,
        new_version: int,
    ) -> None:
        now = utc_now()
        try:
            with Session(self.engine) as session:
                if expected_version == 0:
                    session.add(StateBlob(key=key, value=value, version=new_version, updated_at=now))
                    try:
                        session.commit()
                    except IntegrityError as error:
                        session.rollback()
                        raise StoreConflictError(
                            key,
                            expected_version=expected_version,
                            actual_version=None,
                        ) from error
                    return

                result = session.exec(
                    sa_update(StateBlob)
                    .where(
                        col(StateBlob.key) == key,
                        col(StateBlob.version) == expected_version,
                    )
                    .values(value=value, version=new_version, updated_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    current = session.exec(
                        select(StateBlob).where(StateBlob.key == key),
                    ).one_or_none()
                    raise StoreConflictError(
                        key,
                        expected_version=expected_version,
                        actual_version=None if current is None else current.version,
                    )
                session.commit()
        except OperationalError as error:
            raise StoreUnavailableError(f"Conditional write of {key!r} failed: {error}") from error
        logger.debug("Stored %s at version %d", key, new_version)


def _sqlite_engine(db_path: Path, *, busy_timeout_ms: int) -> Engine:
    """SQLite engine with one connection per session, WAL journal and busy timeout."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": max(1.0, busy_timeout_ms / 1000)},
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
            cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        finally:
            cursor.close()

    return engine
