"""In-memory stand-in for PostgreSQL behind psycopg2's ThreadedConnectionPool.

Cursors understand exactly the statements medbox_server issues. Writes are
staged per connection and applied on commit, so the commit/rollback
behaviour of the real pool wrapper is exercised unchanged.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import psycopg2
import pytest
from psycopg2 import pool

from medbox_server import handlers
from medbox_server.db import ConnectionPool
from medbox_server.server import create_app


class FakeStore:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.sensor_logs: list[dict[str, Any]] = []
        self.compartment_status: list[dict[str, Any]] = []
        self.medication_schedule: list[dict[str, Any]] = []
        self.pool: FakeThreadedPool | None = None
        self.connect_error: Exception | None = None
        self._ids = itertools.count(1)
        self._executed: dict[str, int] = {}
        self._failures: dict[str, tuple[int, Exception]] = {}
        self.dispatch: dict[str, Callable[[FakeCursor, tuple], None]] = {
            "SELECT 1": self._select_one,
            handlers.INSERT_READING: self._insert_reading,
            handlers.INSERT_COMPARTMENT: self._insert_compartment,
            handlers.SELECT_LATEST_READING: self._select_latest_reading,
            handlers.SELECT_LATEST_COMPARTMENTS: self._select_latest_compartments,
            handlers.SELECT_READING_HISTORY: self._select_reading_history,
            handlers.SELECT_OUTSTANDING_SCHEDULE: self._select_outstanding_schedule,
            handlers.COMPLETE_SCHEDULE: self._complete_schedule,
            handlers.SELECT_SCHEDULE_HISTORY: self._select_schedule_history,
        }

    # -- test helpers -------------------------------------------------------

    def tick(self, **delta: float) -> None:
        self.now += timedelta(**delta)

    def fail_on(self, sql: str, after: int = 0, error: Exception | None = None) -> None:
        """Make the execution of ``sql`` after ``after`` successful ones raise."""
        self._failures[sql] = (after, error or psycopg2.IntegrityError("constraint violated"))

    def add_reading(self, box_id: str, temperature: Any, humidity: Any, timestamp: datetime) -> int:
        row_id = next(self._ids)
        self.sensor_logs.append({
            "id": row_id,
            "box_id": box_id,
            "temperature": temperature,
            "humidity": humidity,
            "timestamp": timestamp,
        })
        return row_id

    def add_schedule(self, box_id: str, scheduled_time: datetime, is_taken: bool = False) -> int:
        row_id = next(self._ids)
        self.medication_schedule.append({
            "id": row_id,
            "box_id": box_id,
            "scheduled_time": scheduled_time,
            "is_taken": is_taken,
            "taken_time": scheduled_time if is_taken else None,
        })
        return row_id

    def schedule(self, row_id: int) -> dict[str, Any]:
        return next(r for r in self.medication_schedule if r["id"] == row_id)

    # -- statement execution ------------------------------------------------

    def execute(self, cursor: FakeCursor, sql: str, params: tuple) -> None:
        if sql not in self.dispatch:
            raise AssertionError(f"unexpected statement: {sql!r}")

        count = self._executed.get(sql, 0)
        self._executed[sql] = count + 1
        if sql in self._failures and count == self._failures[sql][0]:
            raise self._failures[sql][1]

        self.dispatch[sql](cursor, params)

    @staticmethod
    def _newest_first(rows: list[dict[str, Any]], key: str = "timestamp") -> list[dict[str, Any]]:
        return sorted(rows, key=lambda r: (r[key], r["id"]), reverse=True)

    def _select_one(self, cursor: FakeCursor, params: tuple) -> None:
        cursor.set_rows([{"?column?": 1}])

    def _insert_reading(self, cursor: FakeCursor, params: tuple) -> None:
        box_id, temperature, humidity = params
        for value in (temperature, humidity):
            if isinstance(value, str):
                raise psycopg2.DataError(f'invalid input syntax for type numeric: "{value}"')
        row = {
            "id": next(self._ids),
            "box_id": box_id,
            "temperature": temperature,
            "humidity": humidity,
            "timestamp": self.now,
        }
        cursor.connection.stage(lambda: self.sensor_logs.append(row))
        cursor.rowcount = 1

    def _insert_compartment(self, cursor: FakeCursor, params: tuple) -> None:
        box_id, compartment_id, is_open = params
        row = {
            "id": next(self._ids),
            "box_id": box_id,
            "compartment_id": compartment_id,
            "is_open": is_open,
            "timestamp": self.now,
        }
        cursor.connection.stage(lambda: self.compartment_status.append(row))
        cursor.rowcount = 1

    def _select_latest_reading(self, cursor: FakeCursor, params: tuple) -> None:
        (box_id,) = params
        rows = [r for r in self.sensor_logs if r["box_id"] == box_id]
        cursor.set_rows(self._newest_first(rows)[:1])

    def _select_latest_compartments(self, cursor: FakeCursor, params: tuple) -> None:
        box_id, limit = params
        rows = [r for r in self.compartment_status if r["box_id"] == box_id]
        cursor.set_rows(self._newest_first(rows)[:limit])

    def _select_reading_history(self, cursor: FakeCursor, params: tuple) -> None:
        box_id, hours = params
        cutoff = self.now - timedelta(hours=hours)
        rows = [r for r in self.sensor_logs if r["box_id"] == box_id and r["timestamp"] > cutoff]
        cursor.set_rows(self._newest_first(rows))

    def _select_outstanding_schedule(self, cursor: FakeCursor, params: tuple) -> None:
        (box_id,) = params
        rows = [r for r in self.medication_schedule if r["box_id"] == box_id and not r["is_taken"]]
        cursor.set_rows(sorted(rows, key=lambda r: (r["scheduled_time"], r["id"])))

    def _complete_schedule(self, cursor: FakeCursor, params: tuple) -> None:
        (schedule_id,) = params
        matched = [r for r in self.medication_schedule if str(r["id"]) == str(schedule_id)]
        taken_time = self.now

        def apply() -> None:
            for row in matched:
                row["is_taken"] = True
                row["taken_time"] = taken_time

        cursor.connection.stage(apply)
        cursor.rowcount = len(matched)

    def _select_schedule_history(self, cursor: FakeCursor, params: tuple) -> None:
        (box_id,) = params
        rows = [r for r in self.medication_schedule if r["box_id"] == box_id]
        cursor.set_rows(self._newest_first(rows, key="scheduled_time"))


class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self.rowcount = -1
        self._rows: list[dict[str, Any]] = []

    def set_rows(self, rows: list[dict[str, Any]]) -> None:
        self._rows = [dict(r) for r in rows]
        self.rowcount = len(rows)

    def execute(self, sql: str, params: tuple = ()) -> None:
        self.connection.store.execute(self, sql, tuple(params))

    def fetchone(self) -> dict[str, Any] | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[dict[str, Any]]:
        return list(self._rows)

    def close(self) -> None:
        pass


class FakeConnection:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.closed = 0
        self.commits = 0
        self.rollbacks = 0
        self.rollback_error: Exception | None = None
        self._pending: list[Callable[[], None]] = []

    def stage(self, op: Callable[[], None]) -> None:
        self._pending.append(op)

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        for op in self._pending:
            op()
        self._pending.clear()
        self.commits += 1

    def rollback(self) -> None:
        if self.rollback_error is not None:
            raise self.rollback_error
        self._pending.clear()
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = 1


class FakeThreadedPool:
    def __init__(self, store: FakeStore, minconn: int, maxconn: int, dsn: str, **kwargs: Any) -> None:
        if store.connect_error is not None:
            raise store.connect_error
        self.store = store
        self.maxconn = maxconn
        self.dsn = dsn
        self.kwargs = kwargs
        self.getconn_calls = 0
        self.checked_out: list[FakeConnection] = []
        self.released: list[FakeConnection] = []
        self.discarded: list[FakeConnection] = []
        self.closed = False
        store.pool = self

    def getconn(self) -> FakeConnection:
        self.getconn_calls += 1
        if self.store.connect_error is not None:
            raise self.store.connect_error
        if len(self.checked_out) >= self.maxconn:
            raise pool.PoolError("connection pool exhausted")
        conn = FakeConnection(self.store)
        self.checked_out.append(conn)
        return conn

    def putconn(self, conn: FakeConnection, close: bool = False) -> None:
        self.checked_out.remove(conn)
        self.released.append(conn)
        if close:
            conn.close()
            self.discarded.append(conn)

    def closeall(self) -> None:
        self.closed = True


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_pool_factory(store: FakeStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        pool,
        "ThreadedConnectionPool",
        lambda *args, **kwargs: FakeThreadedPool(store, *args, **kwargs),
    )


@pytest.fixture
def db_pool(fake_pool_factory: None) -> ConnectionPool:
    return ConnectionPool("postgresql://medbox@test/medbox", minconn=1, maxconn=2, acquire_timeout=0.2)


@pytest.fixture
def client(db_pool: ConnectionPool):
    app = create_app(db_pool, ingest_mode="best-effort")
    return app.test_client()
