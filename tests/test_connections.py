"""Tests for the asyncpg-backed driver."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Iterator

import asyncpg
import pytest

from bastionsql.config import ConnectionSpec
from bastionsql.connections import AsyncpgDriver, Querier, connect_kwargs, driver_factory
from bastionsql.errors import ConnectivityError, QueryError, UnsupportedDriverError
from bastionsql.models import ColumnType


def _spec(**overrides: Any) -> ConnectionSpec:
    values: dict[str, Any] = {
        "name": "local",
        "host": "localhost",
        "port": 5432,
        "database": "postgres",
        "username": "postgres",
        "driver": "postgres",
    }
    values.update(overrides)
    return ConnectionSpec(**values)


def _attribute(name: str, type_name: str, kind: str = "scalar") -> SimpleNamespace:
    return SimpleNamespace(name=name, type=SimpleNamespace(name=type_name, kind=kind))


class _FakeStatement:
    def __init__(self, attributes: tuple[SimpleNamespace, ...], rows: list[tuple[object, ...]]) -> None:
        self._attributes = attributes
        self._rows = rows

    def get_attributes(self) -> tuple[SimpleNamespace, ...]:
        return self._attributes

    async def fetch(self) -> list[tuple[object, ...]]:
        return self._rows


class _FakeConnection:
    def __init__(self) -> None:
        self.statements: dict[str, _FakeStatement] = {}
        self.executed: list[str] = []
        self.fetched: list[tuple[str, tuple[object, ...]]] = []
        self.ping_error: Exception | None = None

    async def fetchval(self, sql: str) -> int:
        if self.ping_error is not None:
            raise self.ping_error
        return 1

    async def fetch(self, sql: str, *args: object) -> list[tuple[object, ...]]:
        self.fetched.append((sql, args))
        return [("public",), ("sales",)]

    async def prepare(self, sql: str) -> _FakeStatement:
        if ";" in sql.strip().rstrip(";"):
            raise asyncpg.PostgresSyntaxError("cannot insert multiple commands into a prepared statement")
        if "missing" in sql:
            raise asyncpg.UndefinedTableError('relation "missing" does not exist')
        return self.statements[sql]

    async def execute(self, sql: str) -> str:
        self.executed.append(sql)
        return "CREATE TABLE"


class _Acquire:
    def __init__(self, conn: _FakeConnection) -> None:
        self._conn = conn

    async def __aenter__(self) -> _FakeConnection:
        return self._conn

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class _FakePool:
    def __init__(self, conn: _FakeConnection, **kwargs: Any) -> None:
        self.conn = conn
        self.kwargs = kwargs
        self.closed = False

    def acquire(self) -> _Acquire:
        return _Acquire(self.conn)

    def get_size(self) -> int:
        return 3

    def get_idle_size(self) -> int:
        return 1

    def get_max_size(self) -> int:
        return self.kwargs["max_size"]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_pool(monkeypatch: pytest.MonkeyPatch) -> list[_FakePool]:
    pools: list[_FakePool] = []

    async def _fake_create_pool(**kwargs: Any) -> _FakePool:
        pool = _FakePool(_FakeConnection(), **kwargs)
        pools.append(pool)
        return pool

    monkeypatch.setattr("bastionsql.connections.asyncpg.create_pool", _fake_create_pool)
    return pools


@pytest.fixture()
def driver() -> Iterator[AsyncpgDriver]:
    instance = AsyncpgDriver()
    try:
        yield instance
    finally:
        instance.shutdown()


def test_open_builds_lazy_pool_and_reports_stats(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    querier = driver.open(_spec(max_open_conns=4), "secret")

    assert isinstance(querier, Querier)
    kwargs = fake_pool[0].kwargs
    assert kwargs["min_size"] == 0
    assert kwargs["max_size"] == 4
    assert kwargs["password"] == "secret"
    stats = querier.stats()
    assert (stats.max_open, stats.open, stats.in_use, stats.idle) == (4, 3, 2, 1)

    querier.ping(1.0)
    querier.close()
    assert fake_pool[0].closed


def test_default_pool_size(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    driver.open(_spec(), None)

    assert fake_pool[0].kwargs["max_size"] == 10
    assert "password" not in fake_pool[0].kwargs


def test_query_returns_columns_and_rows(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    querier = driver.open(_spec(), None)
    conn = fake_pool[0].conn
    conn.statements["SELECT id, tags FROM items"] = _FakeStatement(
        (_attribute("id", "int4"), _attribute("tags", "_text", kind="array")),
        [(1, ["a", None])],
    )
    conn.statements["SELECT id FROM items WHERE false"] = _FakeStatement((_attribute("id", "int4"),), [])
    conn.statements["UPDATE items SET id = id"] = _FakeStatement((), [])

    result = querier.query("SELECT id, tags FROM items")
    empty = querier.query("SELECT id FROM items WHERE false")

    assert result is not None
    assert result.columns == (ColumnType("id", "int4"), ColumnType("tags", "ARRAY"))
    assert result.rows == ((1, ["a", None]),)
    assert empty is not None and empty.rows == ()
    assert querier.query("UPDATE items SET id = id") is None


def test_multi_statement_script_runs_without_result(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    querier = driver.open(_spec(), None)
    script = "CREATE TABLE t (id int); INSERT INTO t VALUES (1);"

    assert querier.query(script) is None
    assert fake_pool[0].conn.executed == [script]


def test_server_errors_become_query_errors(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    querier = driver.open(_spec(), None)

    with pytest.raises(QueryError, match="missing"):
        querier.query("SELECT * FROM missing")


def test_fetch_passes_parameters(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    querier = driver.open(_spec(), None)

    rows = querier.fetch("SELECT table_name FROM information_schema.tables WHERE table_schema = $1", "public")

    assert rows == [("public",), ("sales",)]
    assert fake_pool[0].conn.fetched[0][1] == ("public",)


def test_ping_failures_are_connectivity_errors(fake_pool: list[_FakePool], driver: AsyncpgDriver) -> None:
    querier = driver.open(_spec(), None)
    fake_pool[0].conn.ping_error = OSError("connection refused")

    with pytest.raises(ConnectivityError, match="connection refused"):
        querier.ping(None)

    fake_pool[0].conn.ping_error = asyncio.TimeoutError()
    with pytest.raises(ConnectivityError, match="timed out"):
        querier.ping(0.5)


def test_pool_creation_failure_is_wrapped(monkeypatch: pytest.MonkeyPatch, driver: AsyncpgDriver) -> None:
    async def _broken_create_pool(**kwargs: Any) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr("bastionsql.connections.asyncpg.create_pool", _broken_create_pool)

    with pytest.raises(ConnectivityError, match="boom"):
        driver.open(_spec(), None)


def test_connect_kwargs_maps_driver_options() -> None:
    spec = _spec(
        connect_timeout_sec=5,
        driver_opts={"sslmode": "disable", "application_name": "bastionsql"},
    )

    kwargs = connect_kwargs(spec, "pw")

    assert kwargs["ssl"] == "disable"
    assert kwargs["timeout"] == 5.0
    assert kwargs["server_settings"] == {"application_name": "bastionsql"}
    assert kwargs["user"] == "postgres"


def test_connect_kwargs_requires_tls_by_default() -> None:
    kwargs = connect_kwargs(_spec(), None)

    assert kwargs["ssl"] == "require"
    assert "timeout" not in kwargs
    assert "server_settings" not in kwargs


def test_unknown_driver_is_rejected() -> None:
    with pytest.raises(UnsupportedDriverError, match="mysql"):
        driver_factory("mysql")
