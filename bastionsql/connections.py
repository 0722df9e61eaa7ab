"""Database drivers: blocking handles over asyncpg pools."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Coroutine, Mapping, Protocol, TypeVar, runtime_checkable

import asyncpg

from .config import ConnectionSpec
from .errors import BastionSqlError, ConnectivityError, QueryError, UnsupportedDriverError
from .models import ColumnType, PoolStats, RawResult

LOG = logging.getLogger(__name__)

DEFAULT_MAX_OPEN_CONNS = 10

IDLE_LIFETIME_SEC = 3600.0

CLOSE_TIMEOUT_SEC = 10.0

DEFAULT_SSLMODE = "require"

T = TypeVar("T")


@runtime_checkable
class Querier(Protocol):
    """A live database handle that can run SQL."""

    def ping(self, timeout: float | None = None) -> None:
        """Round-trip to the server; raise ConnectivityError on failure."""

    def fetch(self, sql: str, *args: object) -> list[tuple[object, ...]]:
        """Run a parametrized statement and return its rows."""

    def query(self, sql: str) -> RawResult | None:
        """Run caller-supplied SQL; None when it produces no columns."""

    def stats(self) -> PoolStats:
        """Pool counters."""

    def close(self) -> None:
        """Release every pooled connection."""


@runtime_checkable
class Driver(Protocol):
    """Opens queriers for one driver identifier."""

    def open(self, spec: ConnectionSpec, password: str | None) -> Querier:
        """Open a handle for ``spec``; no network round trip is required."""

    def shutdown(self) -> None:
        """Release driver-wide resources."""


class AsyncpgDriver:
    """Postgres driver running asyncpg pools on a private event loop thread."""

    name = "postgres"

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="bastionsql-asyncpg-driver",
            daemon=True,
        )
        self._loop_thread.start()

    def open(self, spec: ConnectionSpec, password: str | None) -> AsyncpgQuerier:
        try:
            pool = self.run(self._create_pool(spec, password))
        except BastionSqlError:
            raise
        except Exception as exc:
            raise ConnectivityError(f"failed to open database connection '{spec.name}': {exc}") from exc
        LOG.info("Opened connection pool", extra={"connection": spec.name})
        return AsyncpgQuerier(self, pool, name=spec.name)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` on the driver loop and block for its result."""

        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def shutdown(self) -> None:
        """Stop the background event loop."""

        if not self._loop.is_running():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=1)

    def __del__(self) -> None:  # pragma: no cover - best effort cleanup
        try:
            self.shutdown()
        except Exception:
            pass

    async def _create_pool(self, spec: ConnectionSpec, password: str | None) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            min_size=0,
            max_size=spec.max_open_conns or DEFAULT_MAX_OPEN_CONNS,
            max_inactive_connection_lifetime=IDLE_LIFETIME_SEC,
            **connect_kwargs(spec, password),
        )


class AsyncpgQuerier:
    """Blocking handle over one asyncpg pool."""

    def __init__(self, driver: AsyncpgDriver, pool: asyncpg.Pool, *, name: str) -> None:
        self._driver = driver
        self._pool = pool
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def ping(self, timeout: float | None = None) -> None:
        try:
            self._driver.run(asyncio.wait_for(self._ping(), timeout))
        except (TimeoutError, asyncio.TimeoutError) as exc:
            raise ConnectivityError(f"failed to connect to database '{self._name}': timed out") from exc
        except Exception as exc:
            raise ConnectivityError(f"failed to connect to database '{self._name}': {exc}") from exc

    def fetch(self, sql: str, *args: object) -> list[tuple[object, ...]]:
        return self._call(self._fetch(sql, *args))

    def query(self, sql: str) -> RawResult | None:
        return self._call(self._query(sql))

    def stats(self) -> PoolStats:
        open_count = self._pool.get_size()
        idle = self._pool.get_idle_size()
        return PoolStats(
            max_open=self._pool.get_max_size(),
            open=open_count,
            in_use=max(open_count - idle, 0),
            idle=idle,
        )

    def close(self) -> None:
        try:
            self._driver.run(asyncio.wait_for(self._pool.close(), CLOSE_TIMEOUT_SEC))
        except Exception as exc:
            raise ConnectivityError(f"failed to close connection '{self._name}': {exc}") from exc
        LOG.info("Closed connection pool", extra={"connection": self._name})

    def _call(self, coro: Coroutine[Any, Any, T]) -> T:
        try:
            return self._driver.run(coro)
        except BastionSqlError:
            raise
        except asyncpg.PostgresError as exc:
            raise QueryError(f"{self._name}: {exc}") from exc
        except (OSError, asyncpg.InterfaceError) as exc:
            raise ConnectivityError(f"lost connection to database '{self._name}': {exc}") from exc

    async def _ping(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    async def _fetch(self, sql: str, *args: object) -> list[tuple[object, ...]]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(sql, *args)
        return [tuple(record) for record in records]

    async def _query(self, sql: str) -> RawResult | None:
        async with self._pool.acquire() as conn:
            try:
                statement = await conn.prepare(sql)
            except asyncpg.PostgresSyntaxError as exc:
                if "multiple commands" not in str(exc):
                    raise
                # scripts cannot be prepared; run them without a result set
                await conn.execute(sql)
                return None
            attributes = statement.get_attributes()
            records = await statement.fetch()
        if not attributes:
            return None
        columns = tuple(
            ColumnType(name=attribute.name, type_name=_type_name(attribute.type))
            for attribute in attributes
        )
        return RawResult(columns=columns, rows=tuple(tuple(record) for record in records))


def connect_kwargs(spec: ConnectionSpec, password: str | None) -> dict[str, object]:
    """Translate a connection spec into asyncpg connect arguments."""

    options = dict(spec.driver_opts)
    kwargs: dict[str, object] = {
        "host": spec.host,
        "port": spec.port,
        "user": spec.username,
        "database": spec.database,
        "ssl": options.pop("sslmode", DEFAULT_SSLMODE),
    }
    if password:
        kwargs["password"] = password
    if spec.connect_timeout is not None:
        kwargs["timeout"] = spec.connect_timeout
    if options:
        kwargs["server_settings"] = options
    return kwargs


def _type_name(pg_type: Any) -> str:
    if getattr(pg_type, "kind", None) == "array":
        return "ARRAY"
    return str(pg_type.name)


DRIVERS: Mapping[str, Callable[[], Driver]] = {
    "postgres": AsyncpgDriver,
}


def driver_factory(identifier: str, drivers: Mapping[str, Callable[[], Driver]] = DRIVERS) -> Callable[[], Driver]:
    try:
        return drivers[identifier]
    except KeyError:
        raise UnsupportedDriverError(f"unsupported database driver '{identifier}'") from None


__all__ = [
    "AsyncpgDriver",
    "AsyncpgQuerier",
    "DEFAULT_MAX_OPEN_CONNS",
    "DRIVERS",
    "Driver",
    "Querier",
    "connect_kwargs",
    "driver_factory",
]
