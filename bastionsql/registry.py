"""Connection registry: named connections, shared tunnels and the current handle.

Locking discipline: one re-entrant lock guards the connection cache, the
tunnel cache and the current pointer. Every public method holds it for its
whole duration, so calls from several threads are serialized; a long-running
query therefore blocks a concurrent switch until it completes.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping

from .config import PASSWORD_ENV_VAR, AppConfig, ConnectionSpec
from .connections import DRIVERS, Driver, Querier, driver_factory
from .errors import (
    AuthenticationError,
    BastionSqlError,
    ConnectionNotFoundError,
    ConnectivityError,
    NoActiveConnectionError,
    TunnelNotFoundError,
)
from .metadata import MetadataProvider, PostgresMetadataProvider
from .models import PoolStats, QueryResult, TableSchema
from .prompt import SecretPrompter, terminal_prompter
from .sqltypes import ResultTypeResolver
from .tunnel import TunnelManager

LOG = logging.getLogger(__name__)

MetadataFactory = Callable[[Querier], MetadataProvider]


@dataclass(frozen=True, slots=True)
class ActiveConnection:
    """A live handle cached under its connection name."""

    name: str
    spec: ConnectionSpec
    querier: Querier
    metadata: MetadataProvider
    tunnel: str | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


class ConnectionRegistry:
    """Owns connection/tunnel specs, lazily opens handles and routes calls to the current one."""

    def __init__(
        self,
        config: AppConfig,
        *,
        tunnels: TunnelManager | None = None,
        drivers: Mapping[str, Callable[[], Driver]] | None = None,
        resolver: ResultTypeResolver | None = None,
        metadata_factory: MetadataFactory = PostgresMetadataProvider,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config
        self._tunnels = tunnels or TunnelManager()
        self._driver_factories = drivers if drivers is not None else DRIVERS
        self._drivers: dict[str, Driver] = {}
        self._resolver = resolver or ResultTypeResolver()
        self._metadata_factory = metadata_factory
        self._environ = environ if environ is not None else os.environ
        self._active: dict[str, ActiveConnection] = {}
        self._current: ActiveConnection | None = None
        self._lock = threading.RLock()
        self.close_errors: list[Exception] = []

    @property
    def current_name(self) -> str | None:
        """Name of the current connection, if one has been selected."""

        with self._lock:
            return self._current.name if self._current else None

    @property
    def tunnels(self) -> TunnelManager:
        return self._tunnels

    def list_connections(self) -> tuple[list[str], list[bool]]:
        """Configured names (sorted) and whether each has a cached live handle."""

        with self._lock:
            names = sorted(self._config.connections)
            return names, [name in self._active for name in names]

    def switch_connection(self, name: str, prompter: SecretPrompter = terminal_prompter) -> None:
        """Make ``name`` current, opening (and tunnelling) it on first use.

        Nothing is cached and the current pointer is untouched unless the new
        connection answers a ping.
        """

        with self._lock:
            spec = self._config.connection(name)
            if spec is None:
                raise ConnectionNotFoundError(f"'{name}' is not a configured connection")

            cached = self._active.get(name)
            if cached is not None:
                LOG.debug("Switching to cached connection", extra={"connection": name})
                self._current = cached
                return

            active = self._open(name, spec, prompter)
            self._active[name] = active
            self._current = active
            LOG.info("Switched connection", extra={"connection": name})

    def list_tables(self, schema: str = "") -> list[str]:
        """Tables in ``schema``, or in the default schema when it is empty."""

        with self._lock:
            metadata = self._require_current().metadata
            if schema:
                return metadata.list_tables_in_schema(schema)
            return metadata.list_tables()

    def list_all_tables(self) -> list[str]:
        with self._lock:
            return self._require_current().metadata.list_all_tables()

    def list_schemas(self) -> list[str]:
        with self._lock:
            return self._require_current().metadata.list_schemas()

    def describe_table(self, name: str) -> TableSchema:
        with self._lock:
            return self._require_current().metadata.describe_table(name)

    def query(self, sql: str) -> QueryResult | None:
        """Run ``sql`` verbatim and decode the whole result set.

        Returns None when the statement produced no columns (DDL/DML); a
        query returning zero rows yields a QueryResult with no rows.
        """

        with self._lock:
            current = self._require_current()
            return self._resolver.resolve(current.querier.query(sql))

    def stats(self) -> PoolStats:
        with self._lock:
            return self._require_current().querier.stats()

    def close(self) -> list[Exception]:
        """Best-effort teardown of every connection, tunnel and driver.

        Failures are logged and returned (and kept in ``close_errors``);
        teardown always runs to completion.
        """

        with self._lock:
            errors: list[Exception] = []
            for name, active in tuple(self._active.items()):
                try:
                    active.querier.close()
                except Exception as exc:
                    LOG.warning("Failed to close connection", extra={"connection": name}, exc_info=exc)
                    errors.append(exc)
            self._active.clear()
            self._current = None
            errors.extend(self._tunnels.close_all())
            for identifier, driver in tuple(self._drivers.items()):
                try:
                    driver.shutdown()
                except Exception as exc:
                    LOG.warning("Failed to shut down driver", extra={"driver": identifier}, exc_info=exc)
                    errors.append(exc)
            self._drivers.clear()
            self.close_errors.extend(errors)
            return errors

    def __enter__(self) -> ConnectionRegistry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _open(self, name: str, spec: ConnectionSpec, prompter: SecretPrompter) -> ActiveConnection:
        driver = self._driver(spec.driver)

        effective = spec
        new_tunnel: str | None = None
        if spec.tunnel:
            tunnel_spec = self._config.tunnel(spec.tunnel)
            if tunnel_spec is None:
                raise TunnelNotFoundError(f"tunnel '{spec.tunnel}' for connection '{name}' is not configured")
            if spec.tunnel not in self._tunnels or not self._tunnel_alive(spec.tunnel):
                new_tunnel = spec.tunnel
            try:
                tunnel = self._tunnels.open(tunnel_spec, prompter, spec.host, spec.port)
            except BastionSqlError:
                raise
            except Exception as exc:
                raise ConnectivityError(f"could not establish tunnel '{spec.tunnel}': {exc}") from exc
            local_host, local_port = tunnel.local_address
            effective = spec.model_copy(update={"host": local_host, "port": local_port})

        try:
            password = self._resolve_password(spec, prompter)
            querier = driver.open(effective, password)
            try:
                querier.ping(spec.connect_timeout)
            except Exception:
                self._close_quietly(name, querier)
                raise
        except Exception:
            if new_tunnel is not None:
                self._tunnels.close(new_tunnel)
            raise

        return ActiveConnection(
            name=name,
            spec=spec,
            querier=querier,
            metadata=self._metadata_factory(querier),
            tunnel=spec.tunnel,
        )

    def _driver(self, identifier: str) -> Driver:
        driver = self._drivers.get(identifier)
        if driver is None:
            driver = driver_factory(identifier, self._driver_factories)()
            self._drivers[identifier] = driver
        return driver

    def _tunnel_alive(self, name: str) -> bool:
        tunnel = self._tunnels.get(name)
        return tunnel is not None and tunnel.alive

    def _resolve_password(self, spec: ConnectionSpec, prompter: SecretPrompter) -> str:
        if spec.password:
            return spec.password
        from_env = self._environ.get(PASSWORD_ENV_VAR)
        if from_env:
            return from_env
        try:
            answers = prompter("", "", ["database password: "], [False])
        except Exception as exc:
            raise AuthenticationError(f"could not read password for '{spec.name}': {exc}") from exc
        if not answers:
            raise AuthenticationError(f"no password provided for '{spec.name}'")
        return answers[0]

    def _require_current(self) -> ActiveConnection:
        if self._current is None:
            raise NoActiveConnectionError("an active connection is required")
        return self._current

    @staticmethod
    def _close_quietly(name: str, querier: Querier) -> None:
        try:
            querier.close()
        except Exception:
            LOG.debug("Ignoring close failure after failed ping", extra={"connection": name}, exc_info=True)


__all__ = ["ActiveConnection", "ConnectionRegistry"]
