"""bastionsql: named database connections, SSH bastion tunnels and typed results."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import AppConfig, AuthMethod, ConnectionSpec, HostKeyMode, TunnelSpec, load_config
from .errors import (
    AuthenticationError,
    BastionSqlError,
    ConfigurationError,
    ConnectivityError,
    NoActiveConnectionError,
    QueryError,
    ScanError,
)
from .models import ColumnSchema, PoolStats, QueryResult, TableSchema
from .prompt import SecretPrompter, terminal_prompter
from .registry import ConnectionRegistry
from .sqltypes import TypedValue, ValueKind

__all__ = [
    "AppConfig",
    "AuthMethod",
    "AuthenticationError",
    "BastionSqlError",
    "ColumnSchema",
    "ConfigurationError",
    "ConnectionRegistry",
    "ConnectionSpec",
    "ConnectivityError",
    "HostKeyMode",
    "NoActiveConnectionError",
    "PoolStats",
    "QueryError",
    "QueryResult",
    "ScanError",
    "SecretPrompter",
    "TableSchema",
    "TunnelSpec",
    "TypedValue",
    "ValueKind",
    "__version__",
    "load_config",
    "terminal_prompter",
]
