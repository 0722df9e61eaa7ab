"""Exception hierarchy shared by the registry, tunnels and drivers."""

from __future__ import annotations


class BastionSqlError(RuntimeError):
    """Base class for every error raised by bastionsql."""


class ConfigurationError(BastionSqlError):
    """Raised when configuration is missing, malformed or references unknown names."""


class ConnectionNotFoundError(ConfigurationError):
    """Raised when a connection name is not configured."""


class TunnelNotFoundError(ConfigurationError):
    """Raised when a connection references a tunnel that is not configured."""


class TableNameError(ConfigurationError, ValueError):
    """Raised when a qualified table name cannot be split into schema and table."""


class UnsupportedDriverError(ConfigurationError):
    """Raised when a connection asks for a driver identifier we do not ship."""


class AuthenticationError(BastionSqlError):
    """Raised when credentials are rejected or a private key cannot be decrypted."""


class HostKeyError(AuthenticationError):
    """Raised when the bastion host identity cannot be verified."""


class ConnectivityError(BastionSqlError):
    """Raised when a tunnel cannot be dialed or a database cannot be reached."""


class QueryError(BastionSqlError):
    """Raised when the database rejects a statement."""


class NoActiveConnectionError(BastionSqlError):
    """Raised when an operation needs a selected connection and none is active."""


class ScanError(BastionSqlError):
    """Raised when a result value cannot be decoded into a known representation."""


__all__ = [
    "AuthenticationError",
    "BastionSqlError",
    "ConfigurationError",
    "ConnectionNotFoundError",
    "ConnectivityError",
    "HostKeyError",
    "NoActiveConnectionError",
    "QueryError",
    "ScanError",
    "TableNameError",
    "TunnelNotFoundError",
    "UnsupportedDriverError",
]
