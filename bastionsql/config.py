"""Connection and tunnel configuration loading helpers."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError

CONFIG_FILE = Path.home() / ".config" / "bastionsql" / "config.toml"

PASSWORD_ENV_VAR = "PGPASSWORD"


class AuthMethod(str, Enum):
    """Credential strategies supported for bastion authentication."""

    PASSWORD = "password"
    PUBLIC_KEY = "public_key"
    AGENT = "agent"


class HostKeyMode(str, Enum):
    """How the bastion's host identity is verified."""

    KNOWN_HOSTS = "known_hosts"
    PINNED_KEY = "pinned_key"
    INSECURE = "insecure"


class ConnectionSpec(BaseModel):
    """A named database connection as written in config.toml."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    host: str = Field(min_length=1)
    port: int = Field(gt=0, le=65535)
    database: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str | None = Field(default=None, repr=False)
    driver: str = Field(min_length=1)
    driver_opts: dict[str, str] = Field(default_factory=dict)
    tunnel: str | None = None
    connect_timeout_sec: int = Field(default=0, ge=0)
    max_open_conns: int = Field(default=0, ge=0)

    @property
    def connect_timeout(self) -> float | None:
        """Connect timeout in seconds, or None for an unbounded wait."""

        return float(self.connect_timeout_sec) if self.connect_timeout_sec else None


class TunnelSpec(BaseModel):
    """A named SSH bastion as written in config.toml."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    host: str = Field(min_length=1)
    port: int = Field(default=22, gt=0, le=65535)
    user: str = Field(min_length=1)
    auth_method: AuthMethod
    password: str | None = Field(default=None, repr=False)
    private_key_file: str | None = None
    private_key_passphrase: str | None = Field(default=None, repr=False)
    connect_timeout_sec: int = Field(default=0, ge=0)
    disable_verify_known_host: bool = False
    host_public_key_file: str | None = None

    @property
    def host_key_mode(self) -> HostKeyMode:
        """A pinned key wins over the insecure bypass, which wins over known_hosts."""

        if self.host_public_key_file:
            return HostKeyMode.PINNED_KEY
        if self.disable_verify_known_host:
            return HostKeyMode.INSECURE
        return HostKeyMode.KNOWN_HOSTS

    @property
    def connect_timeout(self) -> float | None:
        return float(self.connect_timeout_sec) if self.connect_timeout_sec else None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @model_validator(mode="after")
    def _check_key_file(self) -> TunnelSpec:
        if self.auth_method is AuthMethod.PUBLIC_KEY and not self.private_key_file:
            raise ValueError("private_key_file: required when auth_method is 'public_key'")
        return self


class AppConfig(BaseModel):
    """Shape of the configuration file: named connections and named tunnels."""

    connections: dict[str, ConnectionSpec] = Field(default_factory=dict)
    tunnels: dict[str, TunnelSpec] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fill_names(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for section in ("connections", "tunnels"):
            entries = data.get(section)
            if isinstance(entries, dict):
                data[section] = {key: _named(key, value) for key, value in entries.items()}
        return data

    @model_validator(mode="after")
    def _check_tunnel_references(self) -> AppConfig:
        missing = [
            f"{name}.tunnel: tunnel '{spec.tunnel}' does not exist"
            for name, spec in sorted(self.connections.items())
            if spec.tunnel and spec.tunnel not in self.tunnels
        ]
        if missing:
            raise ValueError("; ".join(missing))
        return self

    def connection(self, name: str) -> ConnectionSpec | None:
        return self.connections.get(name)

    def tunnel(self, name: str) -> TunnelSpec | None:
        return self.tunnels.get(name)


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from disk.

    When the default file is missing an example config is written in its place
    and a ConfigurationError asks the user to edit it.
    """

    target = path or CONFIG_FILE
    try:
        raw = _read_config_file(target)
    except FileNotFoundError:
        if path is None or target == CONFIG_FILE:
            write_example_config(target)
            raise ConfigurationError(
                f"config file could not be found at '{target}'; an example has been created there"
            ) from None
        raise ConfigurationError(f"{target} could not be found") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"invalid config toml in '{target}': {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"could not open {target}: {exc}") from exc

    try:
        config = AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid config:\n{_format_errors(exc)}") from exc
    if not config.connections:
        raise ConfigurationError(f"no connections defined in '{target}'")
    return config


def write_example_config(target: Path) -> None:
    """Persist a starter config with a single local connection."""

    target.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        "[connections.localdb]",
        'host = "localhost"',
        "port = 5432",
        'database = "postgres"',
        'username = "postgres"',
        'driver = "postgres"',
        "connect_timeout_sec = 30",
        "max_open_conns = 4",
        "",
        "[connections.localdb.driver_opts]",
        'sslmode = "disable"',
        "",
        "# [tunnels.bastion]",
        '# host = "bastion.example.com"',
        '# user = "me"',
        '# auth_method = "agent"',
    ]
    target.write_text("\n".join(lines) + "\n")


def _read_config_file(target: Path) -> dict[str, object]:
    with target.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    for section in ("connections", "tunnels"):
        entries = raw.get(section)
        if entries is None:
            continue
        if not isinstance(entries, dict):
            raise ConfigurationError(f"invalid config: '{section}' must be a table")
        data[section] = entries
    return data


def _named(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        value = dict(value)
        value.setdefault("name", key)
    elif isinstance(value, (ConnectionSpec, TunnelSpec)) and not value.name:
        value = value.model_copy(update={"name": key})
    return value


def _format_errors(exc: ValidationError) -> str:
    lines: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        message = error["msg"]
        lines.append(f"{location}: {message}" if location else message)
    return "\n".join(lines)


__all__ = [
    "AppConfig",
    "AuthMethod",
    "CONFIG_FILE",
    "ConnectionSpec",
    "HostKeyMode",
    "PASSWORD_ENV_VAR",
    "TunnelSpec",
    "load_config",
    "write_example_config",
]
