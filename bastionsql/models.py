"""Shared dataclasses used across driver, metadata and registry modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .sqltypes import TypedValue


@dataclass(frozen=True, slots=True)
class ColumnType:
    """A result-set column as reported by the driver at runtime."""

    name: str
    type_name: str


@dataclass(frozen=True, slots=True)
class RawResult:
    """Undecoded result set: driver-native values aligned with ``columns``."""

    columns: tuple[ColumnType, ...]
    rows: tuple[tuple[object, ...], ...]


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Decoded result set returned to front ends."""

    columns: tuple[str, ...]
    rows: tuple[tuple["TypedValue", ...], ...]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def rendered_rows(self) -> list[list[str]]:
        """Rows rendered to their canonical display strings."""

        return [[value.render() for value in row] for row in self.rows]


@dataclass(frozen=True, slots=True)
class ColumnSchema:
    """One column of a described table."""

    name: str
    type: str
    attrs: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TableSchema:
    """Ordered column descriptors of a table."""

    name: str
    schema: str
    columns: tuple[ColumnSchema, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Connection pool counters for the active connection."""

    max_open: int
    open: int
    in_use: int
    idle: int


__all__ = [
    "ColumnSchema",
    "ColumnType",
    "PoolStats",
    "QueryResult",
    "RawResult",
    "TableSchema",
]
