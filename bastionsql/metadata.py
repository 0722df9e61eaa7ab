"""Schema introspection over an open connection."""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Iterable, Protocol, Sequence

from .errors import ScanError, TableNameError
from .models import ColumnSchema, TableSchema

if TYPE_CHECKING:
    from .connections import Querier

DEFAULT_SCHEMA = "public"

IGNORED_SCHEMAS: tuple[str, ...] = (
    "pg_*",
    "information_schema",
)

USER_DEFINED_TYPE = "USER-DEFINED"


class MetadataProvider(Protocol):
    """Protocol for dialect-specific schema introspection."""

    def list_tables(self) -> list[str]:
        """Tables in the default schema."""

    def list_tables_in_schema(self, schema: str) -> list[str]:
        """Tables in ``schema``, ordered by name."""

    def list_all_tables(self) -> list[str]:
        """Every non-system table as ``schema.table``."""

    def list_schemas(self) -> list[str]:
        """Non-system schemas."""

    def describe_table(self, name: str) -> TableSchema:
        """Ordered column descriptors for ``table`` or ``schema.table``."""


class PostgresMetadataProvider:
    """Answers introspection questions from Postgres' information_schema."""

    _ALL_TABLES_QUERY = """
        SELECT table_schema, table_name
        FROM information_schema.tables
        ORDER BY table_schema, table_name
    """

    _TABLES_IN_SCHEMA_QUERY = """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = $1
        ORDER BY table_name
    """

    _SCHEMA_QUERY = """
        SELECT schema_name
        FROM information_schema.schemata
        ORDER BY schema_name
    """

    _DESCRIBE_QUERY = """
        SELECT column_name, column_default, is_nullable, data_type, udt_schema, udt_name
        FROM information_schema.columns
        WHERE table_schema = $1 AND table_name = $2
        ORDER BY ordinal_position
    """

    def __init__(
        self,
        querier: "Querier",
        *,
        default_schema: str = DEFAULT_SCHEMA,
        ignored_schemas: Sequence[str] = IGNORED_SCHEMAS,
    ) -> None:
        self._querier = querier
        self._default_schema = default_schema
        self._ignored_schemas = tuple(ignored_schemas)

    def list_tables(self) -> list[str]:
        return self.list_tables_in_schema(self._default_schema)

    def list_tables_in_schema(self, schema: str) -> list[str]:
        rows = self._querier.fetch(self._TABLES_IN_SCHEMA_QUERY, schema)
        return [str(row[0]) for row in rows]

    def list_all_tables(self) -> list[str]:
        rows = self._querier.fetch(self._ALL_TABLES_QUERY)
        return [
            f"{row[0]}.{row[1]}"
            for row in rows
            if not self.is_ignored_schema(str(row[0]))
        ]

    def list_schemas(self) -> list[str]:
        rows = self._querier.fetch(self._SCHEMA_QUERY)
        return [str(row[0]) for row in rows if not self.is_ignored_schema(str(row[0]))]

    def describe_table(self, name: str) -> TableSchema:
        schema, table = parse_table_name(name, default_schema=self._default_schema)
        rows = self._querier.fetch(self._DESCRIBE_QUERY, schema, table)
        columns = tuple(_column_from_row(row, table=f"{schema}.{table}") for row in rows)
        return TableSchema(name=table, schema=schema, columns=columns)

    def is_ignored_schema(self, schema: str) -> bool:
        return _matches_any(schema, self._ignored_schemas)


def parse_table_name(name: str, *, default_schema: str = DEFAULT_SCHEMA) -> tuple[str, str]:
    """Split ``table`` or ``schema.table`` into ``(schema, table)``."""

    parts = name.split(".")
    if len(parts) == 1:
        schema, table = default_schema, parts[0]
    elif len(parts) == 2:
        schema, table = parts
    else:
        raise TableNameError(f"invalid table name: '{name}'")
    if not schema or not table:
        raise TableNameError(f"invalid table name: '{name}'")
    return schema, table


def _column_from_row(row: Sequence[object], *, table: str) -> ColumnSchema:
    name, default, nullable, data_type, udt_schema, udt_name = row
    type_name = str(data_type)
    if type_name == USER_DEFINED_TYPE:
        type_name = f"{udt_schema}.{udt_name}" if udt_schema else str(udt_name)
    attrs: list[str] = []
    if default is not None:
        attrs.append(f"DEFAULT {default}")
    attrs.append("NULL" if _parse_yes_no(nullable, table=table, column=str(name)) else "NOT NULL")
    return ColumnSchema(name=str(name), type=type_name, attrs=tuple(attrs))


def _parse_yes_no(value: object, *, table: str, column: str) -> bool:
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")
    if isinstance(value, str):
        if value.upper() == "YES":
            return True
        if value.upper() == "NO":
            return False
    raise ScanError(f"{table}.{column}: invalid is_nullable value {value!r}")


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(name, pattern) for pattern in patterns)


__all__ = [
    "DEFAULT_SCHEMA",
    "IGNORED_SCHEMAS",
    "MetadataProvider",
    "PostgresMetadataProvider",
    "parse_table_name",
]
