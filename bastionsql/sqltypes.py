"""Runtime result typing: column type names select decoders for scanned values.

Result sets carry no static schema, so every column's driver-reported type
name is looked up in a table of decoders. Each decoder turns one
driver-native value into a :class:`TypedValue`, which always knows whether
it holds data or SQL NULL and renders to a canonical display string.
"""

from __future__ import annotations

import datetime as dt
import math
import struct
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Iterable, Mapping

from .errors import ScanError
from .models import ColumnType, QueryResult, RawResult

NULL_TEXT = "NULL"

FALLBACK_TYPE = "*"


class ValueKind(str, Enum):
    """Tag carried by every decoded value."""

    TEXT = "text"
    BOOLEAN = "boolean"
    INT64 = "int64"
    INT32 = "int32"
    INT16 = "int16"
    FLOAT64 = "float64"
    FLOAT32 = "float32"
    TIMESTAMP = "timestamp"
    UUID = "uuid"
    NULL = "null"
    ARRAY = "array"
    GENERIC = "generic"


@dataclass(frozen=True, slots=True)
class TypedValue:
    """A decoded cell: a kind tag, the Python value and a validity flag.

    ``valid`` is False when the database returned NULL for a typed column;
    the kind is kept so callers still know what the column holds. A cell the
    driver never produced at all is ``TypedValue.null()`` (kind NULL).
    """

    kind: ValueKind
    value: object = None
    valid: bool = True

    @classmethod
    def null(cls) -> TypedValue:
        return cls(ValueKind.NULL, None, False)

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL or not self.valid

    def render(self) -> str:
        """Canonical display string for the value."""

        if self.is_null:
            return NULL_TEXT
        renderer = _RENDERERS.get(self.kind, _render_generic)
        return renderer(self.value)

    def __str__(self) -> str:
        return self.render()


Decoder = Callable[[object], TypedValue]


def decode_text(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.TEXT, None, False)
    if isinstance(raw, str):
        return TypedValue(ValueKind.TEXT, raw)
    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            return TypedValue(ValueKind.TEXT, bytes(raw).decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise ScanError(f"text value is not valid utf-8: {exc}") from exc
    raise ScanError(f"unexpected type '{type(raw).__name__}' for text")


def decode_bool(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.BOOLEAN, None, False)
    if isinstance(raw, bool):
        return TypedValue(ValueKind.BOOLEAN, raw)
    raise ScanError(f"unexpected type '{type(raw).__name__}' for boolean")


def _int_decoder(kind: ValueKind, bits: int) -> Decoder:
    low = -(1 << (bits - 1))
    high = (1 << (bits - 1)) - 1

    def _decode(raw: object) -> TypedValue:
        if raw is None:
            return TypedValue(kind, None, False)
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ScanError(f"unexpected type '{type(raw).__name__}' for {kind.value}")
        if not low <= raw <= high:
            raise ScanError(f"value {raw} out of range for {kind.value}")
        return TypedValue(kind, int(raw))

    _decode.__name__ = f"decode_{kind.value}"
    return _decode


decode_int64 = _int_decoder(ValueKind.INT64, 64)
decode_int32 = _int_decoder(ValueKind.INT32, 32)
decode_int16 = _int_decoder(ValueKind.INT16, 16)


def _as_float(raw: object, kind: ValueKind) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, Decimal)):
        raise ScanError(f"unexpected type '{type(raw).__name__}' for {kind.value}")
    try:
        return float(raw)
    except (OverflowError, InvalidOperation, ValueError) as exc:
        raise ScanError(f"value {raw} cannot be represented as {kind.value}") from exc


def decode_float64(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.FLOAT64, None, False)
    return TypedValue(ValueKind.FLOAT64, _as_float(raw, ValueKind.FLOAT64))


def decode_float32(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.FLOAT32, None, False)
    value = _as_float(raw, ValueKind.FLOAT32)
    try:
        return TypedValue(ValueKind.FLOAT32, _to_float32(value))
    except OverflowError as exc:
        raise ScanError(f"value {raw} out of range for float32") from exc


def decode_timestamp(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.TIMESTAMP, None, False)
    if isinstance(raw, (dt.datetime, dt.date, dt.time)):
        return TypedValue(ValueKind.TIMESTAMP, raw)
    raise ScanError(f"unexpected type '{type(raw).__name__}' for timestamp")


def decode_uuid(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.UUID, None, False)
    return TypedValue(ValueKind.UUID, parse_uuid(raw))


def decode_array(raw: object) -> TypedValue:
    if raw is None:
        return TypedValue(ValueKind.ARRAY, None, False)
    if isinstance(raw, (list, tuple)):
        return TypedValue(ValueKind.ARRAY, tuple(raw))
    raise ScanError(f"unexpected type '{type(raw).__name__}' for array")


def decode_generic(raw: object) -> TypedValue:
    """Opaque capture of whatever native value the driver produced."""

    if raw is None:
        return TypedValue(ValueKind.GENERIC, None, False)
    return TypedValue(ValueKind.GENERIC, raw)


def parse_uuid(raw: object) -> uuid.UUID:
    """Accept 16 raw bytes, 32 hex digits or the 36-character hyphenated form."""

    if isinstance(raw, uuid.UUID):
        return raw
    if isinstance(raw, (bytes, bytearray, memoryview)):
        data = bytes(raw)
        if len(data) == 16:
            return uuid.UUID(bytes=data)
        try:
            raw = data.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ScanError(f"invalid uuid bytes: {exc}") from exc
    if not isinstance(raw, str):
        raise ScanError(f"unexpected type '{type(raw).__name__}' for uuid")

    if len(raw) == 36:
        if any(raw[pos] != "-" for pos in (8, 13, 18, 23)):
            raise ScanError(f"invalid uuid '{raw}'")
        digits = raw.replace("-", "")
    elif len(raw) == 32:
        digits = raw
    else:
        raise ScanError(f"unexpected number of bytes for uuid: {len(raw)}")
    if len(digits) != 32 or any(ch not in "0123456789abcdefABCDEF" for ch in digits):
        raise ScanError(f"invalid uuid '{raw}'")
    return uuid.UUID(hex=digits)


_TYPE_FAMILIES: tuple[tuple[Decoder, tuple[str, ...]], ...] = (
    (decode_text, ("CHARACTER", "CHAR", "CHARACTER VARYING", "VARCHAR", "NVARCHAR", "TEXT", "BPCHAR", "NAME")),
    (decode_bool, ("BOOL", "BOOLEAN")),
    (decode_int64, ("BIGINT", "INT8", "BIGSERIAL", "SERIAL8")),
    (decode_int32, ("INTEGER", "INT", "INT4", "SERIAL", "SERIAL4")),
    (decode_int16, ("SMALLINT", "INT2", "SMALLSERIAL", "SERIAL2")),
    (decode_float64, ("DOUBLE", "DOUBLE PRECISION", "FLOAT8", "NUMERIC", "DECIMAL")),
    (decode_float32, ("REAL", "FLOAT4")),
    (decode_timestamp, ("TIMESTAMP", "TIMESTAMPTZ", "TIME", "TIMETZ", "DATE")),
    (decode_uuid, ("UUID",)),
    (decode_array, ("ARRAY",)),
)

DEFAULT_DECODERS: Mapping[str, Decoder] = {
    **{name: decoder for decoder, names in _TYPE_FAMILIES for name in names},
    FALLBACK_TYPE: decode_generic,
}


class ResultTypeResolver:
    """Maps runtime column type names to decoders and decodes whole result sets."""

    def __init__(self, decoders: Mapping[str, Decoder] | None = None) -> None:
        table = DEFAULT_DECODERS if decoders is None else decoders
        self._decoders: dict[str, Decoder] = {_normalize(name): fn for name, fn in table.items()}
        self._decoders.setdefault(FALLBACK_TYPE, decode_generic)

    def register(self, type_name: str, decoder: Decoder) -> None:
        """Add or replace the decoder used for ``type_name``."""

        self._decoders[_normalize(type_name)] = decoder

    def decoder_for(self, type_name: str) -> Decoder:
        return self._decoders.get(_normalize(type_name), self._decoders[FALLBACK_TYPE])

    def resolve(self, raw: RawResult | None) -> QueryResult | None:
        """Decode a raw result set; statements without columns yield None."""

        if raw is None or not raw.columns:
            return None
        decoders = tuple(self.decoder_for(column.type_name) for column in raw.columns)
        rows = tuple(
            self.decode_row(raw.columns, decoders, row, index)
            for index, row in enumerate(raw.rows)
        )
        return QueryResult(columns=tuple(column.name for column in raw.columns), rows=rows)

    @staticmethod
    def decode_row(
        columns: tuple[ColumnType, ...],
        decoders: tuple[Decoder, ...],
        row: tuple[object, ...],
        index: int = 0,
    ) -> tuple[TypedValue, ...]:
        values: list[TypedValue] = []
        for position, (column, decoder) in enumerate(zip(columns, decoders)):
            if position >= len(row):
                values.append(TypedValue.null())
                continue
            try:
                values.append(decoder(row[position]))
            except ScanError as exc:
                raise ScanError(
                    f"row {index}, column '{column.name}' ({column.type_name}): {exc}"
                ) from exc
        return tuple(values)


def _normalize(type_name: str) -> str:
    return type_name.strip().upper()


def _to_float32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _format_float64(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def _format_float32(value: float) -> str:
    if math.isnan(value) or math.isinf(value):
        return _format_float64(value)
    # shortest decimal that survives a float32 round trip
    for digits in range(1, 10):
        text = f"{value:.{digits}g}"
        if _to_float32(float(text)) == value:
            return _format_float64(float(text))
    return _format_float64(value)


def _render_generic(value: object) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    return str(value)


def _render_element(value: object) -> str:
    if value is None:
        return NULL_TEXT
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _format_float64(value)
    if isinstance(value, (list, tuple)):
        return _render_array(value)
    return _render_generic(value)


def _render_array(value: Iterable[object]) -> str:
    return "{" + ",".join(_render_element(item) for item in value) + "}"


_RENDERERS: dict[ValueKind, Callable[[object], str]] = {
    ValueKind.TEXT: str,
    ValueKind.BOOLEAN: lambda value: "true" if value else "false",
    ValueKind.INT64: str,
    ValueKind.INT32: str,
    ValueKind.INT16: str,
    ValueKind.FLOAT64: _format_float64,  # type: ignore[dict-item]
    ValueKind.FLOAT32: _format_float32,  # type: ignore[dict-item]
    ValueKind.TIMESTAMP: str,
    ValueKind.UUID: str,
    ValueKind.ARRAY: _render_array,  # type: ignore[dict-item]
    ValueKind.GENERIC: _render_generic,
}


__all__ = [
    "DEFAULT_DECODERS",
    "Decoder",
    "FALLBACK_TYPE",
    "NULL_TEXT",
    "ResultTypeResolver",
    "TypedValue",
    "ValueKind",
    "decode_array",
    "decode_bool",
    "decode_float32",
    "decode_float64",
    "decode_generic",
    "decode_int16",
    "decode_int32",
    "decode_int64",
    "decode_text",
    "decode_timestamp",
    "decode_uuid",
    "parse_uuid",
]
