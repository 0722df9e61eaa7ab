"""Tests for runtime result typing."""

from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal

import pytest

from bastionsql.errors import ScanError
from bastionsql.models import ColumnType, RawResult
from bastionsql.sqltypes import (
    ResultTypeResolver,
    TypedValue,
    ValueKind,
    decode_float32,
    decode_float64,
    decode_generic,
    decode_int16,
    decode_int32,
    decode_uuid,
)

_UUID_TEXT = "0f8e2b1c-9a3d-4e5f-8a7b-6c5d4e3f2a1b"


def test_resolver_decodes_mixed_rows_and_nulls() -> None:
    raw = RawResult(
        columns=(ColumnType("foo", "int8"), ColumnType("bar", "TEXT"), ColumnType("baz", "bool")),
        rows=(
            (1, "hello", True),
            (27, "world", True),
            (45, "qux", False),
            (53, None, None),
        ),
    )

    result = ResultTypeResolver().resolve(raw)

    assert result is not None
    assert result.columns == ("foo", "bar", "baz")
    assert result.row_count == 4
    assert [value.value for value in result.rows[0]] == [1, "hello", True]
    assert result.rows[3][1].is_null
    assert result.rows[3][1].kind is ValueKind.TEXT
    assert result.rendered_rows()[3] == ["53", "NULL", "NULL"]
    assert result.rendered_rows()[2] == ["45", "qux", "false"]


def test_nullable_integer_renders_null_or_exact_decimal() -> None:
    assert decode_int32(None).render() == "NULL"
    assert decode_int32(None).kind is ValueKind.INT32
    assert decode_int32(-2147483648).render() == "-2147483648"


def test_zero_column_result_is_none_but_zero_rows_is_empty() -> None:
    resolver = ResultTypeResolver()

    assert resolver.resolve(None) is None
    assert resolver.resolve(RawResult(columns=(), rows=())) is None
    empty = resolver.resolve(RawResult(columns=(ColumnType("id", "int4"),), rows=()))
    assert empty is not None
    assert empty.rows == ()


@pytest.mark.parametrize(
    "encoded",
    [
        uuid.UUID(_UUID_TEXT).bytes,
        _UUID_TEXT.replace("-", ""),
        _UUID_TEXT.upper(),
        _UUID_TEXT.replace("-", "").upper().encode("ascii"),
    ],
)
def test_uuid_encodings_share_one_canonical_form(encoded: object) -> None:
    assert decode_uuid(encoded).render() == _UUID_TEXT


@pytest.mark.parametrize("encoded", ["not-a-uuid", "0f8e2b1c9a3d4e5f8a7b6c5d4e3f2a1", "0f8e2b1c+9a3d-4e5f-8a7b-6c5d4e3f2a1b", 42])
def test_uuid_rejects_malformed_input(encoded: object) -> None:
    with pytest.raises(ScanError):
        decode_uuid(encoded)


def test_type_lookup_is_case_insensitive_with_fallback() -> None:
    resolver = ResultTypeResolver()

    assert resolver.decoder_for("Serial8")(5).kind is ValueKind.INT64
    assert resolver.decoder_for("character varying")("x").kind is ValueKind.TEXT
    assert resolver.decoder_for("timestamptz")(dt.datetime(2024, 1, 2)).kind is ValueKind.TIMESTAMP
    assert resolver.decoder_for("jsonb") is decode_generic
    assert resolver.decoder_for("jsonb")('{"a": 1}').render() == '{"a": 1}'


def test_register_extends_lookup_table() -> None:
    resolver = ResultTypeResolver()
    resolver.register("citext", resolver.decoder_for("text"))

    assert resolver.decoder_for("CITEXT")("Mixed").kind is ValueKind.TEXT


def test_numeric_decoding_and_rendering() -> None:
    assert decode_float64(Decimal("12.50")).render() == "12.5"
    assert decode_float64(3).render() == "3"
    assert decode_float64(float("inf")).render() == "Infinity"
    assert decode_float32(0.1).render() == "0.1"
    assert decode_float32(16777216.0).render() == "16777216"


def test_integer_range_and_type_are_enforced() -> None:
    with pytest.raises(ScanError):
        decode_int16(40000)
    with pytest.raises(ScanError):
        decode_int16(True)
    with pytest.raises(ScanError):
        decode_int16("7")


def test_array_and_generic_rendering() -> None:
    resolver = ResultTypeResolver()

    array = resolver.decoder_for("ARRAY")([1, None, [2.5, True]])
    assert array.value == (1, None, [2.5, True])
    assert array.render() == "{1,NULL,{2.5,true}}"
    assert decode_generic(b"\x01\xff").render() == "\\x01ff"
    assert decode_generic(dt.timedelta(hours=1)).render() == "1:00:00"


def test_missing_cell_becomes_null_marker() -> None:
    raw = RawResult(columns=(ColumnType("a", "int4"), ColumnType("b", "text")), rows=((1,),))

    result = ResultTypeResolver().resolve(raw)

    assert result is not None
    assert result.rows[0][1] == TypedValue.null()
    assert result.rows[0][1].kind is ValueKind.NULL
    assert str(result.rows[0][1]) == "NULL"


def test_scan_error_names_row_and_column() -> None:
    raw = RawResult(columns=(ColumnType("flag", "bool"),), rows=((True,), ("yes",)))

    with pytest.raises(ScanError, match=r"row 1, column 'flag' \(bool\)"):
        ResultTypeResolver().resolve(raw)
