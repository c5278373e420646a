from __future__ import annotations

import pytest

from app.crm.coercion import (
    DecodeMode,
    Scalar,
    TokenList,
    decode_value,
    encode_value,
    format_csv_value,
    parse_csv_value,
    resolve_decode_mode,
    to_plain,
    validate_text_for_type,
)


def test_encode_keeps_scalars_literal() -> None:
    assert encode_value("contacted") == "contacted"
    assert encode_value(42) == "42"
    assert encode_value(2.5) == "2.5"
    assert encode_value(True) == "true"
    assert encode_value(None) == ""


def test_encode_serializes_collections_as_compact_json() -> None:
    assert encode_value(["a", "b"]) == '["a","b"]'
    assert encode_value(("x",)) == '["x"]'
    assert encode_value({"k": 1}) == '{"k":1}'
    assert encode_value(["Zürich"]) == '["Zürich"]'


def test_encode_never_raises_on_unserializable_input() -> None:
    marker = object()
    encoded = encode_value([marker])
    assert isinstance(encoded, str)
    assert encoded


def test_decode_returns_raw_text_for_non_multiselect_types() -> None:
    assert decode_value("text", '["a","b"]') == Scalar('["a","b"]')
    assert decode_value("number", "12.50") == Scalar("12.50")
    assert decode_value("date", "2024-01-31") == Scalar("2024-01-31")


@pytest.mark.parametrize("raw", [None, ""])
def test_decode_absent_for_empty_text(raw: str | None) -> None:
    assert decode_value("multiselect", raw) is None
    assert decode_value("text", raw) is None


def test_decode_multiselect_array() -> None:
    assert decode_value("multiselect", '["a","b"]') == TokenList(("a", "b"))
    assert decode_value("multiselect_dropdown", "[]") == TokenList(())
    assert decode_value("multiselect", "[1,true]") == TokenList(("1", "true"))


@pytest.mark.parametrize("raw", ["not json", "[unterminated", "{", "a; b", "[" * 5000])
def test_decode_malformed_multiselect_never_raises(raw: str) -> None:
    for mode in DecodeMode:
        assert decode_value("multiselect", raw, mode) == Scalar(raw)


def test_legacy_decode_stringifies_parsed_non_list() -> None:
    # parse succeeded but produced a non-list: stringified, not kept raw
    assert decode_value("multiselect", '"solo"', DecodeMode.LEGACY) == Scalar("solo")
    assert decode_value("multiselect", "7", DecodeMode.LEGACY) == Scalar("7")
    assert decode_value("multiselect", '{"a": 1}', DecodeMode.LEGACY) == Scalar('{"a":1}')


def test_strict_decode_keeps_raw_text_for_non_list() -> None:
    assert decode_value("multiselect", '"solo"', DecodeMode.STRICT) == Scalar('"solo"')
    assert decode_value("multiselect", '{"a": 1}', DecodeMode.STRICT) == Scalar('{"a": 1}')


@pytest.mark.parametrize(
    "tokens",
    [["a", "b"], ["Low", "High", "Urgent"], [], ["with space", "ümlaut"]],
)
def test_multiselect_round_trip(tokens: list[str]) -> None:
    decoded = decode_value("multiselect", encode_value(tokens))
    assert to_plain(decoded) == tokens
    assert isinstance(decoded, TokenList)
    assert encode_value(list(decoded.tokens)) == encode_value(tokens)


def test_resolve_decode_mode_defaults_to_legacy() -> None:
    assert resolve_decode_mode(None) is DecodeMode.LEGACY
    assert resolve_decode_mode("STRICT") is DecodeMode.STRICT
    assert resolve_decode_mode("bogus") is DecodeMode.LEGACY


def test_csv_format_joins_tokens_with_semicolon_space() -> None:
    assert format_csv_value("multiselect", '["Low","High"]') == "Low; High"
    assert format_csv_value("select", '["Low","High"]') == "Low; High"
    assert format_csv_value("select", "Low") == "Low"
    assert format_csv_value("text", '["a"]') == '["a"]'
    assert format_csv_value("multiselect", None) == ""


def test_csv_parse_splits_option_cells() -> None:
    assert parse_csv_value("multiselect", " Low ;High;; ") == ["Low", "High"]
    assert parse_csv_value("multiselect", "Low") == ["Low"]
    assert parse_csv_value("select", "Low; High") == ["Low", "High"]
    assert parse_csv_value("select", " Low ") == "Low"
    assert parse_csv_value("text", " a; b ") == "a; b"
    assert parse_csv_value("multiselect", "   ") is None


def test_validate_text_for_type() -> None:
    assert validate_text_for_type("email", "Email", "a@b.co", required=False) is None
    assert validate_text_for_type("email", "Email", "nope", required=False) == "Invalid email format: nope"
    assert validate_text_for_type("phone", "Phone", "+1 (555) 010-2000", required=False) is None
    assert validate_text_for_type("phone", "Phone", "call me", required=False) is not None
    assert validate_text_for_type("url", "Site", "https://example.com", required=False) is None
    assert validate_text_for_type("url", "Site", "example", required=False) is not None
    assert validate_text_for_type("number", "Budget", "1e3", required=False) is None
    assert validate_text_for_type("number", "Budget", "nan", required=False) is not None
    assert validate_text_for_type("date", "Due", "2024-02-30", required=False) is not None
    assert validate_text_for_type("date", "Due", "2024-02-29", required=False) is None
    assert validate_text_for_type("text", "Notes", "", required=True) == "Notes is required"
    assert validate_text_for_type("text", "Notes", None, required=False) is None
