from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse


FIELD_TYPES = (
    "text",
    "textarea",
    "email",
    "phone",
    "url",
    "number",
    "date",
    "select",
    "multiselect",
    "multiselect_dropdown",
)
MULTISELECT_TYPES = frozenset({"multiselect", "multiselect_dropdown"})
OPTION_TYPES = frozenset({"select", *MULTISELECT_TYPES})

CSV_EXPORT_DELIMITER = "; "
CSV_IMPORT_DELIMITER = ";"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9\s\-()]+$")

_JSON_SEPARATORS = (",", ":")


class DecodeMode(str, Enum):
    # LEGACY: a structured parse that yields a non-list is stringified,
    # while a failed parse keeps the raw text. STRICT keeps the raw text
    # for anything that is not a JSON array.
    LEGACY = "legacy"
    STRICT = "strict"


@dataclass(frozen=True, slots=True)
class Scalar:
    value: str


@dataclass(frozen=True, slots=True)
class TokenList:
    tokens: tuple[str, ...]


DecodedValue = Scalar | TokenList


def is_multiselect(field_type: str) -> bool:
    return field_type in MULTISELECT_TYPES


def has_options(field_type: str) -> bool:
    return field_type in OPTION_TYPES


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=_JSON_SEPARATORS, ensure_ascii=False)


def _token(item: Any) -> str:
    if isinstance(item, str):
        return item
    return _dumps(item)


def encode_value(value: Any) -> str:
    """Render a submitted value as the text stored in the value store.

    Scalars keep their literal string form, collections become a JSON
    array/object. Never raises: anything json cannot handle falls back to
    ``str()``.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        try:
            return _dumps(list(value) if isinstance(value, tuple) else value)
        except (TypeError, ValueError):
            return str(value)
    if isinstance(value, (set, frozenset)):
        try:
            return _dumps(sorted(value, key=str))
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def decode_value(field_type: str, raw: str | None, mode: DecodeMode = DecodeMode.LEGACY) -> DecodedValue | None:
    """Translate stored text back to its semantic shape for ``field_type``.

    Only multiselect types are parsed. Malformed stored text degrades to a
    ``Scalar`` of the raw text instead of raising.
    """
    if raw is None or raw == "":
        return None
    if not is_multiselect(field_type):
        return Scalar(raw)

    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError):
        return Scalar(raw)

    if isinstance(parsed, list):
        return TokenList(tuple(_token(item) for item in parsed))
    if mode is DecodeMode.STRICT:
        return Scalar(raw)
    if isinstance(parsed, str):
        return Scalar(parsed)
    return Scalar(_dumps(parsed))


def to_plain(decoded: DecodedValue | None) -> str | list[str] | None:
    if decoded is None:
        return None
    if isinstance(decoded, TokenList):
        return list(decoded.tokens)
    return decoded.value


def resolve_decode_mode(raw: str | None) -> DecodeMode:
    try:
        return DecodeMode((raw or DecodeMode.LEGACY.value).strip().lower())
    except ValueError:
        return DecodeMode.LEGACY


def format_csv_value(field_type: str, raw: str | None) -> str:
    # option fields may hold a JSON token list written by a multi-token import cell
    decoded = decode_value("multiselect" if has_options(field_type) else field_type, raw, DecodeMode.STRICT)
    if decoded is None:
        return ""
    if isinstance(decoded, TokenList):
        return CSV_EXPORT_DELIMITER.join(decoded.tokens)
    return decoded.value


def parse_csv_value(field_type: str, cell: str | None) -> str | list[str] | None:
    if cell is None or cell.strip() == "":
        return None
    if not has_options(field_type):
        return cell.strip()
    tokens = [token.strip() for token in cell.split(CSV_IMPORT_DELIMITER) if token.strip()]
    if is_multiselect(field_type) or len(tokens) > 1:
        return tokens
    return tokens[0] if tokens else None


def _is_number(value: str) -> bool:
    try:
        parsed = float(value)
    except ValueError:
        return False
    return not math.isnan(parsed)


def _is_date(value: str) -> bool:
    for parser in (date.fromisoformat, datetime.fromisoformat):
        try:
            parser(value)
            return True
        except ValueError:
            continue
    return False


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


def validate_text_for_type(field_type: str, label: str, value: str | None, *, required: bool) -> str | None:
    """Return an error message for an invalid cell, or ``None`` when it is acceptable."""
    if value is None or value.strip() == "":
        return f"{label} is required" if required else None

    candidate = value.strip()
    if field_type == "email" and not EMAIL_RE.match(candidate):
        return f"Invalid email format: {candidate}"
    if field_type == "phone" and not PHONE_RE.match(candidate):
        return f"Invalid phone format: {candidate}"
    if field_type == "url" and not _is_url(candidate):
        return f"Invalid URL format: {candidate}"
    if field_type == "number" and not _is_number(candidate):
        return f"Invalid number: {candidate}"
    if field_type == "date" and not _is_date(candidate):
        return f"Invalid date format: {candidate}"
    return None
