from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
import logging
import math
from typing import Any


logger = logging.getLogger(__name__)

COLUMN_TYPE_TEXT = "text"
COLUMN_TYPE_NUMBER = "number"
COLUMN_TYPE_BOOLEAN = "boolean"
COLUMN_TYPE_DATE = "date"
COLUMN_TYPE_REFERENCE = "reference"
COLUMN_TYPE_CUSTOM_ARRAY = "customArray"

COLUMN_TYPES = {
    COLUMN_TYPE_TEXT,
    COLUMN_TYPE_NUMBER,
    COLUMN_TYPE_BOOLEAN,
    COLUMN_TYPE_DATE,
    COLUMN_TYPE_REFERENCE,
    COLUMN_TYPE_CUSTOM_ARRAY,
}

# Legacy and UI-level type names accepted on input.
_TYPE_ALIASES = {
    "string": COLUMN_TYPE_TEXT,
    "email": COLUMN_TYPE_TEXT,
    "url": COLUMN_TYPE_TEXT,
    "integer": COLUMN_TYPE_NUMBER,
    "decimal": COLUMN_TYPE_NUMBER,
    "datetime": COLUMN_TYPE_DATE,
    "custom_array": COLUMN_TYPE_CUSTOM_ARRAY,
    "customarray": COLUMN_TYPE_CUSTOM_ARRAY,
}

TRUE_TOKENS = frozenset({"true", "1", "yes", "on"})
FALSE_TOKENS = frozenset({"false", "0", "no", "off"})


@dataclass(frozen=True)
class EncodedValue:
    # Text form persisted in the cell plus the typed shadow values derived from it.
    text: str | None
    number: float | None = None
    date: datetime | None = None
    boolean: bool | None = None


def normalize_column_type(declared: str | None) -> str:
    # Map declared types onto the canonical set; anything unknown stays text-coercible.
    if not declared:
        return COLUMN_TYPE_TEXT
    candidate = declared.strip()
    if candidate in COLUMN_TYPES:
        return candidate
    lowered = candidate.lower()
    if lowered in COLUMN_TYPES:
        return lowered
    alias = _TYPE_ALIASES.get(lowered)
    if alias is not None:
        return alias
    logger.debug("column_type_fallback declared=%s resolved=%s", declared, COLUMN_TYPE_TEXT)
    return COLUMN_TYPE_TEXT


def parse_number(raw: Any) -> float | None:
    # Locale-invariant decimal parsing: '.' separator only, non-finite and malformed input yield None.
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        number = float(raw)
        return number if math.isfinite(number) else None
    text = str(raw).strip()
    if not text:
        return None
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    number = float(parsed)
    return number if math.isfinite(number) else None


def parse_boolean(raw: Any) -> bool | None:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    token = str(raw).strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    return None


def parse_datetime(raw: Any) -> datetime | None:
    # Parse ISO-8601 dates and datetimes; naive values are treated as UTC.
    if raw is None:
        return None
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, date):
        parsed = datetime.combine(raw, time.min)
    else:
        text = str(raw).strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_date_only(raw: Any) -> bool:
    # Detect calendar-date inputs so range ends can cover the whole day.
    if isinstance(raw, datetime):
        return False
    if isinstance(raw, date):
        return True
    text = str(raw).strip() if raw is not None else ""
    return len(text) == 10 and "T" not in text and " " not in text


def parse_reference(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    try:
        return int(text)
    except ValueError:
        number = parse_number(text)
        if number is not None and number.is_integer():
            return int(number)
    return None


def _number_text(number: float) -> str:
    # Keep integral numbers free of a trailing '.0' so stored text stays readable.
    if number.is_integer() and abs(number) < 1e16:
        return str(int(number))
    return repr(number)


def encode_value(column_type: str, raw: Any) -> EncodedValue:
    """Convert a caller-supplied value into the stored text plus shadow columns.

    Non-coercible input is kept verbatim as text with empty shadow values, so a
    later read yields ``None`` for typed columns instead of raising.
    """
    if raw is None:
        return EncodedValue(text=None)
    if column_type == COLUMN_TYPE_NUMBER:
        number = parse_number(raw)
        if number is None:
            return EncodedValue(text=str(raw))
        if isinstance(raw, str):
            return EncodedValue(text=raw.strip(), number=number)
        return EncodedValue(text=_number_text(number), number=number)
    if column_type == COLUMN_TYPE_BOOLEAN:
        flag = parse_boolean(raw)
        if flag is None:
            return EncodedValue(text=str(raw))
        return EncodedValue(text="true" if flag else "false", boolean=flag)
    if column_type == COLUMN_TYPE_DATE:
        moment = parse_datetime(raw)
        if moment is None:
            return EncodedValue(text=str(raw))
        return EncodedValue(text=moment.isoformat(), date=moment)
    if column_type == COLUMN_TYPE_REFERENCE:
        ref = parse_reference(raw)
        if ref is None:
            return EncodedValue(text=str(raw))
        return EncodedValue(text=str(ref), number=float(ref))
    if isinstance(raw, bool):
        return EncodedValue(text="true" if raw else "false")
    if isinstance(raw, datetime):
        return EncodedValue(text=raw.isoformat())
    return EncodedValue(text=str(raw))


def coerce_value(column_type: str, text: str | None) -> Any:
    # Typed read path: every stored value is text and is converted per declared column type.
    if text is None:
        return None
    if column_type == COLUMN_TYPE_NUMBER:
        return parse_number(text)
    if column_type == COLUMN_TYPE_BOOLEAN:
        return parse_boolean(text)
    if column_type == COLUMN_TYPE_DATE:
        return parse_datetime(text)
    if column_type == COLUMN_TYPE_REFERENCE:
        return parse_reference(text)
    return text


def is_empty_value(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, str) and not raw.strip():
        return True
    return False
