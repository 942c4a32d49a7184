"""Canonical match keys for duplicate detection.

``normalize_match_value`` turns any field value into a string key so that
the same logical value compares equal whatever its representation
(``123``, ``123.0``, ``"123"``, ``["b", "a"]`` vs ``["a", "b"]``).
"""

import json
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal

NumberRounding = Literal["half_up", "none"]

MULTI_VALUE_DELIMITER = "||"

_NUMERIC_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

_IDENTIFIER_KEYS = ("item_id", "profile_id", "user_id")


def _format_number(number: Decimal, rounding: NumberRounding) -> str:
    if rounding == "half_up":
        try:
            number = number.quantize(Decimal(1), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            # exceeds decimal context precision
            pass
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


def _normalize_number(value: float | int | Decimal, rounding: NumberRounding) -> str:
    if isinstance(value, Decimal) and not value.is_finite():
        return str(value).lower()
    if isinstance(value, float) and not math.isfinite(value):
        return str(value).lower()
    return _format_number(Decimal(str(value)), rounding)


def _normalize_string(value: str, rounding: NumberRounding) -> str:
    stripped = value.strip()
    if not stripped:
        return ""
    if _NUMERIC_PATTERN.match(stripped):
        try:
            return _format_number(Decimal(stripped), rounding)
        except InvalidOperation:
            pass
    return stripped.lower()


def normalize_match_value(value: Any, rounding: NumberRounding = "half_up") -> str:
    """Return the canonical match key for ``value``.

    Rules, applied in order:

    - ``None`` and empty strings give ``""`` (no match value)
    - booleans give ``"true"`` / ``"false"``
    - numbers and numeric strings give a canonical decimal string; with
      ``half_up`` rounding they are rounded to a whole number first
    - lists are normalized element-wise, empties dropped, sorted, and joined
      with ``||``
    - dicts use ``item_id``, ``profile_id`` or ``user_id`` when present,
      else their ``value`` entry, else a key-sorted JSON dump
    - any other string is stripped and lowercased

    The function never raises.

    Args:
        value: Raw field value
        rounding: Numeric rounding mode (``half_up`` or ``none``)

    Returns:
        Canonical string key
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float | Decimal):
        return _normalize_number(value, rounding)
    if isinstance(value, str):
        return _normalize_string(value, rounding)
    if isinstance(value, list | tuple | set | frozenset):
        parts = [normalize_match_value(element, rounding) for element in value]
        return MULTI_VALUE_DELIMITER.join(sorted(part for part in parts if part))
    if isinstance(value, dict):
        for key in _IDENTIFIER_KEYS:
            if value.get(key) is not None:
                return normalize_match_value(value[key], rounding)
        if "value" in value:
            return normalize_match_value(value["value"], rounding)
        try:
            return json.dumps(value, sort_keys=True, default=str).lower()
        except (TypeError, ValueError):
            return str(value).strip().lower()
    return str(value).strip().lower()
