"""Normalization helpers.

Centralizes defensive parsing of device-supplied values. Devices in the field
run several firmware generations, so numbers arrive as ints, floats, numeric
strings, empty strings or not at all.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any


def safe_float(value: Any) -> float | None:
    """Coerce *value* to a finite float, or ``None``."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def positive_or_none(value: Any) -> int | None:
    """Integer value when strictly positive; ``0``, negatives and junk mean "absent"."""
    parsed = safe_int(value)
    if parsed is None or parsed <= 0:
        return None
    return parsed


def drop_nulls(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is ``None``.

    Alias resolution picks the first key that is present, so an explicit
    ``null`` under the preferred name must not hide a value sent under an
    older alias.
    """
    return {key: value for key, value in payload.items() if value is not None}
