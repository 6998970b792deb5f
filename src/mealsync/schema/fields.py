"""
Field coercers used by the entity normalizer.

Each coercer maps an arbitrary raw value onto the canonical shape of one
kind of field. All of them are total (they never raise on odd input)
except where a field is required or must follow a fixed format, where they
raise ``ValidationError``. Every coercer is idempotent:
``coerce(coerce(x)) == coerce(x)``.

Tags:
    normalization, coercion, validation
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any

from mealsync.core.errors import ValidationError
from mealsync.core.timestamps import week_start

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})


def coerce_string_list(value: Any) -> list[str]:
    """Non-list input becomes ``[]``; non-strings and blanks are dropped, items trimmed."""
    if not isinstance(value, (list, tuple)):
        return []
    result = []
    for item in value:
        if isinstance(item, str):
            item = item.strip()
            if item:
                result.append(item)
    return result


def coerce_number(value: Any) -> int | float | None:
    """
    Positive number, or ``None`` as the "unset" marker.

    Strings are parsed for a leading integer (``"15 min"`` -> 15). Zero,
    negatives, NaN, booleans and anything unparseable become ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value if value > 0 else None
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        if not match:
            return None
        number = int(match.group(1))
        return number if number > 0 else None
    return None


def coerce_positive_int(value: Any, *, field: str) -> int:
    """Strict positive integer; used for foreign keys such as ``recipe_id``."""
    number = None
    if isinstance(value, bool):
        number = None
    elif isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdecimal():
        number = int(value.strip())
    if number is None or number <= 0:
        raise ValidationError(
            f"{field} must be a positive integer",
            field=field,
            value=value,
        )
    return number


def coerce_string(
    value: Any,
    *,
    field: str,
    required: bool = False,
    default: str | None = "",
) -> str | None:
    """Trimmed string; a required field that ends up empty is rejected."""
    if value is None:
        text = default
    elif isinstance(value, str):
        text = value.strip()
    else:
        text = str(value).strip()
    if required and not text:
        raise ValidationError(f"{field} is required", field=field, value=value)
    return text or default


def coerce_int(value: Any, *, default: int = 0) -> int:
    """Any integer (zero and negatives allowed); unparseable input gives ``default``."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        if match:
            return int(match.group(1))
    return default


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def coerce_date(value: Any, *, field: str) -> str:
    """Calendar date as ``YYYY-MM-DD``."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        if _ISO_DATE.match(text):
            try:
                return date.fromisoformat(text).isoformat()
            except ValueError:
                pass
    raise ValidationError(
        f"{field} must be a date in YYYY-MM-DD format",
        field=field,
        value=value,
    )


def coerce_timestamp(value: Any) -> str | None:
    """ISO timestamp string, or ``None`` when unset."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def week_start_date(day: str) -> str:
    """Monday of the week containing the ``YYYY-MM-DD`` date ``day``."""
    return week_start(date.fromisoformat(day)).isoformat()
