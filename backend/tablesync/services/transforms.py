"""Null-safe value normalization for warehouse rows."""

from datetime import UTC, date, datetime
from typing import Any

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
]


def unwrap(value: Any) -> Any:
    """Unwrap warehouse value objects such as ``{"value": "2024-01-07"}``."""
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def normalize_date(value: Any) -> date | None:
    """
    Normalize the date representations the warehouse produces to ``date``.

    Accepts wrapped objects, ``date``/``datetime`` instances and strings in the
    formats listed in DATE_FORMATS (a trailing ``Z`` or UTC offset is allowed).
    Returns None for missing or unparseable values.
    """
    value = unwrap(value)
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_datetime(value: Any) -> datetime | None:
    """Like normalize_date but keeps the time; naive values are taken as UTC."""
    value = unwrap(value)
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def to_int(value: Any, default: int | None = 0) -> int | None:
    """Integer coercion; strings like "1,204" and "12.0" are accepted."""
    value = unwrap(value)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    try:
        if isinstance(value, str):
            value = value.replace(",", "").strip()
        return int(float(value))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float | None = 0.0) -> float | None:
    """Float coercion; percent signs and thousands separators are stripped."""
    value = unwrap(value)
    if value is None or value == "":
        return default
    try:
        if isinstance(value, str):
            value = value.replace(",", "").replace("%", "").strip()
        return float(value)
    except (TypeError, ValueError):
        return default


def to_text(value: Any) -> str | None:
    """String coercion that maps blanks to None."""
    value = unwrap(value)
    if value is None:
        return None
    text = str(value).strip()
    return text or None
