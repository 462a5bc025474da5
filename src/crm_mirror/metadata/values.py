"""Value coercion between remote record values and mirror columns.

Provides:
- from_remote(): Remote JSON value -> Python value stored in the column
- coerce_local(): Loosely typed local value -> column Python type
- to_remote(): Column value -> remote JSON value (inverse coercion)

Datetimes are stored naive in UTC and sent as ISO-8601 with an offset.
Multi-valued fields are stored as one ';'-joined string.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from src.crm_mirror.schema.type_mapper import MULTI_VALUE_SEPARATOR, ColumnSpec, LocalType

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y")
_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off", ""})


def _reference_id(value: Any) -> Any:
    """Collapse a {"id": ..., "name": ...} reference to its id."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or datetime into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date(value: Any) -> date | None:
    """Parse ISO or US-style (MM/DD/YYYY) dates."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    # Datetime strings carrying a date prefix
    return parse_datetime(text).date()


def parse_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def parse_decimal(value: Any) -> Decimal:
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal: {value!r}") from exc
    if not parsed.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return parsed


def parse_int(value: Any) -> int:
    return int(parse_decimal(value))


def join_values(value: Any) -> str | None:
    """Flatten a list (of scalars or references) into delimited text."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        parts = [str(_reference_id(item)) for item in value if _reference_id(item) is not None]
        return MULTI_VALUE_SEPARATOR.join(parts) if parts else None
    return str(_reference_id(value))


def split_values(value: Any) -> list[str]:
    """Split delimited text back into a list, dropping blanks."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [part.strip() for part in str(value).split(MULTI_VALUE_SEPARATOR) if part.strip()]


def coerce_local(spec: ColumnSpec, value: Any) -> Any:
    """Convert a value to the Python type of the column described by spec.

    Raises:
        ValueError: The value cannot be represented in the column type.
    """
    if value is None:
        return None
    if spec.multi_valued:
        return join_values(value)

    value = _reference_id(value)
    if value is None:
        return None

    if spec.type in (LocalType.STRING, LocalType.TEXT):
        return str(value)
    if spec.type == LocalType.DATETIME:
        return parse_datetime(value)
    if spec.type == LocalType.DATE:
        return parse_date(value)
    if spec.type == LocalType.BOOLEAN:
        return parse_bool(value)
    if spec.type in (LocalType.INTEGER, LocalType.BIGINT):
        if value == "":
            return None
        return parse_int(value)
    if spec.type == LocalType.DECIMAL:
        if value == "":
            return None
        return parse_decimal(value)
    if value == "":
        return None
    return float(value)


def from_remote(spec: ColumnSpec, value: Any) -> Any:
    """Convert a value read from a remote record into its column value."""
    return coerce_local(spec, value)


def to_remote(spec: ColumnSpec, value: Any) -> Any:
    """Convert a column value into the JSON value the remote service expects."""
    if value is None:
        return None
    if spec.multi_valued:
        return split_values(value)
    if spec.type == LocalType.DATETIME:
        parsed = parse_datetime(value)
        return parsed.replace(tzinfo=timezone.utc).isoformat()
    if spec.type == LocalType.DATE:
        return parse_date(value).isoformat()
    if spec.type == LocalType.BOOLEAN:
        return parse_bool(value)
    if spec.type in (LocalType.INTEGER, LocalType.BIGINT):
        return parse_int(value)
    if spec.type == LocalType.DECIMAL:
        return float(parse_decimal(value))
    if spec.type == LocalType.FLOAT:
        return float(value)
    return str(value)
