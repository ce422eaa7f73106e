"""Datetime parsing for manifest timestamps: lax input -> strict output."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum
from pendulum.parsing.exceptions import ParserError


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts the shapes older manifests were written with:
    - 2025-07-30T08:12:45.123Z (JavaScript ``toISOString``)
    - 2025-07-30T08:12:45+00:00
    - 2025-07-30 08:12
    - 2025-07-30

    Missing timezone defaults to default_tz.
    Raises ValueError when the string is not a recognizable date.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    value_str = value.strip()

    try:
        parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    except ParserError as exc:
        raise ValueError(f"Unrecognized datetime: {value_str!r}") from exc
    if isinstance(parsed, pendulum.DateTime):
        return parsed
    if isinstance(parsed, pendulum.Date):
        # pendulum.parse returns Date for date-only strings
        return pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)
    raise ValueError(f"Unrecognized datetime: {value_str!r}")


def parse_epoch(value: float) -> float:
    """Normalize an epoch timestamp to seconds.

    JavaScript tooling records milliseconds; anything past the year 5138 in
    seconds is assumed to be milliseconds.
    """
    if value > 1e11:
        return value / 1000.0
    return float(value)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()
