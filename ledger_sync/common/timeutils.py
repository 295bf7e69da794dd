"""
Order date normalization helpers.

Rules:
- Naive `datetime` (no tzinfo) is assumed to be **UTC**.
- ISO8601 strings ending with 'Z' are treated as UTC.
- ISO8601 strings with an offset preserve that offset and convert correctly.
- Numeric epoch: values >= 1e12 are treated as milliseconds, otherwise seconds
  (the sheet and browser clients send JS `Date.now()` millis).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

UTC = timezone.utc

# Formats seen in exported sheet rows that `fromisoformat` does not accept.
_FALLBACK_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d, %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y, %I:%M:%S %p",
    "%m/%d/%Y",
)


def parse_order_date(value: Any) -> datetime:
    """
    Parse common order date shapes into a tz-aware UTC datetime.

    Supported input shapes:
    - `datetime` (naive or tz-aware; Firestore's DatetimeWithNanoseconds included)
    - ISO8601 strings (e.g. '2025-01-02T14:30:00Z', '...+03:30')
    - a few slash-separated date strings as exported from spreadsheets
    - epoch seconds or milliseconds (int/float)
    """

    if value is None:
        raise TypeError("order date value is None")

    if isinstance(value, datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    if isinstance(value, bool):
        raise TypeError("unsupported order date type: bool")

    if isinstance(value, (int, float)):
        v = float(value)
        seconds = (v / 1000.0) if abs(v) >= 1e12 else v
        return datetime.fromtimestamp(seconds, tz=UTC)

    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("order date string is empty")

        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"

        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            dt = None
            for fmt in _FALLBACK_FORMATS:
                try:
                    dt = datetime.strptime(s, fmt)
                    break
                except ValueError:
                    continue
            if dt is None:
                raise ValueError(f"unparseable order date string: {value!r}")

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    raise TypeError(f"unsupported order date type: {type(value).__name__}")


def utc_now() -> datetime:
    """Return tz-aware current time in UTC."""

    return datetime.now(tz=UTC)


def format_display_date(value: datetime, *, tz_name: str) -> str:
    """
    Render an order date for a human-facing sheet cell in the given time zone.
    """

    local = parse_order_date(value).astimezone(ZoneInfo(tz_name))
    return local.strftime("%Y/%m/%d %H:%M:%S")
