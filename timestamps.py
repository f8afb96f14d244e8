"""
timestamps.py  –  wire-format helpers for absolute timestamps

The relay only accepts canonical UTC ISO-8601 strings, e.g.
``2025-11-28T21:00:00.000Z``: the value must be a string, contain both the
``T`` date/time separator and the ``Z`` zone designator, and parse as an
instant.  Everything downstream (resolver, sync driver) works in epoch
milliseconds.
"""

from __future__ import annotations

import datetime
import re
from typing import Any, Optional

from errors import InvalidPayload

# YYYY-MM-DDTHH:MM[:SS[.fff…]]Z  (fromisoformat() is too lenient on <3.11
# and too strict on >6 fractional digits, so normalise first)
_ISO_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2})(?::(\d{2})(?:\.(\d+))?)?Z$"
)

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def _parse(value: str) -> Optional[datetime.datetime]:
    m = _ISO_RE.match(value.strip())
    if not m:
        return None
    year, month, day, hour, minute, sec, frac = m.groups()
    micros = int((frac or "0")[:6].ljust(6, "0"))
    rollover = hour == "24"
    if rollover:
        # 24:00 is midnight at the end of the day; nothing may follow it
        if int(minute) or int(sec or 0) or micros:
            return None
        hour = "0"
    try:
        dt = datetime.datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(sec or 0), micros,
            tzinfo=datetime.timezone.utc,
        )
    except ValueError:          # 2025-02-30 and friends
        return None
    return dt + datetime.timedelta(days=1) if rollover else dt


def is_valid_timestamp(value: Any) -> bool:
    """True when *value* is a canonical Zulu ISO-8601 timestamp string."""
    if not isinstance(value, str):
        return False
    if "T" not in value or "Z" not in value:
        return False
    return _parse(value) is not None


def require_timestamp(value: Any, field: str) -> str:
    """Return *value* unchanged or raise InvalidPayload naming *field*."""
    if value is None or value == "":
        raise InvalidPayload(f"Missing {field} field")
    if not is_valid_timestamp(value):
        raise InvalidPayload(
            f"Invalid or missing {field} timestamp. Expected ISO 8601 format "
            "(e.g., 2025-11-28T21:00:00.000Z)"
        )
    return value


def parse_ms(value: str) -> float:
    """Epoch milliseconds for a canonical timestamp string."""
    dt = _parse(value) if isinstance(value, str) else None
    if dt is None:
        raise InvalidPayload(f"Not a timestamp: {value!r}")
    return (dt - _EPOCH) / datetime.timedelta(milliseconds=1)


def format_ms(ms: float) -> str:
    """Canonical ``YYYY-MM-DDTHH:MM:SS.fffZ`` for epoch milliseconds."""
    dt = _EPOCH + datetime.timedelta(milliseconds=round(ms))
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def to_ms(value: Any) -> Optional[float]:
    """
    Normalise a feed timestamp to epoch milliseconds.

    Accepts numbers (already ms), aware or naive-UTC datetimes, and
    canonical strings.  Anything else – including None – is "absent".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return (value - _EPOCH) / datetime.timedelta(milliseconds=1)
    if isinstance(value, str) and is_valid_timestamp(value):
        return parse_ms(value)
    return None
