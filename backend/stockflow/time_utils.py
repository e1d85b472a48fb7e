from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into a UTC-naive datetime.

    Accepts a trailing 'Z' or an explicit offset. Naive input is taken as UTC.
    Blank input returns None.
    """
    if value is None or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return coerce_datetime(datetime.fromisoformat(s))


def coerce_datetime(value) -> Optional[datetime]:
    """Normalize a datetime or ISO string to UTC-naive; None passes through."""
    if value is None:
        return None
    if isinstance(value, str):
        return parse_iso_datetime(value)
    if not isinstance(value, datetime):
        raise TypeError(f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 with a trailing 'Z' (naive means UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
