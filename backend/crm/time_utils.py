from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time in UTC, tz-stripped; every stored timestamp uses this form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 query/body value into a naive UTC datetime.

    Blank input gives None. Values without an offset are taken as UTC;
    a trailing "Z" or an explicit offset is converted to UTC.
    Raises ValueError on anything fromisoformat rejects.
    """
    text = (value or "").strip()
    if not text:
        return None

    if text[-1] in ("Z", "z"):
        text = f"{text[:-1]}+00:00"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date_range_end(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the upper bound of a date filter.

    A bare date ("2026-03-01") covers the whole day, so the bound becomes
    the start of the following day (exclusive).
    """
    parsed = parse_iso_datetime(value)
    if parsed is not None and len(value.strip()) == 10:
        parsed += timedelta(days=1)
    return parsed


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Render as second-precision ISO-8601 with a "Z" suffix (naive means UTC)."""
    if dt is None:
        return None
    aware = dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    aware = aware.astimezone(timezone.utc).replace(microsecond=0)
    return aware.strftime("%Y-%m-%dT%H:%M:%SZ")
