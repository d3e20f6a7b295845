from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse stored / imported timestamps into aware UTC datetimes:
    - "2025-03-01T12:00:00+00:00"
    - "2025-03-01 12:00:00" (naive values are treated as UTC)
    - "03/01/2025"
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    dt = date_parser.parse(s, dayfirst=False, yearfirst=False)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
