from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional


def new_id() -> str:
    """Opaque identifier used as primary key for every ledger collection."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into a UTC-naive datetime.

    Naive input is taken as UTC; "Z" and offsets are converted.
    Empty input yields None.
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a (UTC-naive) datetime as ISO-8601 with trailing 'Z'."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="microseconds") + "Z"
