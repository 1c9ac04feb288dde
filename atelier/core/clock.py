"""UTC time helpers.

Every engine operation accepts an optional ``now`` so callers (and tests)
can pin the clock. Stores that drop tzinfo (SQLite) hand back naive values;
those are treated as UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utcnow()
    return as_utc(now)
