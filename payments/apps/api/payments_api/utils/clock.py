"""UTC time helpers.

SQLite hands TIMESTAMP WITH TIME ZONE columns back as naive datetimes; every
stored value is UTC, so naive values are tagged rather than converted.
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
