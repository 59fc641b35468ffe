"""Timezone helpers. All persisted timestamps are UTC."""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch(value) -> Optional[datetime]:
    """Convert processor epoch seconds to an aware datetime."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
