"""Identifier and timestamp helpers shared by both backends."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Union


def generate_id() -> str:
    """Random UUID4 string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[Union[datetime, str]]) -> Optional[str]:
    """
    Canonical UTC ISO-8601 text with microseconds and a trailing `Z`.

    Naive datetimes are treated as UTC (SQLite drops tzinfo on the way back).
    Strings are returned unchanged.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now())
