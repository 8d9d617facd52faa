"""
Datetime utilities for the identity service.

Contact timestamps are stored as fixed-width UTC ISO-8601 text so that
ORDER BY on the text column matches chronological order.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware (UTC if naive).

    Args:
        dt: A datetime object that may or may not have timezone info

    Returns:
        The same datetime with UTC timezone if it was naive,
        or the original timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_text(dt: datetime) -> str:
    """Format as UTC ISO-8601 with microseconds, e.g. 2024-01-01T00:00:00.000000+00:00."""
    return make_aware(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_utc_text(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return make_aware(value)
    return make_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))
