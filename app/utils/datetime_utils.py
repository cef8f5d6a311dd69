"""
Timezone-aware datetime utilities.

All datetime operations should use these helpers to ensure consistent
timezone handling across the codebase.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Parse timestamp from database, ensuring timezone-aware UTC.

    Handles:
    - ISO format strings with Z suffix
    - ISO format strings with +00:00 offset
    - Naive datetimes (assumed UTC)
    - Already timezone-aware datetimes

    Args:
        value: Timestamp from database (string or datetime)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None/empty
    """
    if value is None:
        return None

    if isinstance(value, str):
        if not value:
            return None
        # Handle Z suffix (common in PostgreSQL/Supabase)
        value = value.replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    # Ensure timezone-aware (assume UTC if naive)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt


def end_of_day_after(days: int, now: Optional[datetime] = None) -> datetime:
    """
    Timestamp for the last instant of the UTC day `days` days from now.

    Invitation links expire at 23:59:59.999999 so that "valid for 7 days"
    does not depend on the time of day the invitation was sent.
    """
    base = (now or utc_now()) + timedelta(days=days)
    return base.replace(hour=23, minute=59, second=59, microsecond=999999)


def is_past_with_grace(
    expires_at: Optional[Union[str, datetime]],
    grace_minutes: int = 0,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check if `now` is strictly after expires_at + grace.

    A missing expiry never expires.
    """
    dt = parse_db_timestamp(expires_at)
    if dt is None:
        return False
    return (now or utc_now()) > dt + timedelta(minutes=grace_minutes)


def format_utc(dt: Optional[datetime], fmt: str = "%Y-%m-%d %H:%M:%S UTC") -> str:
    """Format a datetime in UTC for human-facing text (PDF stamps, emails)."""
    if dt is None:
        return ""
    aware = parse_db_timestamp(dt)
    return aware.astimezone(timezone.utc).strftime(fmt)
