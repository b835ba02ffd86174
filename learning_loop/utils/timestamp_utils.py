"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime] = None) -> str:
    """Convert datetime to ISO-8601 string format.

    Args:
        value: datetime (optional, uses current time if None)

    Returns:
        ISO-8601 timestamp string
    """
    if value is None:
        value = utc_now()
    return value.isoformat()


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """Parse an ISO-8601 string, epoch seconds or datetime into a datetime.

    Args:
        value: Timestamp in any of the stored formats

    Returns:
        datetime object

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        raise ValueError(f'Not a timestamp: {value!r}')
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return datetime.fromisoformat(text)
    raise ValueError(f'Not a timestamp: {value!r}')
