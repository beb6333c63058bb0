"""Timestamp parsing and formatting helpers.

All instants are handled as timezone-aware UTC datetimes. Naive values are
treated as UTC.
"""

from datetime import UTC, datetime
from dateutil.parser import ParserError
from dateutil.parser import parse as parse_date


def ensure_utc(dt: datetime) -> datetime:
    """Attach or convert to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_epoch_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds"""
    return int(round(ensure_utc(dt).timestamp() * 1000))


def from_epoch_ms(epoch_ms: int | float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime"""
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC)


def from_epoch_seconds(value) -> datetime | None:
    """Convert epoch seconds (int or numeric string) to an aware UTC datetime"""
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


def parse_timestamp(value) -> datetime | None:
    """Parse a datetime, epoch milliseconds, or date string into an aware UTC datetime.

    Returns None for anything unparseable or not after the Unix epoch.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        dt = ensure_utc(value)
    elif isinstance(value, (int, float)):
        try:
            dt = from_epoch_ms(value)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            dt = ensure_utc(parse_date(value))
        except (ParserError, OverflowError, ValueError):
            return None
    else:
        return None

    if dt.timestamp() <= 0:
        return None
    return dt


def to_iso(dt: datetime) -> str:
    """Format as ISO-8601 with millisecond precision and a Z suffix"""
    return ensure_utc(dt).strftime('%Y-%m-%dT%H:%M:%S.') + f"{ensure_utc(dt).microsecond // 1000:03d}Z"


def ms_to_iso(epoch_ms: int) -> str:
    return to_iso(from_epoch_ms(epoch_ms))
