# calsync/timeutils.py
"""
The datastore keeps naive UTC datetimes (SQLite drops tzinfo anyway).
Everything crossing a service boundary is timezone-aware.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Naive UTC 'now', the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive (stored) datetime, or convert an aware one."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat().replace("+00:00", "Z")


def parse_datetime(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse provider timestamps into aware UTC datetimes.

    Accepts ISO-8601 strings (with or without a trailing 'Z'), epoch
    milliseconds (Cal.com's accessTokenExpiresAt) or datetimes. Returns None
    for anything unparsable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None
