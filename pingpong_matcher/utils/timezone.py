"""Timezone conversion utilities"""
from datetime import datetime
from typing import Optional, Union
import pytz

DEFAULT_DISPLAY_TZ = "Asia/Tokyo"
DISPLAY_FORMAT = "%Y/%m/%d %H:%M"


def to_utc(dt: datetime, tz: Optional[str] = None) -> datetime:
    """
    Convert a datetime to an aware UTC datetime.

    Args:
        dt: Datetime object (naive or timezone-aware)
        tz: Optional timezone string (e.g., 'Asia/Tokyo')
            If provided and dt is naive, dt is assumed to be in that timezone

    Returns:
        Timezone-aware datetime in UTC
    """
    if dt.tzinfo is None:
        if tz:
            # Naive datetime, assume it's wall-clock time in the given zone
            dt = pytz.timezone(tz).localize(dt)
        else:
            dt = pytz.UTC.localize(dt)

    return dt.astimezone(pytz.UTC)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a timestamp as returned by the backend.

    Postgres sends ISO 8601 strings, sometimes with a trailing 'Z' and
    sometimes with fewer than six fractional digits.

    Returns:
        Aware UTC datetime, or None for empty values
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)

    text = value.strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    # Pad fractional seconds to microseconds for fromisoformat on older Pythons
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"

    return to_utc(datetime.fromisoformat(text))


def parse_local(value: Union[str, datetime], tz: str = DEFAULT_DISPLAY_TZ) -> datetime:
    """
    Read user-entered date/time ('2025-03-01T18:30' or '2025-03-01 18:30')

    Naive values are wall-clock time in tz; values with an offset keep it.

    Raises:
        ValueError: the text is not an ISO date/time
    """
    if isinstance(value, datetime):
        return to_utc(value, tz)
    text = value.strip()
    if not text:
        raise ValueError("empty date/time")
    return to_utc(datetime.fromisoformat(text), tz)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO string for the backend"""
    if dt is None:
        return None
    return to_utc(dt).isoformat()


def format_local(dt: Optional[datetime], tz: str = DEFAULT_DISPLAY_TZ) -> str:
    """Format a datetime for display in the given zone ('-' when missing)"""
    if dt is None:
        return "-"
    return to_utc(dt).astimezone(pytz.timezone(tz)).strftime(DISPLAY_FORMAT)


def now_utc() -> datetime:
    """Get current UTC time as an aware datetime"""
    return datetime.now(pytz.UTC)
