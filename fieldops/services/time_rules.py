"""
Time rules and conversion helpers.
Everything is stored in UTC; site-local dates and times of day are converted
at the edges using the site's timezone.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple
import pytz
from ..config import settings


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "America/Montreal")

    Returns:
        UTC datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        # Fallback to UTC if timezone is invalid
        return ensure_utc(local_datetime)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (naive values are taken as UTC)
        timezone_str: Timezone string (e.g., "America/Montreal")

    Returns:
        Local datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return ensure_utc(utc_datetime)
    return ensure_utc(utc_datetime).astimezone(tz)


def combine_date_time(date_val: date, time_val: time, timezone_str: str) -> datetime:
    """
    Combine a local date and time of day into a UTC datetime.
    """
    return local_to_utc(datetime.combine(date_val, time_val), timezone_str)


def day_bounds_utc(date_val: date, timezone_str: Optional[str] = None) -> Tuple[datetime, datetime]:
    """UTC instants bounding a local calendar day, as a half-open interval."""
    timezone_str = timezone_str or settings.tz_default
    start = combine_date_time(date_val, time.min, timezone_str)
    end = combine_date_time(date_val + timedelta(days=1), time.min, timezone_str)
    return start, end


def local_today(now_utc: datetime, timezone_str: Optional[str] = None) -> date:
    return utc_to_local(now_utc, timezone_str or settings.tz_default).date()


def whole_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, never negative."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)
