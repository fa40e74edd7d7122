"""GTFS time and date helpers.

GTFS stop times are wall-clock strings relative to the service day and may
run past midnight ("25:15:00" is 01:15 the next day). Dates are YYYYMMDD in
the agency's local timezone.
"""

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from .config import DEFAULT_TIMEZONE
from .errors import TimeFormatError

TimezoneLike = Union[str, tzinfo, None]


def resolve_timezone(tz: TimezoneLike = None) -> tzinfo:
    """Return a tzinfo for a name, an existing tzinfo, or the agency default."""
    if tz is None:
        return ZoneInfo(DEFAULT_TIMEZONE)
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def parse_time(time_string: str) -> int:
    """
    Parse a GTFS time string into seconds since midnight.

    Args:
        time_string: Time in HH:MM:SS format. Hours may exceed 24.

    Returns:
        Seconds since the start of the service day, e.g. "25:15:00" -> 90900.

    Raises:
        TimeFormatError: If the string does not have three non-negative integer
            components or minutes/seconds are out of range.
    """
    parts = time_string.strip().split(":") if isinstance(time_string, str) else []
    if len(parts) != 3:
        raise TimeFormatError(f"Invalid GTFS time {time_string!r}: expected HH:MM:SS")

    parts = [part.strip() for part in parts]
    if not all(part.isdigit() for part in parts):
        raise TimeFormatError(f"Invalid GTFS time {time_string!r}: non-numeric component")

    hours, minutes, seconds = (int(part) for part in parts)
    if minutes >= 60 or seconds >= 60:
        raise TimeFormatError(f"Invalid GTFS time {time_string!r}: minutes and seconds must be < 60")

    return hours * 3600 + minutes * 60 + seconds


def format_time(seconds: int) -> str:
    """Format seconds since midnight as zero-padded HH:MM:SS (hours may exceed 24)."""
    if seconds < 0:
        raise TimeFormatError(f"Cannot format negative time {seconds}")
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def to_absolute(time_string: str, base_date: Union[date, datetime], tz: TimezoneLike = None) -> datetime:
    """
    Convert a GTFS time on a given service day to an aware datetime.

    Hours of 24 or more roll over onto the following day(s).

    Args:
        time_string: GTFS time (HH:MM:SS).
        base_date: The service day. Aware datetimes are first converted to the
            agency timezone so the calendar day is the local one.
        tz: Agency timezone.

    Raises:
        TimeFormatError: If time_string is malformed.
    """
    zone = resolve_timezone(tz)
    total = parse_time(time_string)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    day_offset, hours = divmod(hours, 24)

    service_day = _local_day(base_date, zone) + timedelta(days=day_offset)
    return datetime.combine(service_day, time(hours, minutes, seconds), tzinfo=zone)


def _local_day(moment: Union[date, datetime], zone: tzinfo) -> date:
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(zone)
        return moment.date()
    return moment


def parse_gtfs_date(date_string: str, tz: TimezoneLike = None) -> datetime:
    """Parse YYYYMMDD into local midnight of that day in the agency timezone."""
    value = date_string.strip() if isinstance(date_string, str) else ""
    if len(value) != 8 or not value.isdigit():
        raise TimeFormatError(f"Invalid GTFS date {date_string!r}: expected YYYYMMDD")
    try:
        day = datetime.strptime(value, "%Y%m%d").date()
    except ValueError as e:
        raise TimeFormatError(f"Invalid GTFS date {date_string!r}: {e}") from e
    return datetime.combine(day, time(0, 0), tzinfo=resolve_timezone(tz))


def format_gtfs_date(moment: Union[date, datetime], tz: TimezoneLike = None) -> str:
    """Format a date (or the local day of a datetime) as YYYYMMDD."""
    return _local_day(moment, resolve_timezone(tz)).strftime("%Y%m%d")


def current_gtfs_time(now: Optional[datetime] = None, tz: TimezoneLike = None) -> str:
    """Local wall-clock time as HH:MM:SS."""
    zone = resolve_timezone(tz)
    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is not None:
        now = now.astimezone(zone)
    return f"{now.hour:02d}:{now.minute:02d}:{now.second:02d}"


def day_of_week(moment: Union[date, datetime], tz: TimezoneLike = None) -> int:
    """Local weekday, 0 = Monday ... 6 = Sunday."""
    return _local_day(moment, resolve_timezone(tz)).weekday()


def time_difference(start: str, end: str) -> int:
    """Seconds from one GTFS time to another (negative if end is earlier)."""
    return parse_time(end) - parse_time(start)


def add_seconds(time_string: str, seconds: int) -> str:
    """Shift a GTFS time by a number of seconds, clamping at 00:00:00."""
    return format_time(max(0, parse_time(time_string) + seconds))
