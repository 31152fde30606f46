"""
Date/time helpers for the finance reports.

Timestamps are stored and compared in UTC. Report periods are calendar dates
in the business timezone, so every conversion goes through one of the pure
functions below with an explicit timezone name.

Usage:
    from studyfin.utils.dates import period_bounds_utc, make_timestamp_formatter

    period_bounds_utc(date(2026, 10, 1), date(2026, 10, 31), "Asia/Kolkata")
    fmt = make_timestamp_formatter("Asia/Kolkata")
    fmt(datetime(2026, 10, 1, 4, 30, tzinfo=timezone.utc))  -> "01 Oct 2026 10:00"
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Kolkata"

_DATE_FMT = "%d %b %Y"
_DATETIME_FMT = "%d %b %Y %H:%M"


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC (that is how SQLite hands them back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a wire timestamp into an aware UTC datetime.

    Accepts datetime/date objects and ISO-8601 strings (a trailing "Z" is
    allowed). Returns None when the value cannot be interpreted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_iso_date(value) -> Optional[date]:
    """
    Parse YYYY-MM-DD (a full ISO datetime is also accepted and truncated to
    its date). Empty values mean "no bound" and give None.

    Raises:
        ValueError: for non-empty values that are not a calendar date,
            including dates followed by trailing characters
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # the calendar date as written, not shifted to UTC
    return datetime.fromisoformat(text).date()


def local_day_start_utc(day: date, tz_name: str = DEFAULT_TIMEZONE) -> datetime:
    """Local midnight of `day` expressed in UTC."""
    return datetime.combine(day, time.min, tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)


def period_bounds_utc(
    start_date: Optional[date],
    end_date: Optional[date],
    tz_name: str = DEFAULT_TIMEZONE,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Convert an inclusive [start_date, end_date] local-date range into a
    half-open UTC range [start, end). Missing bounds stay None.
    """
    start = local_day_start_utc(start_date, tz_name) if start_date else None
    end = local_day_start_utc(end_date + timedelta(days=1), tz_name) if end_date else None
    return start, end


def local_today(tz_name: str = DEFAULT_TIMEZONE, now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return ensure_utc(now).astimezone(ZoneInfo(tz_name)).date()


def format_local_datetime(value: Optional[datetime], tz_name: str = DEFAULT_TIMEZONE) -> str:
    if value is None:
        return ""
    return ensure_utc(value).astimezone(ZoneInfo(tz_name)).strftime(_DATETIME_FMT)


def format_local_date(value, tz_name: str = DEFAULT_TIMEZONE) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return ensure_utc(value).astimezone(ZoneInfo(tz_name)).strftime(_DATE_FMT)
    return value.strftime(_DATE_FMT)


def make_timestamp_formatter(tz_name: str = DEFAULT_TIMEZONE) -> Callable[[Optional[datetime]], str]:
    """Bind the display timezone once; renderers receive the result."""
    def _format(value: Optional[datetime]) -> str:
        return format_local_datetime(value, tz_name)
    return _format
