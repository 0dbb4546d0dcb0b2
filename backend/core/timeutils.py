"""Helpers for the fixed-offset local time the practice works in.

Timestamps are stored as naive UTC. Requests carry either aware ISO strings
or local wall-clock values, which are interpreted with ``APP_TIMEZONE``.
"""

import re
from datetime import date, datetime, time, timedelta, timezone

from backend.core import config

_OFFSET_PATTERN = re.compile(r'^([+-])(\d{2}):?(\d{2})$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


def parse_utc_offset(value: str | None) -> timezone:
    match = _OFFSET_PATTERN.match((value or '').strip())
    # Offsets must stay strictly inside a day.
    if not match or int(match.group(2)) > 23 or int(match.group(3)) > 59:
        match = _OFFSET_PATTERN.match(config.DEFAULT_TIMEZONE_OFFSET)
    sign = -1 if match.group(1) == '-' else 1
    delta = timedelta(hours=int(match.group(2)), minutes=int(match.group(3)))
    return timezone(sign * delta)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime, offset_value: str | None = None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=parse_utc_offset(offset_value or config.get_app_timezone()))
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_datetime_to_utc(day: date, clock: time, offset_value: str | None = None) -> datetime:
    return to_utc_naive(datetime.combine(day, clock), offset_value)


def local_day_range(day: date, offset_value: str | None = None) -> tuple[datetime, datetime]:
    start = local_datetime_to_utc(day, time(0, 0), offset_value)
    return start, start + timedelta(days=1)


def format_local_time(value: datetime, offset_value: str | None = None) -> str:
    tz = parse_utc_offset(offset_value or config.get_app_timezone())
    return value.replace(tzinfo=timezone.utc).astimezone(tz).strftime('%H:%M')


def parse_date(value: str) -> date | None:
    value = (value or '').strip()
    if not DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def parse_clock(value: str) -> time | None:
    match = TIME_PATTERN.match((value or '').strip())
    if not match:
        return None
    return time(int(match.group(1)), int(match.group(2)))


def next_business_day(value: datetime) -> datetime:
    candidate = value + timedelta(days=1)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate
