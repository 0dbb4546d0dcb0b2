from datetime import date, datetime, time, timedelta, timezone

import pytest

from backend.core.timeutils import (
    format_local_time,
    local_datetime_to_utc,
    next_business_day,
    parse_clock,
    parse_date,
    parse_utc_offset,
)

DEFAULT_OFFSET = timezone(-timedelta(hours=3))


@pytest.mark.parametrize(('value', 'expected'), [
    ('-03:00', DEFAULT_OFFSET),
    ('+0530', timezone(timedelta(hours=5, minutes=30))),
    ('+00:00', timezone.utc),
    ('+23:59', timezone(timedelta(hours=23, minutes=59))),
])
def test_parse_utc_offset_accepts_valid_offsets(value: str, expected: timezone) -> None:
    assert parse_utc_offset(value) == expected


@pytest.mark.parametrize('value', [None, '', 'UTC', '+3', '+25:00', '+99:00', '-24:00', '-03:75'])
def test_parse_utc_offset_falls_back_to_default(value) -> None:
    assert parse_utc_offset(value) == DEFAULT_OFFSET


def test_out_of_range_app_timezone_uses_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv('APP_TIMEZONE', '+99:00')

    assert format_local_time(datetime(2026, 3, 2, 13, 0)) == '10:00'
    assert local_datetime_to_utc(date(2026, 3, 2), time(10, 0)) == datetime(2026, 3, 2, 13, 0)


def test_strict_date_and_clock_parsing() -> None:
    assert parse_date('2026-03-02') == date(2026, 3, 2)
    assert parse_date('2026-3-2') is None
    assert parse_date('2026-02-30') is None
    assert parse_clock('09:05') == time(9, 5)
    assert parse_clock('24:00') is None


def test_next_business_day_skips_weekend() -> None:
    assert next_business_day(datetime(2026, 3, 6, 15, 0)) == datetime(2026, 3, 9, 15, 0)
    assert next_business_day(datetime(2026, 3, 2, 15, 0)) == datetime(2026, 3, 3, 15, 0)
