from datetime import date, datetime

import pytest

from helpers import (
    BASE_TZ,
    InvalidArgument,
    add_days,
    build_month_grid,
    day_key,
    fmt_local,
    interval_contains,
    iso_weekday_monday_first,
    parse_instant,
    start_of_day,
)


def _local(*args):
    return BASE_TZ.localize(datetime(*args))


def test_month_grid_shape_starts_on_monday():
    cells = build_month_grid(_local(2024, 5, 15, 10, 0))
    assert len(cells) == 42
    # 1 May 2024 is a Wednesday
    assert cells[0]["day_key"] == "2024-04-29"
    assert cells[0]["in_current_month"] is False
    assert cells[2] == {"day_key": "2024-05-01", "day_number": 1, "in_current_month": True}
    assert cells[-1]["day_key"] == "2024-06-09"
    assert sum(1 for c in cells if c["in_current_month"]) == 31
    assert iso_weekday_monday_first(cells[0]["day_key"]) == 0


def test_month_grid_when_first_is_monday():
    cells = build_month_grid(date(2024, 4, 10))
    assert cells[0]["day_key"] == "2024-04-01"
    assert cells[0]["in_current_month"] is True


def test_month_grid_rejects_garbage():
    with pytest.raises(InvalidArgument):
        build_month_grid("not a month")


def test_add_days_crosses_month_and_year():
    assert day_key(add_days(_local(2024, 1, 31, 9, 0), 1)) == "2024-02-01"
    result = add_days(_local(2024, 12, 30, 10, 0), 3)
    assert day_key(result) == "2025-01-02"
    assert result.hour == 10


def test_add_days_keeps_wall_clock_across_dst():
    # Europe/Rome switches to summer time on 31 March 2024
    before = _local(2024, 3, 30, 9, 0)
    after = add_days(before, 1)
    assert after.hour == 9
    assert after.utcoffset() != before.utcoffset()


def test_weekday_monday_first():
    assert iso_weekday_monday_first(_local(2024, 5, 6, 12, 0)) == 0
    assert iso_weekday_monday_first(_local(2024, 5, 12, 12, 0)) == 6


def test_day_key_uses_local_calendar():
    assert day_key("2024-05-10T23:30:00Z") == "2024-05-11"
    assert day_key("2024-05-10") == "2024-05-10"


def test_day_key_invalid_input_is_empty():
    assert day_key("garbage") == ""
    assert day_key(None) == ""
    assert day_key(42) == ""


def test_parse_instant_localizes_naive_values():
    parsed = parse_instant("2024-05-10T08:00:00")
    assert parsed.tzinfo is not None
    assert parsed.hour == 8
    assert parse_instant("2024-05-10T08:00:00Z").utcoffset().total_seconds() == 0
    assert parse_instant("yesterday") is None


def test_start_of_day():
    midnight = start_of_day(_local(2024, 5, 10, 17, 45))
    assert (midnight.hour, midnight.minute) == (0, 0)
    assert day_key(midnight) == "2024-05-10"
    with pytest.raises(InvalidArgument):
        start_of_day("nope")


def test_interval_contains_is_half_open():
    start = _local(2024, 5, 10, 9, 0)
    end = _local(2024, 5, 10, 10, 0)
    assert interval_contains(start, end, start)
    assert interval_contains(start, end, _local(2024, 5, 10, 9, 59))
    assert not interval_contains(start, end, end)
    assert not interval_contains(start, "bad", start)


def test_fmt_local():
    assert fmt_local(_local(2024, 9, 9, 17, 0)) == "Mon 09 Sep 17:00"
    assert fmt_local(None) == "—"
