from datetime import date

import pytest

from periods import (
    clamp_day,
    current_month,
    last_day_of_month,
    month_bounds,
    parse_date,
    parse_month,
)


def test_month_bounds_is_half_open() -> None:
    window = month_bounds("2025-03")
    assert window.start == date(2025, 3, 1)
    assert window.end_exclusive == date(2025, 4, 1)
    assert window.end == date(2025, 3, 31)
    assert window.last_day == 31
    assert window.contains(date(2025, 3, 31))
    assert not window.contains(date(2025, 4, 1))


def test_december_rolls_into_next_year() -> None:
    window = month_bounds("2024-12")
    assert window.end_exclusive == date(2025, 1, 1)
    assert len(list(window.days())) == 31


def test_last_day_handles_leap_years() -> None:
    assert last_day_of_month(2024, 2) == 29
    assert last_day_of_month(2025, 2) == 28
    assert last_day_of_month(1900, 2) == 28
    assert last_day_of_month(2000, 2) == 29
    assert last_day_of_month(2025, 4) == 30


def test_days_cover_month_without_gaps() -> None:
    days = list(month_bounds("2024-02").days())
    assert len(days) == 29
    assert days[0] == date(2024, 2, 1)
    assert days[-1] == date(2024, 2, 29)
    assert days == sorted(set(days))


def test_clamp_day() -> None:
    assert clamp_day(31, 28) == 28
    assert clamp_day(15, 30) == 15
    assert clamp_day(0, 30) == 1
    assert month_bounds("2025-02").on_day(31) == date(2025, 2, 28)


@pytest.mark.parametrize(
    "value",
    ["2025-3", "2025-13", "2025-00", "25-03", "", "2025-03-01", "0000-01", "9999-12"],
)
def test_parse_month_rejects_malformed_input(value: str) -> None:
    with pytest.raises(ValueError, match="Month must be YYYY-MM"):
        parse_month(value)


def test_parse_date_is_strict() -> None:
    assert parse_date("2025-06-05") == date(2025, 6, 5)
    with pytest.raises(ValueError, match="Date must be YYYY-MM-DD"):
        parse_date("2025-6-5")
    with pytest.raises(ValueError, match="Date must be YYYY-MM-DD"):
        parse_date("2025-02-30")


def test_current_month_formats_given_day() -> None:
    assert current_month(date(2025, 1, 9)) == "2025-01"
