from datetime import date

import pytest

from cashflow.errors import RecurrenceError, UnknownPatternError
from cashflow.services.recurrence import next_execution_date


def test_daily_and_weekly_step_by_interval() -> None:
    assert next_execution_date(date(2024, 1, 30), "daily", 3) == date(2024, 2, 2)
    assert next_execution_date(date(2024, 12, 30), "weekly", 1) == date(2025, 1, 6)
    assert next_execution_date(date(2024, 1, 1), "weekly", 2) == date(2024, 1, 15)


def test_monthly_clamps_to_short_month_and_keeps_anchor() -> None:
    feb = next_execution_date(date(2024, 1, 31), "monthly", 1, day_anchor=31)
    assert feb == date(2024, 2, 29)
    assert next_execution_date(feb, "monthly", 1, day_anchor=31) == date(2024, 3, 31)
    assert next_execution_date(date(2023, 1, 31), "monthly", 1) == date(2023, 2, 28)


def test_monthly_interval_crosses_year_boundary() -> None:
    assert next_execution_date(date(2024, 11, 15), "monthly", 3, day_anchor=15) == date(2025, 2, 15)


def test_yearly_leap_day_returns_to_feb_29() -> None:
    first = next_execution_date(date(2024, 2, 29), "yearly", 1, day_anchor=29)
    assert first == date(2025, 2, 28)
    assert next_execution_date(date(2027, 2, 28), "yearly", 1, day_anchor=29) == date(2028, 2, 29)


def test_pattern_names_are_case_insensitive() -> None:
    assert next_execution_date(date(2024, 3, 1), "Monthly", 1) == date(2024, 4, 1)


def test_unknown_pattern_raises() -> None:
    with pytest.raises(UnknownPatternError):
        next_execution_date(date(2024, 1, 1), "fortnightly", 1)


def test_once_has_no_successor() -> None:
    with pytest.raises(RecurrenceError):
        next_execution_date(date(2024, 1, 1), "once", 1)


def test_far_future_overflow_is_reported() -> None:
    with pytest.raises(OverflowError):
        next_execution_date(date(9999, 6, 1), "yearly", 1)
