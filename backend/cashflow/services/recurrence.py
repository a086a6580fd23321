from calendar import monthrange
from datetime import MAXYEAR, date, timedelta
from typing import Any

from ..domain import parse_pattern
from ..errors import RecurrenceError
from ..schemas import RecurrencePattern


def _add_months(base: date, months: int, day_anchor: int | None = None) -> date:
    """Shift ``base`` by whole months, clamping to the last day of short months.

    ``day_anchor`` is the preferred day of month; it lets a Jan 31 rule land on
    Feb 29 and then come back to Mar 31 instead of drifting to the 29th.
    """
    total_month = (base.month - 1) + months
    year = base.year + total_month // 12
    month = (total_month % 12) + 1
    if year > MAXYEAR:
        raise OverflowError("date value out of range")
    target_day = day_anchor or base.day
    target_day = min(target_day, monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=target_day)


def next_execution_date(current: date, pattern: Any, interval: int, day_anchor: int | None = None) -> date:
    frequency = parse_pattern(pattern)
    if frequency is RecurrencePattern.daily:
        return current + timedelta(days=interval)
    if frequency is RecurrencePattern.weekly:
        return current + timedelta(days=7 * interval)
    if frequency is RecurrencePattern.monthly:
        return _add_months(current, interval, day_anchor)
    if frequency is RecurrencePattern.yearly:
        return _add_months(current, 12 * interval, day_anchor)
    raise RecurrenceError("one-time rules have no next execution date")
