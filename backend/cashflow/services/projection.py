import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable

from ..config import settings
from ..domain import ProjectedOccurrence, RecurringRule
from ..errors import RecurrenceError
from ..schemas import RecurrencePattern
from .recurrence import next_execution_date

logger = logging.getLogger(__name__)


def project_rule(
    rule: RecurringRule,
    range_start: date,
    range_end: date,
    max_iterations: int = settings.projection_max_iterations,
) -> list[date]:
    """Dates on which ``rule`` would fire within ``[range_start, range_end]``.

    Read-only. Fast-forwarding to ``range_start`` and enumerating share one
    iteration budget; when it runs out the dates found so far are returned.
    """
    if not rule.is_active or range_end < range_start:
        return []
    end_date = rule.recurrence_end_date
    cursor = rule.next_execution_date

    if rule.pattern is RecurrencePattern.once:
        if range_start <= cursor <= range_end and (end_date is None or cursor <= end_date):
            return [cursor]
        return []

    found: list[date] = []
    iterations = 0
    try:
        while cursor < range_start and iterations < max_iterations:
            cursor = next_execution_date(cursor, rule.pattern, rule.interval, rule.anchor_day)
            iterations += 1
        while cursor <= range_end and iterations < max_iterations:
            if end_date is not None and cursor > end_date:
                break
            if cursor >= range_start:
                found.append(cursor)
            cursor = next_execution_date(cursor, rule.pattern, rule.interval, rule.anchor_day)
            iterations += 1
    except OverflowError:
        logger.warning("Projection of rule %s ran past the supported date range", rule.id)
        return found

    if iterations >= max_iterations and cursor <= range_end:
        logger.warning(
            "Projection of rule %s stopped after %d iterations; returning %d occurrence(s)",
            rule.id,
            max_iterations,
            len(found),
        )
    return found


class OccurrenceProjector:
    def __init__(self, persistence: Any, max_iterations: int = settings.projection_max_iterations) -> None:
        self.persistence = persistence
        self.max_iterations = max_iterations

    def project(self, rule: RecurringRule, range_start: date, range_end: date) -> list[date]:
        return project_rule(rule, range_start, range_end, self.max_iterations)

    def project_rules(
        self, rules: Iterable[RecurringRule], range_start: date, range_end: date
    ) -> list[tuple[RecurringRule, ProjectedOccurrence]]:
        occurrences = []
        for rule in rules:
            for day in self.project(rule, range_start, range_end):
                occurrences.append((rule, ProjectedOccurrence(rule_id=rule.id, execution_date=day)))
        occurrences.sort(key=lambda item: (item[1].execution_date, str(item[1].rule_id)))
        return occurrences

    def project_owner(self, user_id: Any, range_start: date, range_end: date) -> list[tuple[RecurringRule, ProjectedOccurrence]]:
        rules = []
        for row in self.persistence.list_rules(user_id, active_only=True):
            try:
                rules.append(RecurringRule.from_row(row))
            except RecurrenceError:
                logger.warning("Skipping rule %s with an unreadable schedule in projection", row["id"])
        return self.project_rules(rules, range_start, range_end)


@dataclass
class CalendarDay:
    day: date
    balance: Decimal
    income: Decimal
    expenses: Decimal
    scheduled_count: int
    is_projected: bool


def build_cash_flow_calendar(
    transactions: list[dict[str, Any]],
    occurrences: list[tuple[RecurringRule, ProjectedOccurrence]],
    start: date,
    end: date,
    today: date,
) -> tuple[Decimal, list[CalendarDay]]:
    """Running balance per day from booked transactions plus projected occurrences.

    Amounts are signed, so a day's change is the plain sum of its amounts.
    Everything dated before ``start`` folds into the opening balance.
    """
    opening = Decimal("0")
    per_day: dict[date, list[Decimal]] = defaultdict(list)
    scheduled: dict[date, int] = defaultdict(int)

    for tx in transactions:
        if tx["transaction_date"] < start:
            opening += tx["amount"]
        elif tx["transaction_date"] <= end:
            per_day[tx["transaction_date"]].append(tx["amount"])
    for rule, occurrence in occurrences:
        if occurrence.execution_date < start:
            opening += rule.amount
        elif occurrence.execution_date <= end:
            per_day[occurrence.execution_date].append(rule.amount)
            scheduled[occurrence.execution_date] += 1

    days = []
    balance = opening
    current = start
    while current <= end:
        amounts = per_day.get(current, [])
        income = sum((a for a in amounts if a > 0), Decimal("0"))
        expenses = sum((-a for a in amounts if a < 0), Decimal("0"))
        balance += income - expenses
        days.append(
            CalendarDay(
                day=current,
                balance=balance,
                income=income,
                expenses=expenses,
                scheduled_count=scheduled.get(current, 0),
                is_projected=current > today,
            )
        )
        current += timedelta(days=1)
    return opening, days
