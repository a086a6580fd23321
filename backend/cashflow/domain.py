from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from .errors import UnknownPatternError
from .schemas import RecurrencePattern, TransactionType


def parse_pattern(value: Any) -> RecurrencePattern:
    if isinstance(value, RecurrencePattern):
        return value
    try:
        return RecurrencePattern(str(value).strip().lower())
    except ValueError:
        raise UnknownPatternError(value) from None


@dataclass(frozen=True)
class RecurringRule:
    id: UUID
    user_id: UUID
    description: str
    amount: Decimal
    category: str | None
    transaction_type: TransactionType
    pattern: RecurrencePattern
    interval: int
    next_execution_date: date
    last_executed_date: date | None = None
    recurrence_end_date: date | None = None
    anchor_day: int | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RecurringRule:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            description=row["description"],
            amount=Decimal(row["amount"]),
            category=row.get("category"),
            transaction_type=TransactionType(row["transaction_type"]),
            pattern=parse_pattern(row["pattern"]),
            interval=row["recurrence_interval"],
            next_execution_date=row["next_execution_date"],
            last_executed_date=row.get("last_executed_date"),
            recurrence_end_date=row.get("recurrence_end_date"),
            anchor_day=row.get("anchor_day"),
            is_active=bool(row["is_active"]),
        )


@dataclass(frozen=True)
class ExecutionClaim:
    execution_id: UUID
    rule_id: UUID
    execution_date: date


@dataclass(frozen=True)
class ProjectedOccurrence:
    rule_id: UUID
    execution_date: date
