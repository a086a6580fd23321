from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RecurrencePattern(str, Enum):
    once = "once"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class RecurringRuleCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    category: Optional[str] = Field(default=None, max_length=100)
    transactionType: TransactionType = TransactionType.expense
    pattern: RecurrencePattern = RecurrencePattern.once
    interval: int = Field(default=1, ge=1, le=1000)
    startDate: date
    recurrenceEndDate: Optional[date] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("amount must not be zero")
        return value

    @model_validator(mode="after")
    def validate_end_date(self) -> "RecurringRuleCreate":
        if self.recurrenceEndDate is not None and self.recurrenceEndDate < self.startDate:
            raise ValueError("recurrenceEndDate must not be before startDate")
        return self


class RecurringRuleUpdate(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    category: Optional[str] = Field(default=None, max_length=100)
    transactionType: Optional[TransactionType] = None
    pattern: Optional[RecurrencePattern] = None
    interval: Optional[int] = Field(default=None, ge=1, le=1000)
    nextExecutionDate: Optional[date] = None
    recurrenceEndDate: Optional[date] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is not None and value == 0:
            raise ValueError("amount must not be zero")
        return value


class RecurringRuleResponse(BaseModel):
    id: UUID
    userId: UUID
    description: str
    amount: Decimal
    category: Optional[str] = None
    transactionType: TransactionType
    pattern: RecurrencePattern
    interval: int
    anchorDay: Optional[int] = None
    nextExecutionDate: date
    lastExecutedDate: Optional[date] = None
    recurrenceEndDate: Optional[date] = None
    isActive: bool


class ExecutionRecordResponse(BaseModel):
    id: UUID
    ruleId: UUID
    executionDate: date
    transactionId: Optional[UUID] = None


class RuleFailureResponse(BaseModel):
    ruleId: UUID
    error: str


class ProcessDueResponse(BaseModel):
    asOf: date
    attempted: int
    succeeded: int
    skipped: int
    fired: int
    deactivated: int
    failed: list[RuleFailureResponse] = Field(default_factory=list)


class ProjectedOccurrenceResponse(BaseModel):
    ruleId: UUID
    executionDate: date
    description: str
    amount: Decimal
    transactionType: TransactionType


class CalendarDayResponse(BaseModel):
    day: date
    balance: Decimal
    income: Decimal
    expenses: Decimal
    scheduledCount: int
    isProjected: bool


class CashFlowCalendarResponse(BaseModel):
    start: date
    end: date
    openingBalance: Decimal
    days: list[CalendarDayResponse]
    scheduledOccurrences: list[ProjectedOccurrenceResponse]


class TransactionResponse(BaseModel):
    id: UUID
    description: str
    amount: Decimal
    category: Optional[str] = None
    transactionType: TransactionType
    transactionDate: date
    sourceRuleId: Optional[UUID] = None


class SchedulerStatusResponse(BaseModel):
    enabled: bool
    running: bool
    runAt: str
    lastRunDate: Optional[date] = None
    lastRunAttempted: Optional[int] = None
    lastRunFailed: Optional[int] = None
