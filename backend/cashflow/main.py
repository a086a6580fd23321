import logging
from datetime import date, timedelta
from typing import Any, Optional
from uuid import UUID

from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .domain import RecurringRule
from .errors import PersistenceError
from .persistence import get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    CalendarDayResponse,
    CashFlowCalendarResponse,
    ExecutionRecordResponse,
    HealthResponse,
    ProcessDueResponse,
    ProjectedOccurrenceResponse,
    RecurringRuleCreate,
    RecurringRuleResponse,
    RecurringRuleUpdate,
    RuleFailureResponse,
    SchedulerStatusResponse,
    TransactionResponse,
)
from .services.engine import ExecutionEngine, RunReport
from .services.projection import OccurrenceProjector, build_cash_flow_calendar
from .services.scheduler import DailyTrigger

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Cashflow API",
    version="0.1.0",
    description="Recurring transaction scheduling, execution and cash-flow projection.",
)

persistence = get_persistence()
engine = ExecutionEngine(persistence)
projector = OccurrenceProjector(persistence)
trigger = DailyTrigger(
    engine.run_due,
    run_at=settings.scheduler_run_at,
    poll_seconds=settings.scheduler_poll_seconds,
    enabled=settings.scheduler_enabled,
)
MAX_CALENDAR_DAYS = 366


def build_error_response(
    details: list[ApiErrorDetail],
    message: str = "Invalid request payload",
    code: str = "VALIDATION_ERROR",
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
) -> JSONResponse:
    payload = ApiErrorResponse(error=ApiErrorPayload(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return build_error_response(
        [],
        message=str(exc),
        code="PERSISTENCE_ERROR",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.on_event("startup")
async def on_startup() -> None:
    trigger.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await trigger.stop()


def _owner_id(x_user_id: str | None) -> UUID:
    raw = x_user_id or settings.default_user_id
    try:
        return UUID(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid X-User-Id header") from None


def _check_range(start: date, end: date) -> None:
    if end < start:
        raise ValueError("end must not be before start")


def _rule_response(row: dict[str, Any]) -> RecurringRuleResponse:
    return RecurringRuleResponse(
        id=row["id"],
        userId=row["user_id"],
        description=row["description"],
        amount=row["amount"],
        category=row.get("category"),
        transactionType=row["transaction_type"],
        pattern=row["pattern"],
        interval=row["recurrence_interval"],
        anchorDay=row.get("anchor_day"),
        nextExecutionDate=row["next_execution_date"],
        lastExecutedDate=row.get("last_executed_date"),
        recurrenceEndDate=row.get("recurrence_end_date"),
        isActive=row["is_active"],
    )


def _occurrence_response(rule: RecurringRule, execution_date: date) -> ProjectedOccurrenceResponse:
    return ProjectedOccurrenceResponse(
        ruleId=rule.id,
        executionDate=execution_date,
        description=rule.description,
        amount=rule.amount,
        transactionType=rule.transaction_type,
    )


def _report_response(report: RunReport) -> ProcessDueResponse:
    return ProcessDueResponse(
        asOf=report.as_of,
        attempted=report.attempted,
        succeeded=report.succeeded,
        skipped=report.skipped,
        fired=report.fired,
        deactivated=report.deactivated,
        failed=[RuleFailureResponse(ruleId=f.rule_id, error=f.error) for f in report.failed],
    )


@app.get("/api/v1/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.post("/api/v1/recurring-rules", response_model=RecurringRuleResponse, status_code=201)
async def create_recurring_rule(
    payload: RecurringRuleCreate,
    x_user_id: str | None = Header(default=None),
) -> RecurringRuleResponse:
    user_id = _owner_id(x_user_id)
    if payload.startDate < date.today():
        raise ValueError("startDate must not be in the past")
    row = persistence.create_rule(user_id, payload)
    logger.info("Created recurring rule %s for user %s", row["id"], user_id)
    return _rule_response(row)


@app.get("/api/v1/recurring-rules", response_model=list[RecurringRuleResponse])
async def list_recurring_rules(
    activeOnly: bool = False,
    x_user_id: str | None = Header(default=None),
) -> list[RecurringRuleResponse]:
    user_id = _owner_id(x_user_id)
    return [_rule_response(row) for row in persistence.list_rules(user_id, active_only=activeOnly)]


@app.get("/api/v1/recurring-rules/projections", response_model=list[ProjectedOccurrenceResponse])
async def project_occurrences(
    start: date,
    end: date,
    x_user_id: str | None = Header(default=None),
) -> list[ProjectedOccurrenceResponse]:
    user_id = _owner_id(x_user_id)
    _check_range(start, end)
    return [
        _occurrence_response(rule, occurrence.execution_date)
        for rule, occurrence in projector.project_owner(user_id, start, end)
    ]


@app.post("/api/v1/recurring-rules/process-due", response_model=ProcessDueResponse)
async def process_due_now(asOf: Optional[date] = None) -> ProcessDueResponse:
    if asOf is None:
        report = engine.process_due_now()
    else:
        if asOf > date.today():
            raise ValueError("asOf must not be in the future")
        report = engine.run_due(asOf)
    return _report_response(report)


@app.get("/api/v1/recurring-rules/{rule_id}", response_model=RecurringRuleResponse)
async def get_recurring_rule(
    rule_id: UUID,
    x_user_id: str | None = Header(default=None),
) -> RecurringRuleResponse:
    user_id = _owner_id(x_user_id)
    return _rule_response(persistence.get_rule(user_id, rule_id))


@app.put("/api/v1/recurring-rules/{rule_id}", response_model=RecurringRuleResponse)
async def update_recurring_rule(
    rule_id: UUID,
    payload: RecurringRuleUpdate,
    x_user_id: str | None = Header(default=None),
) -> RecurringRuleResponse:
    user_id = _owner_id(x_user_id)
    row = persistence.update_rule(user_id, rule_id, payload)
    logger.info("Updated recurring rule %s for user %s", rule_id, user_id)
    return _rule_response(row)


@app.delete("/api/v1/recurring-rules/{rule_id}", status_code=204)
async def delete_recurring_rule(
    rule_id: UUID,
    purge: bool = False,
    x_user_id: str | None = Header(default=None),
) -> Response:
    user_id = _owner_id(x_user_id)
    if purge:
        persistence.delete_rule(user_id, rule_id)
        logger.info("Deleted recurring rule %s and its execution records", rule_id)
    else:
        persistence.deactivate_rule(user_id, rule_id)
        logger.info("Deactivated recurring rule %s", rule_id)
    return Response(status_code=204)


@app.get("/api/v1/recurring-rules/{rule_id}/executions", response_model=list[ExecutionRecordResponse])
async def list_rule_executions(
    rule_id: UUID,
    x_user_id: str | None = Header(default=None),
) -> list[ExecutionRecordResponse]:
    user_id = _owner_id(x_user_id)
    return [
        ExecutionRecordResponse(
            id=row["id"],
            ruleId=row["rule_id"],
            executionDate=row["execution_date"],
            transactionId=row.get("transaction_id"),
        )
        for row in engine.ledger.history(user_id, rule_id)
    ]


@app.get("/api/v1/cash-flow/calendar", response_model=CashFlowCalendarResponse)
async def cash_flow_calendar(
    start: date,
    end: date,
    x_user_id: str | None = Header(default=None),
) -> CashFlowCalendarResponse:
    user_id = _owner_id(x_user_id)
    _check_range(start, end)
    if (end - start) > timedelta(days=MAX_CALENDAR_DAYS):
        raise ValueError(f"calendar range must not exceed {MAX_CALENDAR_DAYS} days")
    transactions = persistence.list_transactions(user_id, end=end)
    earliest = min([start] + [tx["transaction_date"] for tx in transactions])
    occurrences = projector.project_owner(user_id, earliest, end)
    opening, days = build_cash_flow_calendar(transactions, occurrences, start, end, date.today())
    return CashFlowCalendarResponse(
        start=start,
        end=end,
        openingBalance=opening,
        days=[
            CalendarDayResponse(
                day=d.day,
                balance=d.balance,
                income=d.income,
                expenses=d.expenses,
                scheduledCount=d.scheduled_count,
                isProjected=d.is_projected,
            )
            for d in days
        ],
        scheduledOccurrences=[
            _occurrence_response(rule, occurrence.execution_date)
            for rule, occurrence in occurrences
            if start <= occurrence.execution_date <= end
        ],
    )


@app.get("/api/v1/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    x_user_id: str | None = Header(default=None),
) -> list[TransactionResponse]:
    user_id = _owner_id(x_user_id)
    return [
        TransactionResponse(
            id=row["id"],
            description=row["description"],
            amount=row["amount"],
            category=row.get("category"),
            transactionType=row["transaction_type"],
            transactionDate=row["transaction_date"],
            sourceRuleId=row.get("source_rule_id"),
        )
        for row in persistence.list_transactions(user_id, start, end)
    ]


@app.get("/api/v1/scheduler/status", response_model=SchedulerStatusResponse)
async def scheduler_status() -> SchedulerStatusResponse:
    return SchedulerStatusResponse(**trigger.status())

