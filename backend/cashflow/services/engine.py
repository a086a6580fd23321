import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Callable
from uuid import UUID

from ..config import settings
from ..domain import ExecutionClaim, RecurringRule
from ..errors import ConcurrentRuleEditConflict, InvalidIntervalError, TransactionCreationFailure
from ..persistence import Persistence
from ..schemas import RecurrencePattern
from .ledger import ExecutionLedger
from .recurrence import next_execution_date

logger = logging.getLogger(__name__)

TransactionFactory = Callable[[UUID, dict[str, Any]], dict[str, Any]]


@dataclass
class RuleFailure:
    rule_id: UUID
    error: str


@dataclass
class RunReport:
    as_of: date
    attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    fired: int = 0
    deactivated: int = 0
    failed: list[RuleFailure] = field(default_factory=list)


class ExecutionEngine:
    """Turns due recurring rules into ledger transactions, once per occurrence.

    Every occurrence is claimed in the execution ledger before its transaction
    is created, and the rule is only advanced after the transaction exists. A
    failure at any step leaves the rule due on the same date, so the next run
    retries it. Several engines may run against the same persistence at once;
    the ledger's unique (rule, date) key decides who fires an occurrence and the
    conditional rule update decides who advances it.
    """

    def __init__(
        self,
        persistence: Persistence,
        ledger: ExecutionLedger | None = None,
        create_transaction: TransactionFactory | None = None,
        clock: Callable[[], date] = date.today,
        catchup_limit: int = settings.catchup_max_occurrences,
        stale_claim_after: timedelta = timedelta(minutes=settings.claim_stale_after_minutes),
    ) -> None:
        self.persistence = persistence
        self.ledger = ledger or ExecutionLedger(persistence)
        self.create_transaction = create_transaction or persistence.create_ledger_transaction
        self.clock = clock
        self.catchup_limit = catchup_limit
        self.stale_claim_after = stale_claim_after

    def process_due_now(self) -> RunReport:
        logger.info("Manual processing of due recurring rules triggered")
        return self.run_due(self.clock())

    def run_due(self, as_of: date) -> RunReport:
        report = RunReport(as_of=as_of)
        try:
            self.ledger.reconcile_stale_claims(self.stale_claim_after)
        except Exception:
            logger.exception("Stale claim reconciliation failed; processing due rules anyway")
        rows = self.persistence.find_due_rules(as_of)
        logger.info("Found %d recurring rule(s) due on or before %s", len(rows), as_of)

        for row in rows:
            report.attempted += 1
            try:
                progressed = self._process_rule(row, as_of, report)
            except ConcurrentRuleEditConflict as exc:
                report.skipped += 1
                logger.warning("Not advancing rule: %s", exc)
                continue
            except Exception as exc:
                report.failed.append(RuleFailure(rule_id=row["id"], error=str(exc)))
                logger.error("Failed to process recurring rule %s", row["id"], exc_info=True)
                continue
            if progressed:
                report.succeeded += 1
            else:
                report.skipped += 1

        logger.info(
            "Recurring run for %s finished: attempted=%d succeeded=%d skipped=%d failed=%d fired=%d deactivated=%d",
            as_of,
            report.attempted,
            report.succeeded,
            report.skipped,
            len(report.failed),
            report.fired,
            report.deactivated,
        )
        return report

    def _process_rule(self, row: dict[str, Any], as_of: date, report: RunReport) -> bool:
        rule = RecurringRule.from_row(row)
        if rule.pattern is not RecurrencePattern.once and rule.interval < 1:
            raise InvalidIntervalError(rule.interval)

        progressed = False
        for _ in range(self.catchup_limit):
            if not rule.is_active or rule.next_execution_date > as_of:
                return progressed
            occurrence = rule.next_execution_date

            if rule.recurrence_end_date is not None and occurrence > rule.recurrence_end_date:
                self._settle(rule, occurrence, {"is_active": False})
                report.deactivated += 1
                logger.info("Deactivated rule %s: %s is past its end date", rule.id, occurrence)
                return True

            claim = self.ledger.try_claim(rule.id, occurrence)
            if claim is None:
                existing = self.ledger.lookup(rule.id, occurrence)
                if existing is None or existing["transaction_id"] is None:
                    # another runner holds the claim and owns this occurrence
                    return progressed
            else:
                self._fire(rule, claim)
                report.fired += 1

            rule = self._advance(rule, occurrence, report)
            progressed = True

        logger.warning(
            "Rule %s is still due after %d occurrence(s); the rest is left for the next run",
            rule.id,
            self.catchup_limit,
        )
        return progressed

    def _fire(self, rule: RecurringRule, claim: ExecutionClaim) -> None:
        payload = {
            "description": rule.description,
            "amount": rule.amount,
            "category": rule.category,
            "transaction_type": rule.transaction_type.value,
            "transaction_date": claim.execution_date,
            "source_rule_id": rule.id,
        }
        try:
            transaction = self.create_transaction(rule.user_id, payload)
        except Exception as exc:
            self.ledger.release(claim)
            raise TransactionCreationFailure(rule.id, claim.execution_date, str(exc)) from exc
        self.ledger.record_completion(claim, transaction["id"])
        logger.info("Created transaction %s from rule %s for %s", transaction["id"], rule.id, claim.execution_date)

    def _advance(self, rule: RecurringRule, occurrence: date, report: RunReport) -> RecurringRule:
        changes: dict[str, Any] = {"last_executed_date": occurrence}
        if rule.pattern is RecurrencePattern.once:
            changes["is_active"] = False
        else:
            candidate = next_execution_date(occurrence, rule.pattern, rule.interval, rule.anchor_day)
            if rule.recurrence_end_date is not None and candidate > rule.recurrence_end_date:
                changes["is_active"] = False
            else:
                changes["next_execution_date"] = candidate

        self._settle(rule, occurrence, changes)
        if changes.get("is_active") is False:
            report.deactivated += 1
            logger.info("Deactivated rule %s after its occurrence on %s", rule.id, occurrence)
        else:
            logger.debug("Rule %s advanced to %s", rule.id, changes["next_execution_date"])
        return replace(rule, **changes)

    def _settle(self, rule: RecurringRule, expected_date: date, changes: dict[str, Any]) -> None:
        if not self.persistence.conditional_advance(rule.id, rule.user_id, expected_date, changes):
            raise ConcurrentRuleEditConflict(rule.id, expected_date)
