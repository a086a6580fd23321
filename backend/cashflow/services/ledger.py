import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable
from uuid import UUID

from ..domain import ExecutionClaim
from ..persistence import Persistence
from ..store import InMemoryStore

logger = logging.getLogger(__name__)


class ExecutionLedger:
    """One record per (rule, execution date); the unique key is the execution mutex."""

    def __init__(self, persistence: Persistence, clock: Callable[[], datetime] = InMemoryStore.now) -> None:
        self.persistence = persistence
        self.clock = clock

    def try_claim(self, rule_id: UUID, execution_date: date) -> ExecutionClaim | None:
        """Reserve an occurrence. ``None`` means another runner already holds it."""
        row = self.persistence.insert_execution(rule_id, execution_date, self.clock())
        if row is None:
            logger.info("Occurrence of rule %s on %s already claimed", rule_id, execution_date)
            return None
        return ExecutionClaim(execution_id=row["id"], rule_id=rule_id, execution_date=execution_date)

    def lookup(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        return self.persistence.get_execution(rule_id, execution_date)

    def record_completion(self, claim: ExecutionClaim, transaction_id: UUID) -> None:
        self.persistence.complete_execution(claim.execution_id, transaction_id)

    def release(self, claim: ExecutionClaim) -> bool:
        try:
            self.persistence.delete_execution(claim.execution_id)
        except Exception:
            logger.exception(
                "Could not release claim %s for rule %s on %s; left for reconciliation",
                claim.execution_id,
                claim.rule_id,
                claim.execution_date,
            )
            return False
        return True

    def reconcile_stale_claims(self, stale_after: timedelta) -> int:
        """Settle claims left incomplete longer than ``stale_after``.

        A claim whose transaction exists is completed; any other is deleted so
        its occurrence becomes claimable again.
        """
        released = 0
        for row in self.persistence.list_stale_executions(self.clock() - stale_after):
            try:
                transaction = self.persistence.find_occurrence_transaction(row["rule_id"], row["execution_date"])
                if transaction is not None:
                    self.persistence.complete_execution(row["id"], transaction["id"])
                    logger.warning("Completed stale claim %s with existing transaction %s", row["id"], transaction["id"])
                    continue
                self.persistence.delete_execution(row["id"])
            except Exception:
                logger.exception("Could not reconcile stale claim %s for rule %s", row["id"], row["rule_id"])
                continue
            released += 1
        if released:
            logger.warning("Released %d stale incomplete claim(s)", released)
        return released

    def history(self, user_id: UUID, rule_id: UUID) -> list[dict[str, Any]]:
        return self.persistence.list_executions(user_id, rule_id)
