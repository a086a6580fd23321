from datetime import date
from uuid import UUID


class RecurrenceError(ValueError):
    """Base class for schedule problems that make a rule unprocessable."""


class UnknownPatternError(RecurrenceError):
    def __init__(self, pattern: object) -> None:
        super().__init__(f"unknown recurrence pattern: {pattern!r}")
        self.pattern = pattern


class InvalidIntervalError(RecurrenceError):
    def __init__(self, interval: object) -> None:
        super().__init__(f"recurrence interval must be a positive integer, got {interval!r}")
        self.interval = interval


class TransactionCreationFailure(RuntimeError):
    """The ledger transaction for a claimed occurrence could not be created.

    The claim has been released (or will be reconciled), so the occurrence
    stays due and is retried by the next run.
    """

    def __init__(self, rule_id: UUID, execution_date: date, reason: str) -> None:
        super().__init__(f"failed to create transaction for rule {rule_id} on {execution_date}: {reason}")
        self.rule_id = rule_id
        self.execution_date = execution_date


class ConcurrentRuleEditConflict(RuntimeError):
    def __init__(self, rule_id: UUID, expected_date: date) -> None:
        super().__init__(f"rule {rule_id} no longer scheduled for {expected_date}; schedule changed concurrently")
        self.rule_id = rule_id
        self.expected_date = expected_date


class PersistenceError(RuntimeError):
    pass
