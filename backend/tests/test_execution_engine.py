import threading
import time
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import pytest

from cashflow.errors import PersistenceError
from cashflow.persistence import InMemoryPersistence
from cashflow.schemas import RecurringRuleCreate, RecurringRuleUpdate
from cashflow.services.engine import ExecutionEngine
from cashflow.store import InMemoryStore

OWNER = UUID("00000000-0000-0000-0000-0000000000aa")


def make_rule(persistence: InMemoryPersistence, **overrides: Any) -> dict[str, Any]:
    fields = {
        "description": "Rent",
        "amount": Decimal("-1200.00"),
        "category": "housing",
        "transactionType": "expense",
        "pattern": "monthly",
        "interval": 1,
        "startDate": date(2024, 1, 15),
    }
    fields.update(overrides)
    return persistence.create_rule(OWNER, RecurringRuleCreate(**fields))


def test_monthly_rule_catches_up_and_deactivates_at_end_date() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, recurrenceEndDate=date(2024, 3, 15))

    report = ExecutionEngine(persistence).run_due(date(2024, 3, 20))

    assert report.attempted == 1
    assert report.succeeded == 1
    assert report.fired == 3
    assert report.deactivated == 1
    assert report.failed == []
    dates = [tx["transaction_date"] for tx in persistence.list_transactions(OWNER)]
    assert dates == [date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15)]
    stored = persistence.get_rule(OWNER, rule["id"])
    assert stored["is_active"] is False
    assert stored["last_executed_date"] == date(2024, 3, 15)
    history = persistence.list_executions(OWNER, rule["id"])
    assert len(history) == 3
    assert all(row["transaction_id"] is not None for row in history)


def test_repeated_runs_for_same_day_are_idempotent() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="daily", startDate=date(2024, 5, 1))
    engine = ExecutionEngine(persistence)

    first = engine.run_due(date(2024, 5, 1))
    second = engine.run_due(date(2024, 5, 1))

    assert first.fired == 1
    assert second.attempted == 0
    assert len(persistence.list_transactions(OWNER)) == 1
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 5, 2)


def test_once_rule_fires_a_single_time() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="once", startDate=date(2024, 6, 1), amount=Decimal("250.00"), transactionType="income")
    engine = ExecutionEngine(persistence)

    report = engine.run_due(date(2024, 6, 10))
    engine.run_due(date(2024, 6, 11))

    assert report.fired == 1
    assert report.deactivated == 1
    stored = persistence.get_rule(OWNER, rule["id"])
    assert stored["is_active"] is False
    assert stored["next_execution_date"] == date(2024, 6, 1)
    assert stored["last_executed_date"] == date(2024, 6, 1)
    transactions = persistence.list_transactions(OWNER)
    assert len(transactions) == 1
    assert transactions[0]["transaction_type"] == "income"
    assert transactions[0]["source_rule_id"] == rule["id"]


def test_failed_transaction_leaves_rule_due_and_other_rules_run() -> None:
    persistence = InMemoryPersistence()
    broken = make_rule(persistence, description="Broken", pattern="daily", startDate=date(2024, 2, 1))
    healthy = make_rule(persistence, description="Healthy", pattern="daily", startDate=date(2024, 2, 1))

    def create_transaction(user_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        if payload["description"] == "Broken":
            raise RuntimeError("ledger unavailable")
        return persistence.create_ledger_transaction(user_id, payload)

    report = ExecutionEngine(persistence, create_transaction=create_transaction).run_due(date(2024, 2, 1))

    assert report.attempted == 2
    assert report.succeeded == 1
    assert [f.rule_id for f in report.failed] == [broken["id"]]
    assert "ledger unavailable" in report.failed[0].error
    assert persistence.get_rule(OWNER, broken["id"])["next_execution_date"] == date(2024, 2, 1)
    assert persistence.get_execution(broken["id"], date(2024, 2, 1)) is None
    assert persistence.get_rule(OWNER, healthy["id"])["next_execution_date"] == date(2024, 2, 2)

    retry = ExecutionEngine(persistence).run_due(date(2024, 2, 1))
    assert retry.fired == 1
    assert retry.failed == []
    assert len(persistence.list_transactions(OWNER)) == 2


def test_concurrent_edit_is_reported_as_skipped() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="weekly", startDate=date(2024, 4, 1))

    def create_transaction(user_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        persistence.update_rule(user_id, rule["id"], RecurringRuleUpdate(nextExecutionDate=date(2024, 5, 1)))
        return persistence.create_ledger_transaction(user_id, payload)

    report = ExecutionEngine(persistence, create_transaction=create_transaction).run_due(date(2024, 4, 1))

    assert report.skipped == 1
    assert report.failed == []
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 5, 1)
    assert len(persistence.list_transactions(OWNER)) == 1


def test_parallel_runners_create_one_transaction_per_occurrence() -> None:
    persistence = InMemoryPersistence()
    make_rule(persistence, pattern="daily", startDate=date(2024, 7, 1))

    def slow_create(user_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        time.sleep(0.05)
        return persistence.create_ledger_transaction(user_id, payload)

    reports = []
    barrier = threading.Barrier(4)

    def worker() -> None:
        engine = ExecutionEngine(persistence, create_transaction=slow_create)
        barrier.wait()
        reports.append(engine.run_due(date(2024, 7, 1)))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(persistence.list_transactions(OWNER)) == 1
    assert sum(r.fired for r in reports) == 1
    assert all(r.failed == [] for r in reports)


def test_stale_claim_without_transaction_is_released_and_fired() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="daily", startDate=date(2024, 8, 1))
    persistence.insert_execution(rule["id"], date(2024, 8, 1), InMemoryStore.now() - timedelta(hours=3))

    report = ExecutionEngine(persistence).run_due(date(2024, 8, 1))

    assert report.fired == 1
    assert len(persistence.list_transactions(OWNER)) == 1
    assert persistence.get_execution(rule["id"], date(2024, 8, 1))["transaction_id"] is not None


def test_stale_claim_with_transaction_is_completed_not_refired() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="daily", startDate=date(2024, 8, 1))
    persistence.insert_execution(rule["id"], date(2024, 8, 1), InMemoryStore.now() - timedelta(hours=3))
    existing = persistence.create_ledger_transaction(
        OWNER,
        {
            "description": "Rent",
            "amount": Decimal("-1200.00"),
            "category": "housing",
            "transaction_type": "expense",
            "transaction_date": date(2024, 8, 1),
            "source_rule_id": rule["id"],
        },
    )

    report = ExecutionEngine(persistence).run_due(date(2024, 8, 1))

    assert report.fired == 0
    assert report.succeeded == 1
    assert [tx["id"] for tx in persistence.list_transactions(OWNER)] == [existing["id"]]
    assert persistence.get_execution(rule["id"], date(2024, 8, 1))["transaction_id"] == existing["id"]
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 8, 2)


def test_fresh_claim_held_elsewhere_is_left_alone() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="daily", startDate=date(2024, 8, 1))
    persistence.insert_execution(rule["id"], date(2024, 8, 1), InMemoryStore.now())

    report = ExecutionEngine(persistence).run_due(date(2024, 8, 1))

    assert report.skipped == 1
    assert persistence.list_transactions(OWNER) == []
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 8, 1)


def test_unreadable_schedules_fail_without_touching_the_rule() -> None:
    persistence = InMemoryPersistence()
    unknown = make_rule(persistence, pattern="daily", startDate=date(2024, 9, 1))
    zero = make_rule(persistence, pattern="daily", startDate=date(2024, 9, 1))
    persistence.store.rules[unknown["id"]]["pattern"] = "fortnightly"
    persistence.store.rules[zero["id"]]["recurrence_interval"] = 0

    report = ExecutionEngine(persistence).run_due(date(2024, 9, 1))

    assert report.attempted == 2
    assert {f.rule_id for f in report.failed} == {unknown["id"], zero["id"]}
    assert persistence.list_transactions(OWNER) == []
    assert persistence.get_rule(OWNER, unknown["id"])["next_execution_date"] == date(2024, 9, 1)
    assert persistence.list_executions(OWNER, zero["id"]) == []


def test_catchup_is_bounded_per_run() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="daily", startDate=date(2024, 10, 1))
    engine = ExecutionEngine(persistence, catchup_limit=2)

    report = engine.run_due(date(2024, 10, 5))

    assert report.fired == 2
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 10, 3)
    engine.run_due(date(2024, 10, 5))
    engine.run_due(date(2024, 10, 5))
    assert len(persistence.list_transactions(OWNER)) == 5


def test_occurrence_past_end_date_deactivates_without_firing() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, pattern="daily", startDate=date(2024, 11, 1))
    persistence.store.rules[rule["id"]]["recurrence_end_date"] = date(2024, 10, 31)

    report = ExecutionEngine(persistence).run_due(date(2024, 11, 2))

    assert report.fired == 0
    assert report.deactivated == 1
    assert persistence.get_rule(OWNER, rule["id"])["is_active"] is False
    assert persistence.list_transactions(OWNER) == []


def test_process_due_now_uses_engine_clock() -> None:
    persistence = InMemoryPersistence()
    make_rule(persistence, pattern="daily", startDate=date(2024, 12, 1))
    engine = ExecutionEngine(persistence, clock=lambda: date(2024, 12, 2))

    report = engine.process_due_now()

    assert report.as_of == date(2024, 12, 2)
    assert report.fired == 2


def test_monthly_rule_fires_on_each_due_day_until_end_date() -> None:
    persistence = InMemoryPersistence()
    rule = make_rule(persistence, recurrenceEndDate=date(2024, 3, 15))
    engine = ExecutionEngine(persistence)

    engine.run_due(date(2024, 1, 15))
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 2, 15)
    engine.run_due(date(2024, 2, 15))
    assert persistence.get_rule(OWNER, rule["id"])["next_execution_date"] == date(2024, 3, 15)
    engine.run_due(date(2024, 3, 15))

    assert persistence.get_rule(OWNER, rule["id"])["is_active"] is False
    assert len(persistence.list_executions(OWNER, rule["id"])) == 3


def test_failing_stale_claim_cleanup_does_not_block_due_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    persistence = InMemoryPersistence()
    first = make_rule(persistence, pattern="daily", startDate=date(2024, 8, 1))
    make_rule(persistence, pattern="daily", startDate=date(2024, 8, 1))
    persistence.insert_execution(first["id"], date(2024, 7, 1), InMemoryStore.now() - timedelta(hours=3))

    def broken_lookup(rule_id: UUID, execution_date: date) -> None:
        raise PersistenceError("database error: OperationalError")

    monkeypatch.setattr(persistence, "find_occurrence_transaction", broken_lookup)

    report = ExecutionEngine(persistence).run_due(date(2024, 8, 1))

    assert report.attempted == 2
    assert report.fired == 2
    assert report.failed == []
    assert len(persistence.list_transactions(OWNER)) == 2
    assert persistence.get_execution(first["id"], date(2024, 7, 1)) is not None


def test_unavailable_stale_claim_listing_does_not_block_due_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    persistence = InMemoryPersistence()
    make_rule(persistence, pattern="daily", startDate=date(2024, 8, 1))

    def broken_listing(claimed_before: object) -> list:
        raise PersistenceError("database error: OperationalError")

    monkeypatch.setattr(persistence, "list_stale_executions", broken_listing)

    report = ExecutionEngine(persistence).run_due(date(2024, 8, 1))

    assert report.fired == 1
    assert report.failed == []
