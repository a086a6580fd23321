from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import settings
from .errors import PersistenceError
from .schemas import RecurrencePattern, RecurringRuleCreate, RecurringRuleUpdate
from .store import InMemoryStore

logger = logging.getLogger(__name__)

ADVANCE_FIELDS = ("next_execution_date", "last_executed_date", "is_active")


def _anchor_for(pattern: str, start: date) -> int | None:
    if pattern in {RecurrencePattern.monthly.value, RecurrencePattern.yearly.value}:
        return start.day
    return None


def _merge_rule_update(current: dict[str, Any], payload: RecurringRuleUpdate) -> dict[str, Any]:
    if not current["is_active"]:
        raise HTTPException(status_code=409, detail=f"recurring rule is deactivated: {current['id']}")
    updates = payload.model_dump(exclude_unset=True)
    merged = current.copy()
    if updates.get("description") is not None:
        merged["description"] = updates["description"]
    if updates.get("amount") is not None:
        merged["amount"] = updates["amount"]
    if "category" in updates:
        merged["category"] = updates["category"]
    if updates.get("transactionType") is not None:
        merged["transaction_type"] = updates["transactionType"].value
    if updates.get("interval") is not None:
        merged["recurrence_interval"] = updates["interval"]
    if "recurrenceEndDate" in updates:
        merged["recurrence_end_date"] = updates["recurrenceEndDate"]
    schedule_reset = False
    if updates.get("pattern") is not None:
        merged["pattern"] = updates["pattern"].value
        schedule_reset = True
    if updates.get("nextExecutionDate") is not None:
        merged["next_execution_date"] = updates["nextExecutionDate"]
        schedule_reset = True
    if schedule_reset:
        merged["anchor_day"] = _anchor_for(merged["pattern"], merged["next_execution_date"])
    end = merged.get("recurrence_end_date")
    if end is not None and end < merged["next_execution_date"]:
        raise ValueError("recurrenceEndDate must not be before nextExecutionDate")
    return merged


class Persistence:
    def create_rule(self, user_id: UUID, payload: RecurringRuleCreate) -> dict[str, Any]:
        raise NotImplementedError

    def get_rule(self, user_id: UUID, rule_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def list_rules(self, user_id: UUID, active_only: bool = False) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_rule(self, user_id: UUID, rule_id: UUID, payload: RecurringRuleUpdate) -> dict[str, Any]:
        raise NotImplementedError

    def deactivate_rule(self, user_id: UUID, rule_id: UUID) -> None:
        raise NotImplementedError

    def delete_rule(self, user_id: UUID, rule_id: UUID) -> None:
        raise NotImplementedError

    def find_due_rules(self, as_of: date) -> list[dict[str, Any]]:
        raise NotImplementedError

    def conditional_advance(self, rule_id: UUID, user_id: UUID, expected_date: date, changes: dict[str, Any]) -> bool:
        """Apply ``changes`` only while the rule is active and still due on ``expected_date``."""
        raise NotImplementedError

    def insert_execution(self, rule_id: UUID, execution_date: date, claimed_at: datetime) -> dict[str, Any] | None:
        """Insert an execution record; ``None`` when (rule_id, execution_date) already exists."""
        raise NotImplementedError

    def get_execution(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        raise NotImplementedError

    def complete_execution(self, execution_id: UUID, transaction_id: UUID) -> None:
        raise NotImplementedError

    def delete_execution(self, execution_id: UUID) -> None:
        raise NotImplementedError

    def list_stale_executions(self, claimed_before: datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_executions(self, user_id: UUID, rule_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_ledger_transaction(self, user_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def find_occurrence_transaction(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_transactions(self, user_id: UUID, start: date | None = None, end: date | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()

    def _owned_rule(self, user_id: UUID, rule_id: UUID) -> dict[str, Any]:
        row = self.store.rules.get(rule_id)
        if not row or row["user_id"] != user_id:
            raise HTTPException(status_code=404, detail=f"recurring rule not found: {rule_id}")
        return row

    def create_rule(self, user_id: UUID, payload: RecurringRuleCreate) -> dict[str, Any]:
        entity_id = self.store.make_id()
        now = self.store.now()
        row = {
            "id": entity_id,
            "user_id": user_id,
            "description": payload.description,
            "amount": payload.amount,
            "category": payload.category,
            "transaction_type": payload.transactionType.value,
            "pattern": payload.pattern.value,
            "recurrence_interval": payload.interval,
            "anchor_day": _anchor_for(payload.pattern.value, payload.startDate),
            "next_execution_date": payload.startDate,
            "last_executed_date": None,
            "recurrence_end_date": payload.recurrenceEndDate,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        with self.store.lock:
            self.store.rules[entity_id] = row
        return row.copy()

    def get_rule(self, user_id: UUID, rule_id: UUID) -> dict[str, Any]:
        return self._owned_rule(user_id, rule_id).copy()

    def list_rules(self, user_id: UUID, active_only: bool = False) -> list[dict[str, Any]]:
        rows = [
            r.copy()
            for r in self.store.rules.values()
            if r["user_id"] == user_id and (r["is_active"] or not active_only)
        ]
        return sorted(rows, key=lambda r: (r["next_execution_date"], r["created_at"]))

    def update_rule(self, user_id: UUID, rule_id: UUID, payload: RecurringRuleUpdate) -> dict[str, Any]:
        with self.store.lock:
            current = self._owned_rule(user_id, rule_id)
            merged = _merge_rule_update(current, payload)
            merged["updated_at"] = self.store.now()
            self.store.rules[rule_id] = merged
        return merged.copy()

    def deactivate_rule(self, user_id: UUID, rule_id: UUID) -> None:
        with self.store.lock:
            row = self._owned_rule(user_id, rule_id)
            row["is_active"] = False
            row["updated_at"] = self.store.now()

    def delete_rule(self, user_id: UUID, rule_id: UUID) -> None:
        with self.store.lock:
            self._owned_rule(user_id, rule_id)
            for key, execution_id in list(self.store.execution_keys.items()):
                if key[0] == rule_id:
                    del self.store.execution_keys[key]
                    self.store.executions.pop(execution_id, None)
            del self.store.rules[rule_id]

    def find_due_rules(self, as_of: date) -> list[dict[str, Any]]:
        with self.store.lock:
            rows = [r.copy() for r in self.store.rules.values() if r["is_active"] and r["next_execution_date"] <= as_of]
        return sorted(rows, key=lambda r: r["next_execution_date"])

    def conditional_advance(self, rule_id: UUID, user_id: UUID, expected_date: date, changes: dict[str, Any]) -> bool:
        with self.store.lock:
            row = self.store.rules.get(rule_id)
            if (
                row is None
                or row["user_id"] != user_id
                or not row["is_active"]
                or row["next_execution_date"] != expected_date
            ):
                return False
            row.update({k: v for k, v in changes.items() if k in ADVANCE_FIELDS})
            row["updated_at"] = self.store.now()
            return True

    def insert_execution(self, rule_id: UUID, execution_date: date, claimed_at: datetime) -> dict[str, Any] | None:
        with self.store.lock:
            if (rule_id, execution_date) in self.store.execution_keys:
                return None
            entity_id = self.store.make_id()
            row = {
                "id": entity_id,
                "rule_id": rule_id,
                "execution_date": execution_date,
                "transaction_id": None,
                "claimed_at": claimed_at,
                "completed_at": None,
            }
            self.store.executions[entity_id] = row
            self.store.execution_keys[(rule_id, execution_date)] = entity_id
        return row.copy()

    def get_execution(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        with self.store.lock:
            execution_id = self.store.execution_keys.get((rule_id, execution_date))
            if execution_id is None:
                return None
            return self.store.executions[execution_id].copy()

    def complete_execution(self, execution_id: UUID, transaction_id: UUID) -> None:
        with self.store.lock:
            row = self.store.executions.get(execution_id)
            if row is None:
                raise PersistenceError(f"execution record not found: {execution_id}")
            row["transaction_id"] = transaction_id
            row["completed_at"] = self.store.now()

    def delete_execution(self, execution_id: UUID) -> None:
        with self.store.lock:
            row = self.store.executions.pop(execution_id, None)
            if row is not None:
                self.store.execution_keys.pop((row["rule_id"], row["execution_date"]), None)

    def list_stale_executions(self, claimed_before: datetime) -> list[dict[str, Any]]:
        with self.store.lock:
            return [
                row.copy()
                for row in self.store.executions.values()
                if row["transaction_id"] is None and row["claimed_at"] < claimed_before
            ]

    def list_executions(self, user_id: UUID, rule_id: UUID) -> list[dict[str, Any]]:
        self._owned_rule(user_id, rule_id)
        rows = [e.copy() for e in self.store.executions.values() if e["rule_id"] == rule_id]
        return sorted(rows, key=lambda e: e["execution_date"], reverse=True)

    def create_ledger_transaction(self, user_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        entity_id = self.store.make_id()
        row = {
            "id": entity_id,
            "user_id": user_id,
            "description": payload["description"],
            "amount": Decimal(payload["amount"]),
            "category": payload.get("category"),
            "transaction_type": payload["transaction_type"],
            "transaction_date": payload["transaction_date"],
            "source_rule_id": payload.get("source_rule_id"),
            "created_at": self.store.now(),
        }
        with self.store.lock:
            self.store.transactions[entity_id] = row
        return row.copy()

    def find_occurrence_transaction(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        with self.store.lock:
            for row in self.store.transactions.values():
                if row["source_rule_id"] == rule_id and row["transaction_date"] == execution_date:
                    return row.copy()
        return None

    def list_transactions(self, user_id: UUID, start: date | None = None, end: date | None = None) -> list[dict[str, Any]]:
        rows = [
            t.copy()
            for t in self.store.transactions.values()
            if t["user_id"] == user_id
            and (start is None or t["transaction_date"] >= start)
            and (end is None or t["transaction_date"] <= end)
        ]
        return sorted(rows, key=lambda t: (t["transaction_date"], t["created_at"]))


def _as_uuid(value: Any) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def _as_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _db_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _db_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S.%f")


RULE_COLUMNS = """
    id, user_id, description, amount, category, transaction_type, pattern, recurrence_interval,
    anchor_day, next_execution_date, last_executed_date, recurrence_end_date, is_active, created_at, updated_at
"""
EXECUTION_COLUMNS = "id, rule_id, execution_date, transaction_id, claimed_at, completed_at"
TRANSACTION_COLUMNS = """
    id, user_id, description, amount, category, transaction_type, transaction_date, source_rule_id, created_at
"""


class SqlPersistence(Persistence):
    """SQLAlchemy-backed persistence; the SQL is kept portable between Postgres and SQLite."""

    def __init__(self, database_url: str, default_user_id: str) -> None:
        self.engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self.default_user_id = default_user_id
        self._schema_ready = False

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql), params or {})
                if result.returns_rows:
                    return [dict(row._mapping) for row in result.fetchall()]
                return []
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error: {exc.__class__.__name__}") from exc

    def _execute(self, sql: str, params: dict[str, Any]) -> int:
        try:
            with self.engine.begin() as conn:
                return conn.execute(text(sql), params).rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error: {exc.__class__.__name__}") from exc

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        self._run(
            """
            create table if not exists recurring_rules (
              id varchar(36) primary key,
              user_id varchar(36) not null,
              description text not null,
              amount numeric(14,2) not null,
              category text,
              transaction_type text not null default 'expense',
              pattern text not null,
              recurrence_interval integer not null default 1,
              anchor_day integer,
              next_execution_date date not null,
              last_executed_date date,
              recurrence_end_date date,
              is_active boolean not null,
              created_at timestamp not null,
              updated_at timestamp not null
            )
            """
        )
        self._run("create index if not exists idx_recurring_rules_due on recurring_rules(is_active, next_execution_date)")
        self._run("create index if not exists idx_recurring_rules_user on recurring_rules(user_id)")
        self._run(
            """
            create table if not exists recurring_rule_executions (
              id varchar(36) primary key,
              rule_id varchar(36) not null references recurring_rules(id) on delete cascade,
              execution_date date not null,
              transaction_id varchar(36),
              claimed_at timestamp not null,
              completed_at timestamp,
              constraint uq_rule_execution_date unique (rule_id, execution_date)
            )
            """
        )
        self._run(
            """
            create table if not exists ledger_transactions (
              id varchar(36) primary key,
              user_id varchar(36) not null,
              description text not null,
              amount numeric(14,2) not null,
              category text,
              transaction_type text not null,
              transaction_date date not null,
              source_rule_id varchar(36),
              created_at timestamp not null
            )
            """
        )
        self._run("create index if not exists idx_ledger_transactions_user on ledger_transactions(user_id, transaction_date)")
        self._schema_ready = True

    @staticmethod
    def _rule_row(row: dict[str, Any]) -> dict[str, Any]:
        return {
            **row,
            "id": _as_uuid(row["id"]),
            "user_id": _as_uuid(row["user_id"]),
            "amount": Decimal(str(row["amount"])),
            "next_execution_date": _as_date(row["next_execution_date"]),
            "last_executed_date": _as_date(row["last_executed_date"]),
            "recurrence_end_date": _as_date(row["recurrence_end_date"]),
            "is_active": bool(row["is_active"]),
            "created_at": _as_datetime(row["created_at"]),
            "updated_at": _as_datetime(row["updated_at"]),
        }

    @staticmethod
    def _execution_row(row: dict[str, Any]) -> dict[str, Any]:
        return {
            **row,
            "id": _as_uuid(row["id"]),
            "rule_id": _as_uuid(row["rule_id"]),
            "execution_date": _as_date(row["execution_date"]),
            "transaction_id": _as_uuid(row["transaction_id"]),
            "claimed_at": _as_datetime(row["claimed_at"]),
            "completed_at": _as_datetime(row["completed_at"]),
        }

    @staticmethod
    def _transaction_row(row: dict[str, Any]) -> dict[str, Any]:
        return {
            **row,
            "id": _as_uuid(row["id"]),
            "user_id": _as_uuid(row["user_id"]),
            "amount": Decimal(str(row["amount"])),
            "transaction_date": _as_date(row["transaction_date"]),
            "source_rule_id": _as_uuid(row["source_rule_id"]),
            "created_at": _as_datetime(row["created_at"]),
        }

    def _write_rule(self, row: dict[str, Any], expected_date: date | None = None) -> int:
        """Insert ``row``, or update it when ``expected_date`` is given.

        An update only applies while the stored rule is still active and due on
        ``expected_date``; the return value is the number of rows written.
        """
        params = {
            "id": str(row["id"]),
            "user_id": str(row["user_id"]),
            "description": row["description"],
            "amount": str(row["amount"]),
            "category": row["category"],
            "transaction_type": row["transaction_type"],
            "pattern": row["pattern"],
            "recurrence_interval": row["recurrence_interval"],
            "anchor_day": row["anchor_day"],
            "next_execution_date": _db_date(row["next_execution_date"]),
            "last_executed_date": _db_date(row["last_executed_date"]),
            "recurrence_end_date": _db_date(row["recurrence_end_date"]),
            "is_active": bool(row["is_active"]),
            "created_at": _db_timestamp(row["created_at"]),
            "updated_at": _db_timestamp(row["updated_at"]),
        }
        if expected_date is None:
            self._run(
                f"""
                insert into recurring_rules ({RULE_COLUMNS})
                values (
                  :id, :user_id, :description, :amount, :category, :transaction_type, :pattern, :recurrence_interval,
                  :anchor_day, :next_execution_date, :last_executed_date, :recurrence_end_date, :is_active, :created_at, :updated_at
                )
                """,
                params,
            )
            return 1
        params.update({"active": True, "expected": _db_date(expected_date)})
        return self._execute(
            """
            update recurring_rules
            set description = :description, amount = :amount, category = :category,
                transaction_type = :transaction_type, pattern = :pattern,
                recurrence_interval = :recurrence_interval, anchor_day = :anchor_day,
                next_execution_date = :next_execution_date, last_executed_date = :last_executed_date,
                recurrence_end_date = :recurrence_end_date, is_active = :is_active, updated_at = :updated_at
            where id = :id and user_id = :user_id and is_active = :active and next_execution_date = :expected
            """,
            params,
        )

    def create_rule(self, user_id: UUID, payload: RecurringRuleCreate) -> dict[str, Any]:
        self._ensure_schema()
        now = InMemoryStore.now()
        row = {
            "id": InMemoryStore.make_id(),
            "user_id": user_id,
            "description": payload.description,
            "amount": payload.amount,
            "category": payload.category,
            "transaction_type": payload.transactionType.value,
            "pattern": payload.pattern.value,
            "recurrence_interval": payload.interval,
            "anchor_day": _anchor_for(payload.pattern.value, payload.startDate),
            "next_execution_date": payload.startDate,
            "last_executed_date": None,
            "recurrence_end_date": payload.recurrenceEndDate,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        self._write_rule(row)
        return self.get_rule(user_id, row["id"])

    def get_rule(self, user_id: UUID, rule_id: UUID) -> dict[str, Any]:
        self._ensure_schema()
        rows = self._run(
            f"select {RULE_COLUMNS} from recurring_rules where id = :id and user_id = :user_id",
            {"id": str(rule_id), "user_id": str(user_id)},
        )
        if not rows:
            raise HTTPException(status_code=404, detail=f"recurring rule not found: {rule_id}")
        return self._rule_row(rows[0])

    def list_rules(self, user_id: UUID, active_only: bool = False) -> list[dict[str, Any]]:
        self._ensure_schema()
        sql = f"select {RULE_COLUMNS} from recurring_rules where user_id = :user_id"
        params: dict[str, Any] = {"user_id": str(user_id)}
        if active_only:
            sql += " and is_active = :active"
            params["active"] = True
        rows = self._run(sql + " order by next_execution_date, created_at", params)
        return [self._rule_row(r) for r in rows]

    def update_rule(self, user_id: UUID, rule_id: UUID, payload: RecurringRuleUpdate) -> dict[str, Any]:
        current = self.get_rule(user_id, rule_id)
        merged = _merge_rule_update(current, payload)
        merged["updated_at"] = InMemoryStore.now()
        if not self._write_rule(merged, expected_date=current["next_execution_date"]):
            raise HTTPException(status_code=409, detail=f"recurring rule changed while editing: {rule_id}")
        return self.get_rule(user_id, rule_id)

    def deactivate_rule(self, user_id: UUID, rule_id: UUID) -> None:
        self._ensure_schema()
        updated = self._execute(
            "update recurring_rules set is_active = :active, updated_at = :now where id = :id and user_id = :user_id",
            {"active": False, "now": _db_timestamp(InMemoryStore.now()), "id": str(rule_id), "user_id": str(user_id)},
        )
        if not updated:
            raise HTTPException(status_code=404, detail=f"recurring rule not found: {rule_id}")

    def delete_rule(self, user_id: UUID, rule_id: UUID) -> None:
        self.get_rule(user_id, rule_id)
        # explicit cascade, SQLite does not enforce foreign keys by default
        self._run("delete from recurring_rule_executions where rule_id = :id", {"id": str(rule_id)})
        self._run("delete from recurring_rules where id = :id and user_id = :user_id", {"id": str(rule_id), "user_id": str(user_id)})

    def find_due_rules(self, as_of: date) -> list[dict[str, Any]]:
        self._ensure_schema()
        rows = self._run(
            f"""
            select {RULE_COLUMNS} from recurring_rules
            where is_active = :active and next_execution_date <= :as_of
            order by next_execution_date
            """,
            {"active": True, "as_of": _db_date(as_of)},
        )
        return [self._rule_row(r) for r in rows]

    def conditional_advance(self, rule_id: UUID, user_id: UUID, expected_date: date, changes: dict[str, Any]) -> bool:
        self._ensure_schema()
        fields = [k for k in ADVANCE_FIELDS if k in changes]
        params: dict[str, Any] = {
            "id": str(rule_id),
            "user_id": str(user_id),
            "expected": _db_date(expected_date),
            "active": True,
            "now": _db_timestamp(InMemoryStore.now()),
        }
        for key in fields:
            value = changes[key]
            params[f"new_{key}"] = _db_date(value) if isinstance(value, date) else value
        assignments = ", ".join(f"{key} = :new_{key}" for key in fields)
        updated = self._execute(
            f"""
            update recurring_rules set {assignments}, updated_at = :now
            where id = :id and user_id = :user_id and is_active = :active and next_execution_date = :expected
            """,
            params,
        )
        return updated == 1

    def insert_execution(self, rule_id: UUID, execution_date: date, claimed_at: datetime) -> dict[str, Any] | None:
        self._ensure_schema()
        entity_id = InMemoryStore.make_id()
        try:
            self._run(
                f"""
                insert into recurring_rule_executions ({EXECUTION_COLUMNS})
                values (:id, :rule_id, :execution_date, null, :claimed_at, null)
                """,
                {
                    "id": str(entity_id),
                    "rule_id": str(rule_id),
                    "execution_date": _db_date(execution_date),
                    "claimed_at": _db_timestamp(claimed_at),
                },
            )
        except IntegrityError:
            return None
        return {
            "id": entity_id,
            "rule_id": rule_id,
            "execution_date": execution_date,
            "transaction_id": None,
            "claimed_at": claimed_at,
            "completed_at": None,
        }

    def get_execution(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        self._ensure_schema()
        rows = self._run(
            f"select {EXECUTION_COLUMNS} from recurring_rule_executions where rule_id = :rule_id and execution_date = :execution_date",
            {"rule_id": str(rule_id), "execution_date": _db_date(execution_date)},
        )
        return self._execution_row(rows[0]) if rows else None

    def complete_execution(self, execution_id: UUID, transaction_id: UUID) -> None:
        updated = self._execute(
            "update recurring_rule_executions set transaction_id = :transaction_id, completed_at = :now where id = :id",
            {"transaction_id": str(transaction_id), "now": _db_timestamp(InMemoryStore.now()), "id": str(execution_id)},
        )
        if not updated:
            raise PersistenceError(f"execution record not found: {execution_id}")

    def delete_execution(self, execution_id: UUID) -> None:
        self._run("delete from recurring_rule_executions where id = :id", {"id": str(execution_id)})

    def list_stale_executions(self, claimed_before: datetime) -> list[dict[str, Any]]:
        self._ensure_schema()
        rows = self._run(
            f"select {EXECUTION_COLUMNS} from recurring_rule_executions where transaction_id is null and claimed_at < :cutoff",
            {"cutoff": _db_timestamp(claimed_before)},
        )
        return [self._execution_row(r) for r in rows]

    def list_executions(self, user_id: UUID, rule_id: UUID) -> list[dict[str, Any]]:
        self.get_rule(user_id, rule_id)
        rows = self._run(
            f"select {EXECUTION_COLUMNS} from recurring_rule_executions where rule_id = :rule_id order by execution_date desc",
            {"rule_id": str(rule_id)},
        )
        return [self._execution_row(r) for r in rows]

    def create_ledger_transaction(self, user_id: UUID, payload: dict[str, Any]) -> dict[str, Any]:
        self._ensure_schema()
        entity_id = InMemoryStore.make_id()
        source_rule_id = payload.get("source_rule_id")
        self._run(
            f"""
            insert into ledger_transactions ({TRANSACTION_COLUMNS})
            values (:id, :user_id, :description, :amount, :category, :transaction_type, :transaction_date, :source_rule_id, :created_at)
            """,
            {
                "id": str(entity_id),
                "user_id": str(user_id),
                "description": payload["description"],
                "amount": str(payload["amount"]),
                "category": payload.get("category"),
                "transaction_type": payload["transaction_type"],
                "transaction_date": _db_date(payload["transaction_date"]),
                "source_rule_id": str(source_rule_id) if source_rule_id else None,
                "created_at": _db_timestamp(InMemoryStore.now()),
            },
        )
        rows = self._run(f"select {TRANSACTION_COLUMNS} from ledger_transactions where id = :id", {"id": str(entity_id)})
        return self._transaction_row(rows[0])

    def find_occurrence_transaction(self, rule_id: UUID, execution_date: date) -> dict[str, Any] | None:
        self._ensure_schema()
        rows = self._run(
            f"""
            select {TRANSACTION_COLUMNS} from ledger_transactions
            where source_rule_id = :rule_id and transaction_date = :transaction_date
            order by created_at
            """,
            {"rule_id": str(rule_id), "transaction_date": _db_date(execution_date)},
        )
        return self._transaction_row(rows[0]) if rows else None

    def list_transactions(self, user_id: UUID, start: date | None = None, end: date | None = None) -> list[dict[str, Any]]:
        self._ensure_schema()
        sql = f"select {TRANSACTION_COLUMNS} from ledger_transactions where user_id = :user_id"
        params: dict[str, Any] = {"user_id": str(user_id)}
        if start is not None:
            sql += " and transaction_date >= :start"
            params["start"] = _db_date(start)
        if end is not None:
            sql += " and transaction_date <= :end"
            params["end"] = _db_date(end)
        rows = self._run(sql + " order by transaction_date, created_at", params)
        return [self._transaction_row(r) for r in rows]


def get_persistence() -> Persistence:
    if settings.storage_backend in {"postgres", "sql"}:
        logger.info("Using SQL persistence")
        return SqlPersistence(settings.database_url, settings.default_user_id)
    logger.info("Using in-memory persistence")
    return InMemoryPersistence()
