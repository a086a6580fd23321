import threading
from datetime import datetime
from uuid import UUID, uuid4


class InMemoryStore:
    def __init__(self) -> None:
        self.rules: dict[UUID, dict] = {}
        self.executions: dict[UUID, dict] = {}
        # (rule_id, execution_date) -> execution id; plays the unique index
        self.execution_keys: dict[tuple, UUID] = {}
        self.transactions: dict[UUID, dict] = {}
        self.lock = threading.RLock()

    def clear(self) -> None:
        with self.lock:
            self.rules.clear()
            self.executions.clear()
            self.execution_keys.clear()
            self.transactions.clear()

    @staticmethod
    def make_id() -> UUID:
        return uuid4()

    @staticmethod
    def now() -> datetime:
        return datetime.utcnow()
