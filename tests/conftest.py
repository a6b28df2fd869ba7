"""
Shared fixtures.

Store-backed tests run against BOTH store implementations: the
in-memory store and the SQL store on an in-memory SQLite database.
Time is frozen through an adjustable clock so sort keys and nextRun
arithmetic are deterministic.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from pocketledger.audit import AuditLogger
from pocketledger.ledger import (
    AccountService,
    BudgetService,
    CategoryService,
    RecurringRuleService,
    TransactionEngine,
)
from pocketledger.services.storage import InMemoryLedgerStore, SQLLedgerStore


USER = "user-1"
OTHER_USER = "user-2"
FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_sql_store() -> SQLLedgerStore:
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return SQLLedgerStore(engine)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        yield InMemoryLedgerStore()
    else:
        sql_store = make_sql_store()
        yield sql_store
        sql_store.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def engine(store, audit_logger, clock):
    return TransactionEngine(store, audit_logger=audit_logger, clock=clock)


class Ledger:
    """Builds catalog records for tests."""

    def __init__(self, store, audit_logger, clock):
        self.accounts = AccountService(store, audit_logger, clock)
        self.categories = CategoryService(store, audit_logger, clock)
        self.budgets = BudgetService(store, audit_logger, clock)
        self.rules = RecurringRuleService(store, audit_logger, clock)

    async def account(self, currency="USD", opening="0", user_id=USER, name="Wallet"):
        return await self.accounts.create(user_id, {
            "name": name,
            "type": "bank",
            "currency": currency,
            "openingBalance": opening,
        })

    async def category(self, type="expense", user_id=USER, name="Groceries"):
        return await self.categories.create(user_id, {"name": name, "type": type})


@pytest.fixture
def ledger(store, audit_logger, clock):
    return Ledger(store, audit_logger, clock)
