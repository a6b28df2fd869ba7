"""Tests for the scheduler CLI and the component factories."""

import asyncio
from decimal import Decimal

import pytest
from typer.testing import CliRunner

from pocketledger import cli
from pocketledger.config import Settings, StoreSettings, get_settings
from pocketledger.ledger import (
    AccountService,
    CategoryService,
    RecurringRuleService,
    TransactionEngine,
)
from pocketledger.orchestrator import (
    create_app_components,
    create_fx_refresher,
    create_store,
)
from pocketledger.api import TransactionsHandler
from pocketledger.services.storage import (
    Collection,
    InMemoryLedgerStore,
    SQLLedgerStore,
    UpdateItem,
)

from conftest import USER


runner = CliRunner()


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    monkeypatch.delenv("LEDGER_STORE_BACKEND", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def shared_store(monkeypatch):
    store = InMemoryLedgerStore()
    monkeypatch.setattr(cli, "create_store", lambda settings=None: store)
    return store


def seed(store, currency="USD", with_rule=False, with_txn=False):
    async def _seed():
        account = await AccountService(store).create(USER, {
            "name": "Checking", "type": "bank", "currency": currency, "openingBalance": "100",
        })
        category = await CategoryService(store).create(USER, {"name": "Bills", "type": "expense"})
        if with_rule:
            await RecurringRuleService(store).create(USER, {
                "frequency": "monthly",
                "nextRun": "2024-01-31T00:00:00Z",
                "template": {
                    "accountId": account.account_id,
                    "categoryId": category.category_id,
                    "type": "expense",
                    "amount": "10",
                    "currency": currency,
                },
            })
        if with_txn:
            await TransactionEngine(store).create_transaction(USER, {
                "accountId": account.account_id,
                "categoryId": category.category_id,
                "type": "expense",
                "amount": "40",
            })
        return account

    return asyncio.run(_seed())


def read(coro):
    return asyncio.run(coro)


class TestRunRecurring:
    """Tests for the run-recurring command."""

    def test_empty_store(self, shared_store):
        """Test a run over no rules succeeds."""
        result = runner.invoke(cli.app, ["run-recurring"])
        assert result.exit_code == 0
        assert "Recurring run" in result.output

    def test_materializes_due_rule(self, shared_store):
        """Test a due rule is fired by the command."""
        account = seed(shared_store, with_rule=True)
        result = runner.invoke(cli.app, ["run-recurring", "--max-pages", "5"])
        assert result.exit_code == 0

        stored = read(shared_store.get_item(Collection.ACCOUNTS, USER, account.account_id))
        assert Decimal(stored["currentBalance"]) == Decimal("90")

    def test_rejects_zero_pages(self, shared_store):
        """Test --max-pages must be positive."""
        result = runner.invoke(cli.app, ["run-recurring", "--max-pages", "0"])
        assert result.exit_code != 0


class TestRefreshFx:
    """Tests for the refresh-fx command."""

    def test_offline_uses_fallback(self, shared_store, monkeypatch):
        """Test --offline re-prices with the fallback table only."""
        monkeypatch.setenv("FX_BASE_CURRENCY", "USD")
        monkeypatch.setenv("FX_RATES_FALLBACK", '{"GBP": "1.25"}')
        seed(shared_store, currency="GBP", with_txn=True)

        result = runner.invoke(cli.app, ["refresh-fx", "--offline"])
        assert result.exit_code == 0
        assert "fallback rates used" in result.output

        (item,) = read(shared_store.query(Collection.TRANSACTIONS, USER, begins_with="DT#"))
        assert Decimal(item["fx_rate_to_base"]) == Decimal("1.25")
        assert Decimal(item["amount_base"]) == Decimal("50")


class TestReconcile:
    """Tests for the reconcile command."""

    def test_clean_ledger_exits_zero(self, shared_store):
        """Test no drift means exit code 0."""
        seed(shared_store, with_txn=True)
        result = runner.invoke(cli.app, ["reconcile"])
        assert result.exit_code == 0

    def test_drift_exits_one(self, shared_store):
        """Test drift is printed and fails the command."""
        account = seed(shared_store, with_txn=True)
        read(shared_store.update_item(UpdateItem(
            collection=Collection.ACCOUNTS,
            user_id=USER,
            key=account.account_id,
            increments={"currentBalance": Decimal("3")},
        )))
        result = runner.invoke(cli.app, ["reconcile"])
        assert result.exit_code == 1
        assert "Drift" in result.output


class TestStoreBackend:
    """Tests for the store the scheduler commands run against."""

    def test_default_backend_is_sql(self):
        """Test the default store persists across processes."""
        assert StoreSettings().backend == "sql"

    @pytest.mark.parametrize("command", ["run-recurring", "refresh-fx", "reconcile"])
    def test_memory_backend_refused(self, shared_store, monkeypatch, command):
        """Test batch commands will not run over an empty in-process store."""
        monkeypatch.setenv("LEDGER_STORE_BACKEND", "memory")
        seed(shared_store, with_rule=True, with_txn=True)
        result = runner.invoke(cli.app, [command])
        assert result.exit_code == 2
        assert "LEDGER_STORE_BACKEND=sql" in result.output
        assert len(read(shared_store.query(Collection.TRANSACTIONS, USER))) == 1


class TestCheckConfig:
    """Tests for the check-config command."""

    def test_valid_settings(self, monkeypatch):
        """Test defaults validate."""
        monkeypatch.delenv("JOBS_PAGE_SIZE", raising=False)
        result = runner.invoke(cli.app, ["check-config"])
        assert result.exit_code == 0
        assert "jobs" in result.output

    def test_invalid_settings(self, monkeypatch):
        """Test an out-of-range value fails the check."""
        monkeypatch.setenv("JOBS_PAGE_SIZE", "0")
        result = runner.invoke(cli.app, ["check-config"])
        assert result.exit_code == 1
        assert "error" in result.output


class TestOrchestrator:
    """Tests for the component factories."""

    def test_create_store_backends(self):
        """Test the configured backend is built."""
        assert isinstance(create_store(StoreSettings(backend="memory")), InMemoryLedgerStore)
        sql_store = create_store(StoreSettings(backend="sql", url="sqlite://"))
        try:
            assert isinstance(sql_store, SQLLedgerStore)
        finally:
            sql_store.close()

    def test_app_components_share_store(self):
        """Test every component is wired to the same store and logger."""
        store = InMemoryLedgerStore()
        components = create_app_components(store=store, settings=Settings())
        assert isinstance(components.transactions_handler, TransactionsHandler)
        assert components.engine.store is store
        assert components.accounts.store is store
        assert components.budgets.audit_logger is components.audit_logger

    @pytest.mark.asyncio
    async def test_app_logger_does_not_retain_events(self):
        """Test the process-wide audit logger does not grow with traffic."""
        components = create_app_components(store=InMemoryLedgerStore(), settings=Settings())
        for i in range(5):
            await components.accounts.create(USER, {
                "name": f"Account {i}", "type": "bank", "currency": "USD",
            })
        assert len(components.audit_logger.events) == 0

    @pytest.mark.asyncio
    async def test_offline_refresher_has_no_provider(self, monkeypatch):
        """Test offline mode never calls the rate provider."""
        monkeypatch.setenv("FX_RATES_FALLBACK", '{"EUR": "1.1"}')
        job = create_fx_refresher(InMemoryLedgerStore(), Settings(), offline=True)
        table = await job.rate_table_loader(None)
        assert table.source == "fallback"
        assert table.rate_for("EUR") == Decimal("1.1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
