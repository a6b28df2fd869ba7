"""
Main Orchestrator for PocketLedger

This module ties together all the components:
1. The ledger store selected by configuration
2. The transaction engine and catalog services on top of it
3. The request handlers for each resource
4. The three batch jobs (recurring, FX refresh, reconciliation)

DESIGN DECISION: Components share ONE store and ONE audit logger per
process (or per job run). Nothing here holds ledger state: every
consistency guarantee comes from the store's conditional writes, so any
number of processes can run these components side by side.
"""

import functools
from dataclasses import dataclass
from typing import Optional

from pocketledger.api import (
    AccountsHandler,
    BudgetsHandler,
    CategoriesHandler,
    RecurringRulesHandler,
    TransactionsHandler,
)
from pocketledger.audit import AuditLogger
from pocketledger.config import Settings, StoreSettings, get_settings
from pocketledger.jobs import BalanceReconciler, FxRefresher, RecurringMaterializer
from pocketledger.ledger import (
    AccountService,
    BudgetService,
    CategoryService,
    RecurringRuleService,
    TransactionEngine,
)
from pocketledger.services.fx import OpenErApiRateProvider, load_rate_table
from pocketledger.services.storage import (
    InMemoryLedgerStore,
    LedgerStoreInterface,
    SQLLedgerStore,
)


def create_store(store_settings: Optional[StoreSettings] = None) -> LedgerStoreInterface:
    """
    Build the configured ledger store.

    The in-memory store lives only as long as the process; use the SQL
    backend for anything that must survive a restart.
    """
    store_settings = store_settings or get_settings().store
    if store_settings.backend == "sql":
        return SQLLedgerStore.from_url(store_settings.url, echo=store_settings.echo)
    return InMemoryLedgerStore()


@dataclass
class AppComponents:
    """Everything a host needs to serve requests."""
    store: LedgerStoreInterface
    audit_logger: AuditLogger
    engine: TransactionEngine
    accounts: AccountService
    categories: CategoryService
    budgets: BudgetService
    rules: RecurringRuleService
    transactions_handler: TransactionsHandler
    accounts_handler: AccountsHandler
    categories_handler: CategoriesHandler
    budgets_handler: BudgetsHandler
    rules_handler: RecurringRulesHandler


def create_app_components(
    store: Optional[LedgerStoreInterface] = None,
    settings: Optional[Settings] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> AppComponents:
    """
    Factory function to create all request-side components.

    Args:
        store: Store to use. Built from settings when omitted.
        settings: Settings to use. Defaults to get_settings().
        audit_logger: Shared audit logger. When omitted, one that only
            writes to the structured log, since it lives as long as the app.
    """
    settings = settings or get_settings()
    store = store or create_store(settings.store)
    audit_logger = audit_logger or AuditLogger(keep_events=False)

    engine = TransactionEngine(store, audit_logger=audit_logger)
    accounts = AccountService(store, audit_logger=audit_logger)
    categories = CategoryService(store, audit_logger=audit_logger)
    budgets = BudgetService(
        store,
        audit_logger=audit_logger,
        default_alert_threshold=settings.app.default_alert_threshold,
    )
    rules = RecurringRuleService(store, audit_logger=audit_logger)

    return AppComponents(
        store=store,
        audit_logger=audit_logger,
        engine=engine,
        accounts=accounts,
        categories=categories,
        budgets=budgets,
        rules=rules,
        transactions_handler=TransactionsHandler(engine),
        accounts_handler=AccountsHandler(accounts),
        categories_handler=CategoriesHandler(categories),
        budgets_handler=BudgetsHandler(budgets),
        rules_handler=RecurringRulesHandler(rules),
    )


# =============================================================================
# JOB FACTORIES
# =============================================================================

def create_recurring_job(
    store: LedgerStoreInterface,
    settings: Optional[Settings] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> RecurringMaterializer:
    settings = settings or get_settings()
    return RecurringMaterializer(
        store,
        audit_logger=audit_logger,
        page_size=settings.jobs.page_size,
    )


def create_fx_refresher(
    store: LedgerStoreInterface,
    settings: Optional[Settings] = None,
    audit_logger: Optional[AuditLogger] = None,
    provider: Optional[OpenErApiRateProvider] = None,
    offline: bool = False,
) -> FxRefresher:
    """
    Build the FX job with its rate loader.

    With offline=True only the fallback table is used. Otherwise the
    caller owns the provider and should close() it after the run.
    """
    settings = settings or get_settings()
    fx = settings.fx
    audit_logger = audit_logger or AuditLogger()
    if offline:
        provider = None
    elif provider is None:
        provider = OpenErApiRateProvider(
            api_url=fx.api_url,
            timeout=fx.timeout_seconds,
        )
    loader = functools.partial(
        load_rate_table,
        fx.base_currency,
        provider,
        fx.fallback_rates,
        audit_logger,
    )
    return FxRefresher(
        store,
        loader,
        base_currency=fx.base_currency,
        epsilon=fx.epsilon,
        audit_logger=audit_logger,
        page_size=settings.jobs.page_size,
    )


def create_reconciler(
    store: LedgerStoreInterface,
    settings: Optional[Settings] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> BalanceReconciler:
    settings = settings or get_settings()
    return BalanceReconciler(
        store,
        audit_logger=audit_logger,
        page_size=settings.jobs.page_size,
    )
