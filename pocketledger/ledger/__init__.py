"""
Ledger Core Package

Money arithmetic, the transaction consistency engine and the catalog
services for accounts, categories, budgets and recurring rules.
"""

from pocketledger.ledger.catalog import (
    AccountService,
    BudgetService,
    CategoryService,
    RecurringRuleService,
)
from pocketledger.ledger.engine import TransactionEngine

__all__ = [
    "AccountService",
    "BudgetService",
    "CategoryService",
    "RecurringRuleService",
    "TransactionEngine",
]
