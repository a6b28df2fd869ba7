"""
Data Models Package

This package contains all Pydantic models used in PocketLedger.
All data flowing through the system must conform to these schemas.
"""

from pocketledger.models.ledger import (
    Account,
    AccountCreate,
    AccountType,
    AccountUpdate,
    Budget,
    BudgetCreate,
    BudgetUpdate,
    Category,
    CategoryCreate,
    CategoryUpdate,
    Frequency,
    LedgerRecord,
    RecurringRule,
    RecurringRuleCreate,
    RecurringTemplate,
    Transaction,
    TransactionCreate,
    TransactionType,
    TransactionUpdate,
    build_sort_key,
    month_bounds,
    parse_payload,
    parse_timestamp,
    period_key,
    to_iso,
    utc_now,
)
from pocketledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger records
    "Account",
    "Budget",
    "Category",
    "LedgerRecord",
    "RecurringRule",
    "RecurringTemplate",
    "Transaction",
    # Enums
    "AccountType",
    "Frequency",
    "TransactionType",
    # Payloads
    "AccountCreate",
    "AccountUpdate",
    "BudgetCreate",
    "BudgetUpdate",
    "CategoryCreate",
    "CategoryUpdate",
    "RecurringRuleCreate",
    "TransactionCreate",
    "TransactionUpdate",
    # Helpers
    "build_sort_key",
    "month_bounds",
    "parse_payload",
    "parse_timestamp",
    "period_key",
    "to_iso",
    "utc_now",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
