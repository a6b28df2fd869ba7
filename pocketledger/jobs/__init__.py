"""
Batch Jobs Package

Scheduled, resumable scans over the ledger store: recurring rule
materialization, FX re-pricing and balance reconciliation.
"""

from pocketledger.jobs.fx_refresh import FxRefresher, FxRunReport
from pocketledger.jobs.reconcile import AccountDrift, BalanceReconciler, ReconcileReport
from pocketledger.jobs.recurring import (
    RecurringMaterializer,
    RecurringRunReport,
    compute_next_run,
)

__all__ = [
    "AccountDrift",
    "BalanceReconciler",
    "FxRefresher",
    "FxRunReport",
    "ReconcileReport",
    "RecurringMaterializer",
    "RecurringRunReport",
    "compute_next_run",
]
