"""
PocketLedger - Source Package

A personal finance ledger: accounts, categories, transactions, budgets
and recurring rules kept mutually consistent on top of a plain
key-value store.

DESIGN PRINCIPLES:
1. A balance is only ever changed together with the transaction that explains it
2. Fail early, fail visibly
3. No silent corrections
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "PocketLedger Team"
