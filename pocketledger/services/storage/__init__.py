"""
Storage Services Package

Provides the abstract ledger store interface and concrete implementations.
The in-memory store serves tests and local runs; the SQL store serves
any SQLAlchemy database. Both honor the same conditional-write contract.
"""

from pocketledger.services.storage.interface import (
    KEY_FIELDS,
    PARTITION_FIELD,
    Collection,
    Condition,
    ConflictError,
    DeleteItem,
    LedgerStoreInterface,
    MAX_TRANSACT_ITEMS,
    PutItem,
    ScanPage,
    StorageError,
    UpdateItem,
    WriteOp,
    values_equal,
)
from pocketledger.services.storage.memory import InMemoryLedgerStore
from pocketledger.services.storage.sql import SQLLedgerStore

__all__ = [
    # Interface
    "LedgerStoreInterface",
    "Collection",
    "Condition",
    "KEY_FIELDS",
    "PARTITION_FIELD",
    "MAX_TRANSACT_ITEMS",
    "values_equal",
    # Write operations
    "DeleteItem",
    "PutItem",
    "UpdateItem",
    "WriteOp",
    "ScanPage",
    # Exceptions
    "ConflictError",
    "StorageError",
    # Implementations
    "InMemoryLedgerStore",
    "SQLLedgerStore",
]
