"""
Abstract Ledger Store Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap the in-memory store for a SQL database (or any KV store)
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

The interface is a key-value store, not an ORM. Every record lives in
one of five collections and is addressed by (userId, key). Writes are
CONDITIONAL: a predicate on the stored state must hold or the write
fails with ConflictError. transact_write applies a group of such writes
all-or-nothing. That pair of primitives is the only concurrency control
the ledger uses.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from pocketledger.errors import ConflictError, StorageError


class Collection(str, Enum):
    """The collections the ledger persists."""
    ACCOUNTS = "accounts"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"
    RECURRING = "recurring"


PARTITION_FIELD = "userId"

# Sort/identity key attribute per collection
KEY_FIELDS: dict[Collection, str] = {
    Collection.ACCOUNTS: "accountId",
    Collection.CATEGORIES: "categoryId",
    Collection.TRANSACTIONS: "sk",
    Collection.BUDGETS: "periodCat",
    Collection.RECURRING: "ruleId",
}

MAX_TRANSACT_ITEMS = 100


class Condition(str, Enum):
    """Existence predicate evaluated against the stored item."""
    NONE = "none"
    MUST_EXIST = "must_exist"
    MUST_NOT_EXIST = "must_not_exist"


class _WriteOp(BaseModel):
    """
    expected is a compare-and-swap guard shared by every op: each listed
    attribute must currently equal the given value (a missing item has no
    attributes, so any guard fails against it).
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    expected: dict[str, Any] = Field(default_factory=dict)


class PutItem(_WriteOp):
    """Create or replace a whole item."""
    collection: Collection
    item: dict[str, Any]
    condition: Condition = Condition.NONE

    @property
    def user_id(self) -> str:
        return self.item[PARTITION_FIELD]

    @property
    def key(self) -> str:
        return self.item[KEY_FIELDS[self.collection]]


class UpdateItem(_WriteOp):
    """
    Patch an item in place.

    set_fields overwrite attributes; increments add to numeric attributes
    (a missing attribute counts as zero).
    """
    collection: Collection
    user_id: str
    key: str
    set_fields: dict[str, Any] = Field(default_factory=dict)
    increments: dict[str, Decimal] = Field(default_factory=dict)
    condition: Condition = Condition.MUST_EXIST


class DeleteItem(_WriteOp):
    """Remove an item."""
    collection: Collection
    user_id: str
    key: str
    condition: Condition = Condition.MUST_EXIST


WriteOp = Union[PutItem, UpdateItem, DeleteItem]


class ScanPage(BaseModel):
    """One page of a full-collection scan."""
    items: list[dict[str, Any]] = Field(default_factory=list)
    cursor: Optional[str] = Field(
        default=None,
        description="Opaque resume token; None when the scan is exhausted"
    )


def values_equal(stored: Any, expected: Any) -> bool:
    """
    Compare an attribute for a compare-and-swap guard.

    Numbers compare by value so "80.00" equals Decimal("80").
    """
    if stored is None or expected is None:
        return stored is None and expected is None
    if isinstance(expected, (Decimal, int, float)) and not isinstance(expected, bool):
        try:
            return Decimal(str(stored)) == Decimal(str(expected))
        except ArithmeticError:
            return False
    return stored == expected


def apply_increment(current: Any, delta: Decimal) -> str:
    """Add delta to a stored numeric attribute (missing counts as zero)."""
    base = Decimal(str(current)) if current is not None else Decimal("0")
    return str(base + delta)


def op_identity(op: WriteOp) -> tuple[Collection, str, str]:
    return (op.collection, op.user_id, op.key)


def check_transact_ops(ops: Sequence[WriteOp]) -> None:
    """Reject malformed transactional batches before touching storage."""
    if not ops:
        raise ValueError("transact_write needs at least one operation")
    if len(ops) > MAX_TRANSACT_ITEMS:
        raise ValueError(f"transact_write accepts at most {MAX_TRANSACT_ITEMS} operations")
    seen = set()
    for op in ops:
        identity = op_identity(op)
        if identity in seen:
            raise ValueError(
                f"transact_write touches {identity[0].value}/{identity[2]} more than once"
            )
        seen.add(identity)


def check_expected(op: WriteOp, stored: Optional[dict]) -> None:
    """Raise ConflictError unless every guarded attribute still matches."""
    for field, expected in op.expected.items():
        if stored is None:
            raise condition_failure(op, "item does not exist")
        if not values_equal(stored.get(field), expected):
            raise condition_failure(op, f"{field} changed concurrently")


def condition_failure(op: WriteOp, reason: str) -> ConflictError:
    return ConflictError(
        f"Conditional write failed on {op.collection.value}: {reason}",
        details={
            "collection": op.collection.value,
            "userId": op.user_id,
            "key": op.key,
            "reason": reason,
        },
    )


class LedgerStoreInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation (in-memory, SQL, a cloud KV store)
    must implement these methods with the same conditional semantics.
    Items are JSON-compatible dicts carrying PARTITION_FIELD and the
    collection's key field.
    """

    @abstractmethod
    async def get_item(
        self,
        collection: Collection,
        user_id: str,
        key: str,
    ) -> Optional[dict]:
        """
        Point lookup.

        Returns:
            A copy of the item if found, None otherwise
        """
        pass

    @abstractmethod
    async def query(
        self,
        collection: Collection,
        user_id: str,
        begins_with: Optional[str] = None,
        between: Optional[tuple[str, str]] = None,
    ) -> list[dict]:
        """
        Range query inside one user's partition.

        Args:
            collection: Collection to read
            user_id: Partition
            begins_with: Keep keys starting with this prefix
            between: Keep keys in [low, high], inclusive

        Returns:
            Matching items ordered by key ascending
        """
        pass

    @abstractmethod
    async def scan(
        self,
        collection: Collection,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> ScanPage:
        """
        One page of a full scan ordered by (userId, key).

        Pass the returned cursor back to continue. Items written after
        the cursor position are picked up by later pages.
        """
        pass

    @abstractmethod
    async def put_item(self, op: PutItem) -> None:
        """
        Conditional put.

        Raises:
            ConflictError: If op.condition does not hold
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    async def update_item(self, op: UpdateItem) -> dict:
        """
        Conditional update.

        Returns:
            The item as stored after the update

        Raises:
            ConflictError: If op.condition or op.expected does not hold
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    async def delete_item(self, op: DeleteItem) -> None:
        """
        Conditional delete.

        Raises:
            ConflictError: If op.condition does not hold
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    async def transact_write(self, ops: Sequence[WriteOp]) -> None:
        """
        Apply a group of conditional writes all-or-nothing.

        If any condition fails, nothing is applied.

        Raises:
            ValueError: Empty batch, too many ops, or one item touched twice
            ConflictError: If any condition does not hold
            StorageError: If the backend fails
        """
        pass


__all__ = [
    "Collection",
    "Condition",
    "ConflictError",
    "DeleteItem",
    "KEY_FIELDS",
    "LedgerStoreInterface",
    "MAX_TRANSACT_ITEMS",
    "PARTITION_FIELD",
    "PutItem",
    "ScanPage",
    "StorageError",
    "UpdateItem",
    "WriteOp",
    "apply_increment",
    "check_expected",
    "check_transact_ops",
    "condition_failure",
    "values_equal",
]
