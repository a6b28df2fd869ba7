"""
In-Memory Ledger Store

Keeps every collection in a dict keyed by (userId, key). Used by the
test suite and for local runs without a database.

Every write validates ALL of its conditions before mutating anything,
under a single lock, so transact_write is all-or-nothing even when
several coroutines or threads share the store.
"""

import copy
import json
import threading
from typing import Optional, Sequence

from pocketledger.services.storage.interface import (
    KEY_FIELDS,
    PARTITION_FIELD,
    Collection,
    Condition,
    DeleteItem,
    LedgerStoreInterface,
    PutItem,
    ScanPage,
    UpdateItem,
    WriteOp,
    apply_increment,
    check_expected,
    check_transact_ops,
    condition_failure,
)


class InMemoryLedgerStore(LedgerStoreInterface):
    """Dict-backed implementation of the ledger store."""

    def __init__(self):
        self._tables: dict[Collection, dict[tuple[str, str], dict]] = {
            collection: {} for collection in Collection
        }
        self._lock = threading.Lock()

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_item(
        self,
        collection: Collection,
        user_id: str,
        key: str,
    ) -> Optional[dict]:
        with self._lock:
            item = self._tables[collection].get((user_id, key))
            return copy.deepcopy(item) if item is not None else None

    async def query(
        self,
        collection: Collection,
        user_id: str,
        begins_with: Optional[str] = None,
        between: Optional[tuple[str, str]] = None,
    ) -> list[dict]:
        with self._lock:
            matches = []
            for (owner, key), item in self._tables[collection].items():
                if owner != user_id:
                    continue
                if begins_with is not None and not key.startswith(begins_with):
                    continue
                if between is not None and not (between[0] <= key <= between[1]):
                    continue
                matches.append((key, copy.deepcopy(item)))
        matches.sort(key=lambda pair: pair[0])
        return [item for _, item in matches]

    async def scan(
        self,
        collection: Collection,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> ScanPage:
        if limit < 1:
            raise ValueError("scan limit must be positive")
        after = tuple(json.loads(cursor)) if cursor else None

        with self._lock:
            ordered = sorted(self._tables[collection].items(), key=lambda pair: pair[0])
            page = []
            for identity, item in ordered:
                if after is not None and identity <= after:
                    continue
                page.append((identity, copy.deepcopy(item)))
                if len(page) > limit:
                    break

        has_more = len(page) > limit
        page = page[:limit]
        next_cursor = json.dumps(list(page[-1][0])) if has_more else None
        return ScanPage(items=[item for _, item in page], cursor=next_cursor)

    # =========================================================================
    # Writes
    # =========================================================================

    async def put_item(self, op: PutItem) -> None:
        await self.transact_write([op])

    async def update_item(self, op: UpdateItem) -> dict:
        await self.transact_write([op])
        return await self.get_item(op.collection, op.user_id, op.key)

    async def delete_item(self, op: DeleteItem) -> None:
        await self.transact_write([op])

    async def transact_write(self, ops: Sequence[WriteOp]) -> None:
        check_transact_ops(ops)
        with self._lock:
            for op in ops:
                self._check(op)
            for op in ops:
                self._apply(op)

    def _check(self, op: WriteOp) -> None:
        stored = self._tables[op.collection].get((op.user_id, op.key))

        if op.condition == Condition.MUST_EXIST and stored is None:
            raise condition_failure(op, "item does not exist")
        if op.condition == Condition.MUST_NOT_EXIST and stored is not None:
            raise condition_failure(op, "item already exists")

        check_expected(op, stored)

    def _apply(self, op: WriteOp) -> None:
        table = self._tables[op.collection]
        identity = (op.user_id, op.key)

        if isinstance(op, PutItem):
            table[identity] = copy.deepcopy(op.item)
        elif isinstance(op, DeleteItem):
            table.pop(identity, None)
        else:
            item = copy.deepcopy(table.get(identity)) or {
                PARTITION_FIELD: op.user_id,
                KEY_FIELDS[op.collection]: op.key,
            }
            item.update(copy.deepcopy(op.set_fields))
            for field, delta in op.increments.items():
                item[field] = apply_increment(item.get(field), delta)
            table[identity] = item
