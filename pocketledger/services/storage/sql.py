"""
SQL Ledger Store

DESIGN DECISION: Any SQLAlchemy-supported database can back the ledger.
Items are stored as JSON documents in a single table keyed by
(collection, user_id, item_key), with a row VERSION column.

Conditional writes become compare-and-swap statements:
- UPDATE/DELETE ... WHERE version = :seen, with a rowcount check
- INSERT for "must not exist", where a primary key collision is the conflict

A transact_write runs every statement inside one database transaction,
so a failed condition anywhere rolls the whole group back.

TRADEOFFS:
- Key ordering follows the database collation. SQLite and the C/POSIX
  collation on PostgreSQL match Python string ordering.
- Reads are retried on transient driver errors. Writes are NOT, since
  a write whose commit outcome is unknown must not be replayed.
"""

import json
from decimal import Decimal
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pocketledger.errors import ConflictError, StorageError
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


logger = structlog.get_logger("pocketledger.storage.sql")

metadata = MetaData()

ledger_items = Table(
    "ledger_items",
    metadata,
    Column("collection", String(32), primary_key=True),
    Column("user_id", String(128), primary_key=True),
    Column("item_key", String(255), primary_key=True),
    Column("version", Integer, nullable=False, default=1),
    Column("body", Text, nullable=False),
)


def _dumps(item: dict) -> str:
    return json.dumps(item, default=_json_default, ensure_ascii=False, sort_keys=True)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


_read_retry = retry(
    retry=retry_if_exception_type(StorageError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class SQLLedgerStore(LedgerStoreInterface):
    """
    SQLAlchemy-backed implementation of the ledger store.

    Usage::

        store = SQLLedgerStore.from_url("sqlite:///pocketledger.db")
        await store.put_item(PutItem(collection=Collection.ACCOUNTS, item=...))
    """

    def __init__(self, engine: Engine, create_schema: bool = True):
        self._engine = engine
        if create_schema:
            try:
                metadata.create_all(engine)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to create ledger schema: {e}")

    @classmethod
    def from_url(cls, url: str, echo: bool = False, **engine_options: Any) -> "SQLLedgerStore":
        """Build a store from a database URL."""
        return cls(create_engine(url, echo=echo, future=True, **engine_options))

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()

    # =========================================================================
    # Reads
    # =========================================================================

    @_read_retry
    async def get_item(
        self,
        collection: Collection,
        user_id: str,
        key: str,
    ) -> Optional[dict]:
        try:
            with self._engine.connect() as conn:
                row = self._load(conn, collection, user_id, key)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read {collection.value}: {e}")
        return json.loads(row.body) if row is not None else None

    @_read_retry
    async def query(
        self,
        collection: Collection,
        user_id: str,
        begins_with: Optional[str] = None,
        between: Optional[tuple[str, str]] = None,
    ) -> list[dict]:
        stmt = select(ledger_items.c.body).where(
            ledger_items.c.collection == collection.value,
            ledger_items.c.user_id == user_id,
        )
        if begins_with is not None:
            # Case-sensitive, unlike LIKE on SQLite
            stmt = stmt.where(
                func.substr(ledger_items.c.item_key, 1, len(begins_with)) == begins_with
            )
        if between is not None:
            stmt = stmt.where(ledger_items.c.item_key.between(between[0], between[1]))
        stmt = stmt.order_by(ledger_items.c.item_key)

        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query {collection.value}: {e}")
        return [json.loads(row.body) for row in rows]

    @_read_retry
    async def scan(
        self,
        collection: Collection,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> ScanPage:
        if limit < 1:
            raise ValueError("scan limit must be positive")

        stmt = select(
            ledger_items.c.user_id,
            ledger_items.c.item_key,
            ledger_items.c.body,
        ).where(ledger_items.c.collection == collection.value)
        if cursor:
            after_user, after_key = json.loads(cursor)
            stmt = stmt.where(or_(
                ledger_items.c.user_id > after_user,
                and_(
                    ledger_items.c.user_id == after_user,
                    ledger_items.c.item_key > after_key,
                ),
            ))
        stmt = stmt.order_by(ledger_items.c.user_id, ledger_items.c.item_key).limit(limit + 1)

        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to scan {collection.value}: {e}")

        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = json.dumps([rows[-1].user_id, rows[-1].item_key]) if has_more else None
        return ScanPage(items=[json.loads(row.body) for row in rows], cursor=next_cursor)

    # =========================================================================
    # Writes
    # =========================================================================

    async def put_item(self, op: PutItem) -> None:
        await self.transact_write([op])

    async def update_item(self, op: UpdateItem) -> dict:
        check_transact_ops([op])
        try:
            with self._engine.begin() as conn:
                return self._write(conn, op)
        except IntegrityError:
            raise condition_failure(op, "item already exists")
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update {op.collection.value}: {e}")

    async def delete_item(self, op: DeleteItem) -> None:
        await self.transact_write([op])

    async def transact_write(self, ops: Sequence[WriteOp]) -> None:
        check_transact_ops(ops)
        current: Optional[WriteOp] = None
        try:
            with self._engine.begin() as conn:
                for op in ops:
                    current = op
                    self._write(conn, op)
        except ConflictError:
            raise
        except IntegrityError:
            raise condition_failure(current, "item already exists")
        except SQLAlchemyError as e:
            logger.error("transact_write_failed", error=str(e), op_count=len(ops))
            raise StorageError(f"Transactional write failed: {e}")

    # =========================================================================
    # Internals
    # =========================================================================

    def _load(self, conn: Connection, collection: Collection, user_id: str, key: str):
        return conn.execute(
            select(ledger_items.c.version, ledger_items.c.body).where(
                ledger_items.c.collection == collection.value,
                ledger_items.c.user_id == user_id,
                ledger_items.c.item_key == key,
            )
        ).first()

    def _write(self, conn: Connection, op: WriteOp) -> Optional[dict]:
        """Apply one op on an open transaction; raises ConflictError to abort."""
        row = self._load(conn, op.collection, op.user_id, op.key)
        stored = json.loads(row.body) if row is not None else None

        if op.condition == Condition.MUST_EXIST and stored is None:
            raise condition_failure(op, "item does not exist")
        if op.condition == Condition.MUST_NOT_EXIST and stored is not None:
            raise condition_failure(op, "item already exists")
        check_expected(op, stored)

        if isinstance(op, DeleteItem):
            if row is not None:
                self._swap_delete(conn, op, row.version)
            return None

        if isinstance(op, PutItem):
            new_item = op.item
        else:
            new_item = dict(stored) if stored is not None else {
                PARTITION_FIELD: op.user_id,
                KEY_FIELDS[op.collection]: op.key,
            }
            new_item.update(op.set_fields)
            for field, delta in op.increments.items():
                new_item[field] = apply_increment(new_item.get(field), delta)

        body = _dumps(new_item)
        if row is None:
            conn.execute(insert(ledger_items).values(
                collection=op.collection.value,
                user_id=op.user_id,
                item_key=op.key,
                version=1,
                body=body,
            ))
        else:
            self._swap_update(conn, op, row.version, body)
        return json.loads(body)

    def _swap_update(self, conn: Connection, op: WriteOp, seen_version: int, body: str) -> None:
        result = conn.execute(
            update(ledger_items)
            .where(
                ledger_items.c.collection == op.collection.value,
                ledger_items.c.user_id == op.user_id,
                ledger_items.c.item_key == op.key,
                ledger_items.c.version == seen_version,
            )
            .values(version=seen_version + 1, body=body)
        )
        if result.rowcount != 1:
            raise condition_failure(op, "item changed concurrently")

    def _swap_delete(self, conn: Connection, op: WriteOp, seen_version: int) -> None:
        result = conn.execute(
            delete(ledger_items).where(
                ledger_items.c.collection == op.collection.value,
                ledger_items.c.user_id == op.user_id,
                ledger_items.c.item_key == op.key,
                ledger_items.c.version == seen_version,
            )
        )
        if result.rowcount != 1:
            raise condition_failure(op, "item changed concurrently")
