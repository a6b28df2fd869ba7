"""
Transaction Consistency Engine

Creates, amends, deletes and lists transactions while keeping each
account's currentBalance equal to openingBalance plus the signed sum of
its transactions.

DESIGN DECISION: Every mutation is ONE transact_write. The transaction
record and the balance delta it implies commit together or not at all.
All validation and every read happens before the write is issued, so
a 400 or 404 never leaves a partial write behind.

Concurrency is optimistic:
- New records are put with MUST_NOT_EXIST
- Existing records are replaced or deleted with MUST_EXIST plus a guard
  on the updatedAt we read, so two amends of the same transaction
  serialize and the loser gets ConflictError
- Balances move by increments, never by read-modify-write
- Each write also moves the category txnCount and checks the category
  type and account currency it validated against are still current

A ConflictError is logged and re-raised as is. The engine never retries:
replaying a write could apply a balance delta twice.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional, Union
from uuid import UUID, uuid4

import structlog

from pocketledger.audit import AuditLogger
from pocketledger.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from pocketledger.ledger.money import (
    MAX_RATE_PLACES,
    ensure_currency_match,
    require_positive,
    to_base,
    type_to_delta,
)
from pocketledger.models.audit import AuditEventBuilder
from pocketledger.models.ledger import (
    SORT_KEY_PREFIX,
    Account,
    Category,
    Transaction,
    TransactionCreate,
    TransactionUpdate,
    build_sort_key,
    parse_payload,
    parse_timestamp,
    to_iso,
    utc_now,
)
from pocketledger.services.storage import (
    Collection,
    Condition,
    DeleteItem,
    LedgerStoreInterface,
    PutItem,
    UpdateItem,
    WriteOp,
)


logger = structlog.get_logger("pocketledger.engine")

Clock = Callable[[], datetime]

# Fields an amendment may not set to null
_NON_NULLABLE = {
    "account_id": "accountId",
    "category_id": "categoryId",
    "type": "type",
    "amount": "amount",
    "currency": "currency",
    "occurred_at": "occurredAt",
    "fx_rate_to_base": "fx_rate_to_base",
}


def require_user(user_id: Optional[str]) -> str:
    """The authenticated user id, or AuthenticationError."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise AuthenticationError("Unauthorized")
    return user_id


def balance_update(
    user_id: str,
    account_id: str,
    delta: Decimal,
    now: datetime,
    currency: Optional[str] = None,
) -> UpdateItem:
    """
    Increment an account balance; the account must still exist and,
    when currency is given, still be held in that currency.
    """
    return UpdateItem(
        collection=Collection.ACCOUNTS,
        user_id=user_id,
        key=account_id,
        set_fields={"updatedAt": to_iso(now)},
        increments={"currentBalance": delta},
        expected={"currency": currency} if currency else {},
        condition=Condition.MUST_EXIST,
    )


def category_reference(
    user_id: str,
    category: Union[Category, str],
    change: int,
) -> UpdateItem:
    """
    Move a category's txnCount by change.

    Given a Category, the write also requires its type to be unchanged,
    so a transaction can never land on a category whose type flipped
    after it was read. The catalog guards type changes and deletes on
    txnCount, which closes the race from the other side.
    """
    if isinstance(category, Category):
        category_id = category.category_id
        expected = {"type": category.type.value}
    else:
        category_id = category
        expected = {}
    return UpdateItem(
        collection=Collection.CATEGORIES,
        user_id=user_id,
        key=category_id,
        increments={"txnCount": Decimal(change)} if change else {},
        expected=expected,
        condition=Condition.MUST_EXIST,
    )


class TransactionEngine:
    """
    Balance-consistent CRUD over transactions.

    Stateless apart from its collaborators; safe to share across requests.

    Usage::

        engine = TransactionEngine(store, audit_logger=AuditLogger())
        txn = await engine.create_transaction("user-1", {
            "accountId": "...", "categoryId": "...",
            "type": "expense", "amount": "12.50",
        })
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return parse_timestamp(self._clock(), "now")

    # =========================================================================
    # Reads
    # =========================================================================

    async def load_account(self, user_id: str, account_id: str) -> Account:
        item = await self.store.get_item(Collection.ACCOUNTS, user_id, account_id)
        if item is None:
            raise NotFoundError("Account not found", details={"accountId": account_id})
        return Account.from_item(item)

    async def load_category(self, user_id: str, category_id: str) -> Category:
        item = await self.store.get_item(Collection.CATEGORIES, user_id, category_id)
        if item is None:
            raise NotFoundError("Category not found", details={"categoryId": category_id})
        return Category.from_item(item)

    async def get_transaction(self, user_id: str, txn_id: str) -> Transaction:
        """
        Look a transaction up by its id.

        The sort key starts with the occurrence time, which the caller
        does not know, so this is a partition query filtered on txnId.
        """
        user_id = require_user(user_id)
        items = await self.store.query(
            Collection.TRANSACTIONS, user_id, begins_with=SORT_KEY_PREFIX
        )
        for item in items:
            if item.get("txnId") == txn_id:
                return Transaction.from_item(item)
        raise NotFoundError("Transaction not found", details={"transactionId": txn_id})

    async def list_transactions(
        self,
        user_id: str,
        date_from: Optional[Any] = None,
        date_to: Optional[Any] = None,
    ) -> list[Transaction]:
        """
        Transactions with occurredAt in [date_from, date_to], oldest first.

        Defaults to the start of the current UTC month through now.
        """
        user_id = require_user(user_id)
        now = self.now()

        if date_from in (None, ""):
            start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        else:
            start = parse_timestamp(date_from, "from")
        end = now if date_to in (None, "") else parse_timestamp(date_to, "to")

        if start > end:
            raise ValidationError(
                "from must not be after to",
                details={"from": to_iso(start), "to": to_iso(end)},
            )

        # "~" sorts after every character used in a txn id
        low = f"{SORT_KEY_PREFIX}{to_iso(start)}"
        high = f"{SORT_KEY_PREFIX}{to_iso(end)}#TX#~"
        items = await self.store.query(
            Collection.TRANSACTIONS, user_id, between=(low, high)
        )
        return [Transaction.from_item(item) for item in items]

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_transaction(
        self,
        user_id: str,
        payload: Union[dict, TransactionCreate],
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Post a new transaction and move its account balance.

        Raises:
            ValidationError: Bad payload, type/category or currency mismatch
            NotFoundError: Account or category missing
            ConflictError: Account deleted concurrently
        """
        user_id = require_user(user_id)
        data = parse_payload(TransactionCreate, payload)

        amount = require_positive(data.amount, "amount")
        rate = require_positive(
            data.fx_rate_to_base if data.fx_rate_to_base is not None else 1,
            "fx_rate_to_base",
            MAX_RATE_PLACES,
        )

        account = await self.load_account(user_id, data.account_id)
        category = await self.load_category(user_id, data.category_id)
        self._check_category_type(category, data.type)
        currency = ensure_currency_match(data.currency or account.currency, account.currency)

        now = self.now()
        occurred_at = data.occurred_at or now
        txn_id = str(uuid4())
        txn = Transaction(
            user_id=user_id,
            sk=build_sort_key(occurred_at, txn_id),
            txn_id=txn_id,
            account_id=account.account_id,
            category_id=category.category_id,
            type=data.type,
            amount=amount,
            currency=currency,
            fx_rate_to_base=rate,
            amount_base=to_base(amount, rate),
            note=data.note,
            tags=data.tags,
            occurred_at=occurred_at,
            created_at=now,
            updated_at=now,
        )
        delta = type_to_delta(txn.type, amount)

        await self._commit(user_id, txn_id, "create", [
            PutItem(
                collection=Collection.TRANSACTIONS,
                item=txn.to_item(),
                condition=Condition.MUST_NOT_EXIST,
            ),
            balance_update(user_id, account.account_id, delta, now, account.currency),
            category_reference(user_id, category, 1),
        ], correlation_id)

        self.audit_logger.log(AuditEventBuilder.transaction_created(
            user_id=user_id,
            txn_id=txn_id,
            account_id=account.account_id,
            delta=str(delta),
            correlation_id=correlation_id,
        ))
        return txn

    async def amend_transaction(
        self,
        user_id: str,
        txn_id: str,
        payload: Union[dict, TransactionUpdate],
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Apply a partial update.

        Changing occurredAt moves the record to a new sort key. Balance
        effects are netted per account: the old contribution is undone on
        the old account and the new one applied on the new account, as a
        single increment when both are the same account. A zero net change
        issues no account write.

        Raises:
            ValidationError: Empty or invalid payload, mismatches
            NotFoundError: Transaction, account or category missing
            ConflictError: Concurrent amend/delete, or account deleted
        """
        user_id = require_user(user_id)
        existing = await self.get_transaction(user_id, txn_id)
        if isinstance(payload, dict) and not payload:
            raise ValidationError("No fields to update")

        data = parse_payload(TransactionUpdate, payload)
        provided = data.provided()
        if not provided:
            raise ValidationError("No fields to update")
        for attr, name in _NON_NULLABLE.items():
            if attr in provided and getattr(data, attr) is None:
                raise ValidationError(f"{name} cannot be null")

        def merged(attr: str) -> Any:
            return getattr(data, attr) if attr in provided else getattr(existing, attr)

        amount = require_positive(merged("amount"), "amount")
        rate = require_positive(merged("fx_rate_to_base"), "fx_rate_to_base", MAX_RATE_PLACES)
        txn_type = merged("type")
        tags = (data.tags or []) if "tags" in provided else existing.tags

        account = await self.load_account(user_id, merged("account_id"))
        category = await self.load_category(user_id, merged("category_id"))
        self._check_category_type(category, txn_type)
        currency = ensure_currency_match(merged("currency"), account.currency)

        now = self.now()
        occurred_at = merged("occurred_at")
        updated = Transaction(
            user_id=user_id,
            sk=build_sort_key(occurred_at, existing.txn_id),
            txn_id=existing.txn_id,
            account_id=account.account_id,
            category_id=category.category_id,
            type=txn_type,
            amount=amount,
            currency=currency,
            fx_rate_to_base=rate,
            amount_base=to_base(amount, rate),
            note=merged("note"),
            tags=tags,
            occurred_at=occurred_at,
            created_at=existing.created_at,
            updated_at=now,
        )

        guard = {"updatedAt": to_iso(existing.updated_at)}
        moved = updated.sk != existing.sk
        if moved:
            ops: list[WriteOp] = [
                DeleteItem(
                    collection=Collection.TRANSACTIONS,
                    user_id=user_id,
                    key=existing.sk,
                    condition=Condition.MUST_EXIST,
                    expected=guard,
                ),
                PutItem(
                    collection=Collection.TRANSACTIONS,
                    item=updated.to_item(),
                    condition=Condition.MUST_NOT_EXIST,
                ),
            ]
        else:
            ops = [
                PutItem(
                    collection=Collection.TRANSACTIONS,
                    item=updated.to_item(),
                    condition=Condition.MUST_EXIST,
                    expected=guard,
                ),
            ]

        adjustments: dict[str, Decimal] = {}
        adjustments[existing.account_id] = -type_to_delta(existing.type, existing.amount)
        adjustments[updated.account_id] = (
            adjustments.get(updated.account_id, Decimal("0"))
            + type_to_delta(updated.type, updated.amount)
        )
        for account_id, delta in adjustments.items():
            if delta != 0:
                currency = account.currency if account_id == account.account_id else None
                ops.append(balance_update(user_id, account_id, delta, now, currency))

        if category.category_id == existing.category_id:
            ops.append(category_reference(user_id, category, 0))
        else:
            ops.append(category_reference(user_id, existing.category_id, -1))
            ops.append(category_reference(user_id, category, 1))

        await self._commit(user_id, txn_id, "amend", ops, correlation_id)

        self.audit_logger.log(AuditEventBuilder.transaction_amended(
            user_id=user_id,
            txn_id=txn_id,
            moved=moved,
            adjustments={k: str(v) for k, v in adjustments.items() if v != 0},
            correlation_id=correlation_id,
        ))
        return updated

    async def delete_transaction(
        self,
        user_id: str,
        txn_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Remove a transaction and reverse its balance effect.

        Raises:
            NotFoundError: Transaction missing
            ConflictError: Concurrent amend/delete, or account deleted
        """
        user_id = require_user(user_id)
        existing = await self.get_transaction(user_id, txn_id)
        delta = -type_to_delta(existing.type, existing.amount)

        await self._commit(user_id, txn_id, "delete", [
            DeleteItem(
                collection=Collection.TRANSACTIONS,
                user_id=user_id,
                key=existing.sk,
                condition=Condition.MUST_EXIST,
                expected={"updatedAt": to_iso(existing.updated_at)},
            ),
            balance_update(user_id, existing.account_id, delta, self.now()),
            category_reference(user_id, existing.category_id, -1),
        ], correlation_id)

        self.audit_logger.log(AuditEventBuilder.transaction_deleted(
            user_id=user_id,
            txn_id=txn_id,
            account_id=existing.account_id,
            delta=str(delta),
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _check_category_type(category: Category, txn_type: Any) -> None:
        if category.type != txn_type:
            raise ValidationError(
                "Transaction type must match category type",
                details={
                    "type": getattr(txn_type, "value", txn_type),
                    "category_type": category.type.value,
                },
            )

    async def _commit(
        self,
        user_id: str,
        txn_id: str,
        operation: str,
        ops: list[WriteOp],
        correlation_id: Optional[UUID],
    ) -> None:
        try:
            await self.store.transact_write(ops)
        except ConflictError as e:
            logger.warning(
                "transaction_write_conflict",
                user_id=user_id,
                txn_id=txn_id,
                operation=operation,
                error=e.message,
            )
            self.audit_logger.log_write_conflict(
                user_id=user_id,
                entity_type="transaction",
                entity_id=txn_id,
                operation=operation,
                error_message=e.message,
                correlation_id=correlation_id,
            )
            raise
