"""
Catalog Services

CRUD for the records transactions hang off: accounts, categories,
budgets and recurring rules.

These services never move currentBalance as a side effect of a
transaction. The one balance write they make is when openingBalance
changes: the difference is applied to currentBalance in the same
update, guarded on the openingBalance that was read, so the balance
invariant holds across concurrent edits.

Referential rules:
- An account or category with transactions cannot be deleted (409)
- A category used by transactions or recurring rules cannot change
  type (409), so every transaction keeps the type of its category
- An account's currency is fixed once transactions or recurring rules
  use it (409)

The checks read before they write, so each write is guarded on what a
concurrent transaction would move: the category txnCount, or the
account currentBalance. A transaction that slips in between turns the
write into a ConflictError.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from pocketledger.audit import AuditLogger
from pocketledger.errors import ConflictError, NotFoundError, ValidationError
from pocketledger.ledger.engine import require_user
from pocketledger.ledger.money import (
    MAX_AMOUNT_PLACES,
    MAX_RATE_PLACES,
    decimal_places,
    ensure_currency_match,
    normalize_currency,
    require_positive,
    to_decimal,
)
from pocketledger.models.audit import AuditEventBuilder, AuditEventType
from pocketledger.models.ledger import (
    MONTH_PATTERN,
    SORT_KEY_PREFIX,
    Account,
    AccountCreate,
    AccountUpdate,
    Budget,
    BudgetCreate,
    BudgetUpdate,
    Category,
    CategoryCreate,
    CategoryUpdate,
    RecurringRule,
    RecurringRuleCreate,
    month_bounds,
    parse_payload,
    parse_timestamp,
    period_key,
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
)


def opening_balance(value) -> Decimal:
    """Opening balances may be zero or negative, but not over-precise."""
    result = to_decimal(value, "openingBalance")
    if decimal_places(result) > MAX_AMOUNT_PLACES:
        raise ValidationError(
            f"openingBalance must have at most {MAX_AMOUNT_PLACES} decimal places"
        )
    return result


def validate_month(month: Optional[str]) -> str:
    if not isinstance(month, str) or not re.match(MONTH_PATTERN, month):
        raise ValidationError("month must be YYYY-MM")
    return month


class CatalogService:
    """Shared plumbing for the catalog services."""

    entity_type = "entity"

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return parse_timestamp(self._clock(), "now")

    def _audit(
        self,
        event_type: AuditEventType,
        user_id: str,
        entity_id: str,
        details: Optional[dict] = None,
    ) -> None:
        self.audit_logger.log(AuditEventBuilder.entity_changed(
            event_type=event_type,
            user_id=user_id,
            entity_type=self.entity_type,
            entity_id=entity_id,
            details=details,
        ))

    async def _load(self, collection: Collection, user_id: str, key: str, label: str) -> dict:
        item = await self.store.get_item(collection, user_id, key)
        if item is None:
            raise NotFoundError(f"{label} not found", details={"id": key})
        return item

    async def _count_transactions(self, user_id: str, field: str, value: str) -> int:
        items = await self.store.query(
            Collection.TRANSACTIONS, user_id, begins_with=SORT_KEY_PREFIX
        )
        return sum(1 for item in items if item.get(field) == value)

    async def _count_rules(self, user_id: str, field: str, value: str) -> int:
        items = await self.store.query(Collection.RECURRING, user_id)
        return sum(1 for item in items if (item.get("template") or {}).get(field) == value)


# =============================================================================
# ACCOUNTS
# =============================================================================

class AccountService(CatalogService):
    entity_type = "account"

    async def create(self, user_id: str, payload: Union[dict, AccountCreate]) -> Account:
        user_id = require_user(user_id)
        data = parse_payload(AccountCreate, payload)
        opening = opening_balance(data.opening_balance)
        now = self.now()

        account = Account(
            user_id=user_id,
            name=data.name,
            type=data.type,
            currency=normalize_currency(data.currency),
            opening_balance=opening,
            current_balance=opening,
            archived=data.archived,
            created_at=now,
            updated_at=now,
        )
        await self.store.put_item(PutItem(
            collection=Collection.ACCOUNTS,
            item=account.to_item(),
            condition=Condition.MUST_NOT_EXIST,
        ))
        self._audit(AuditEventType.ENTITY_CREATED, user_id, account.account_id)
        return account

    async def get(self, user_id: str, account_id: str) -> Account:
        user_id = require_user(user_id)
        item = await self._load(Collection.ACCOUNTS, user_id, account_id, "Account")
        return Account.from_item(item)

    async def list(self, user_id: str) -> list[Account]:
        user_id = require_user(user_id)
        items = await self.store.query(Collection.ACCOUNTS, user_id)
        return [Account.from_item(item) for item in items]

    async def update(
        self,
        user_id: str,
        account_id: str,
        payload: Union[dict, AccountUpdate],
    ) -> Account:
        """
        Patch metadata. A new openingBalance shifts currentBalance by the
        same difference in one guarded update.
        """
        user_id = require_user(user_id)
        existing = await self.get(user_id, account_id)
        data = parse_payload(AccountUpdate, payload)
        provided = data.provided()
        if not provided:
            raise ValidationError("No fields to update")

        set_fields: dict = {"updatedAt": to_iso(self.now())}
        increments: dict[str, Decimal] = {}
        expected: dict = {}

        for field, alias in (("name", "name"), ("type", "type"), ("archived", "archived")):
            if field in provided:
                value = getattr(data, field)
                if value is None:
                    raise ValidationError(f"{alias} cannot be null")
                set_fields[alias] = getattr(value, "value", value)

        if "currency" in provided:
            currency = normalize_currency(data.currency)
            if currency != existing.currency:
                if await self._count_transactions(user_id, "accountId", account_id):
                    raise ConflictError(
                        "Account currency cannot change while it has transactions"
                    )
                if await self._count_rules(user_id, "accountId", account_id):
                    raise ConflictError(
                        "Account currency cannot change while recurring rules use it"
                    )
                set_fields["currency"] = currency
                expected["currentBalance"] = existing.current_balance

        if "opening_balance" in provided:
            new_opening = opening_balance(data.opening_balance)
            difference = new_opening - existing.opening_balance
            set_fields["openingBalance"] = str(new_opening)
            expected["openingBalance"] = existing.opening_balance
            if difference != 0:
                increments["currentBalance"] = difference

        item = await self.store.update_item(UpdateItem(
            collection=Collection.ACCOUNTS,
            user_id=user_id,
            key=account_id,
            set_fields=set_fields,
            increments=increments,
            expected=expected,
            condition=Condition.MUST_EXIST,
        ))
        self._audit(
            AuditEventType.ENTITY_UPDATED, user_id, account_id,
            {"fields": sorted(k for k in set_fields if k != "updatedAt")},
        )
        return Account.from_item(item)

    async def delete(self, user_id: str, account_id: str) -> None:
        user_id = require_user(user_id)
        existing = await self.get(user_id, account_id)
        if await self._count_transactions(user_id, "accountId", account_id):
            raise ConflictError("Account has transactions")

        # A transaction posted after the check moves currentBalance
        await self.store.delete_item(DeleteItem(
            collection=Collection.ACCOUNTS,
            user_id=user_id,
            key=account_id,
            condition=Condition.MUST_EXIST,
            expected={"currentBalance": existing.current_balance},
        ))
        self._audit(AuditEventType.ENTITY_DELETED, user_id, account_id)


# =============================================================================
# CATEGORIES
# =============================================================================

class CategoryService(CatalogService):
    entity_type = "category"

    async def create(self, user_id: str, payload: Union[dict, CategoryCreate]) -> Category:
        user_id = require_user(user_id)
        data = parse_payload(CategoryCreate, payload)
        now = self.now()

        category = Category(
            user_id=user_id,
            name=data.name,
            type=data.type,
            created_at=now,
            updated_at=now,
            **{k: v for k, v in (("color", data.color), ("icon", data.icon)) if v},
        )
        await self.store.put_item(PutItem(
            collection=Collection.CATEGORIES,
            item=category.to_item(),
            condition=Condition.MUST_NOT_EXIST,
        ))
        self._audit(AuditEventType.ENTITY_CREATED, user_id, category.category_id)
        return category

    async def get(self, user_id: str, category_id: str) -> Category:
        user_id = require_user(user_id)
        item = await self._load(Collection.CATEGORIES, user_id, category_id, "Category")
        return Category.from_item(item)

    async def list(self, user_id: str) -> list[Category]:
        user_id = require_user(user_id)
        items = await self.store.query(Collection.CATEGORIES, user_id)
        return [Category.from_item(item) for item in items]

    async def update(
        self,
        user_id: str,
        category_id: str,
        payload: Union[dict, CategoryUpdate],
    ) -> Category:
        user_id = require_user(user_id)
        stored = await self._load(Collection.CATEGORIES, user_id, category_id, "Category")
        existing = Category.from_item(stored)
        data = parse_payload(CategoryUpdate, payload)
        provided = data.provided()
        if not provided:
            raise ValidationError("No fields to update")

        set_fields: dict = {"updatedAt": to_iso(self.now())}
        expected: dict = {}
        for field in ("name", "color", "icon"):
            if field in provided:
                value = getattr(data, field)
                if value is None:
                    raise ValidationError(f"{field} cannot be null")
                set_fields[field] = value

        if "type" in provided:
            if data.type is None:
                raise ValidationError("type cannot be null")
            if data.type != existing.type:
                if await self._count_transactions(user_id, "categoryId", category_id):
                    raise ConflictError(
                        "Category type cannot change while transactions use it"
                    )
                if await self._count_rules(user_id, "categoryId", category_id):
                    raise ConflictError(
                        "Category type cannot change while recurring rules use it"
                    )
                set_fields["type"] = data.type.value
                expected["type"] = existing.type.value
                expected["txnCount"] = stored.get("txnCount")

        item = await self.store.update_item(UpdateItem(
            collection=Collection.CATEGORIES,
            user_id=user_id,
            key=category_id,
            set_fields=set_fields,
            expected=expected,
            condition=Condition.MUST_EXIST,
        ))
        self._audit(
            AuditEventType.ENTITY_UPDATED, user_id, category_id,
            {"fields": sorted(k for k in set_fields if k != "updatedAt")},
        )
        return Category.from_item(item)

    async def delete(self, user_id: str, category_id: str) -> None:
        user_id = require_user(user_id)
        stored = await self._load(Collection.CATEGORIES, user_id, category_id, "Category")
        if await self._count_transactions(user_id, "categoryId", category_id):
            raise ConflictError("Category is in use")

        await self.store.delete_item(DeleteItem(
            collection=Collection.CATEGORIES,
            user_id=user_id,
            key=category_id,
            condition=Condition.MUST_EXIST,
            expected={"txnCount": stored.get("txnCount")},
        ))
        self._audit(AuditEventType.ENTITY_DELETED, user_id, category_id)


# =============================================================================
# BUDGETS
# =============================================================================

class BudgetService(CatalogService):
    """Monthly budgets keyed by month and optional category."""

    entity_type = "budget"

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_alert_threshold: float = 0.9,
    ):
        super().__init__(store, audit_logger, clock)
        self.default_alert_threshold = default_alert_threshold

    async def create(self, user_id: str, payload: Union[dict, BudgetCreate]) -> Budget:
        user_id = require_user(user_id)
        data = parse_payload(BudgetCreate, payload)
        limit = require_positive(data.limit, "limit")
        if data.category_id:
            await self._load(Collection.CATEGORIES, user_id, data.category_id, "Category")

        start, end = month_bounds(data.month)
        now = self.now()
        budget = Budget(
            user_id=user_id,
            period_cat=period_key(data.month, data.category_id),
            month=data.month,
            category_id=data.category_id or None,
            currency=normalize_currency(data.currency),
            limit=limit,
            alert_threshold=(
                data.alert_threshold
                if data.alert_threshold is not None
                else self.default_alert_threshold
            ),
            rollover=data.rollover,
            period_start=start,
            period_end=end,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.store.put_item(PutItem(
                collection=Collection.BUDGETS,
                item=budget.to_item(),
                condition=Condition.MUST_NOT_EXIST,
            ))
        except ConflictError:
            raise ConflictError(
                "Budget already exists for this month and category",
                details={"periodCat": budget.period_cat},
            )
        self._audit(AuditEventType.ENTITY_CREATED, user_id, budget.period_cat)
        return budget

    async def get(self, user_id: str, month: str, category_id: Optional[str] = None) -> Budget:
        user_id = require_user(user_id)
        key = period_key(validate_month(month), category_id)
        item = await self._load(Collection.BUDGETS, user_id, key, "Budget")
        return Budget.from_item(item)

    async def list(self, user_id: str, month: Optional[str] = None) -> list[Budget]:
        """Budgets of one month, current UTC month by default."""
        user_id = require_user(user_id)
        month = validate_month(month) if month else self.now().strftime("%Y-%m")
        items = await self.store.query(Collection.BUDGETS, user_id, begins_with=f"{month}#")
        return [Budget.from_item(item) for item in items]

    async def update(
        self,
        user_id: str,
        month: str,
        category_id: Optional[str],
        payload: Union[dict, BudgetUpdate],
    ) -> Budget:
        user_id = require_user(user_id)
        existing = await self.get(user_id, month, category_id)
        data = parse_payload(BudgetUpdate, payload)
        provided = data.provided()
        if not provided:
            raise ValidationError("No fields to update")

        set_fields: dict = {"updatedAt": to_iso(self.now())}
        if "currency" in provided:
            set_fields["currency"] = normalize_currency(data.currency)
        if "limit" in provided:
            set_fields["limit"] = str(require_positive(data.limit, "limit"))
        if "alert_threshold" in provided:
            if data.alert_threshold is None:
                raise ValidationError("alertThreshold cannot be null")
            set_fields["alertThreshold"] = data.alert_threshold
        if "rollover" in provided:
            if data.rollover is None:
                raise ValidationError("rollover cannot be null")
            set_fields["rollover"] = data.rollover

        item = await self.store.update_item(UpdateItem(
            collection=Collection.BUDGETS,
            user_id=user_id,
            key=existing.period_cat,
            set_fields=set_fields,
            condition=Condition.MUST_EXIST,
        ))
        self._audit(AuditEventType.ENTITY_UPDATED, user_id, existing.period_cat)
        return Budget.from_item(item)

    async def delete(self, user_id: str, month: str, category_id: Optional[str] = None) -> None:
        user_id = require_user(user_id)
        existing = await self.get(user_id, month, category_id)
        await self.store.delete_item(DeleteItem(
            collection=Collection.BUDGETS,
            user_id=user_id,
            key=existing.period_cat,
            condition=Condition.MUST_EXIST,
        ))
        self._audit(AuditEventType.ENTITY_DELETED, user_id, existing.period_cat)


# =============================================================================
# RECURRING RULES
# =============================================================================

class RecurringRuleService(CatalogService):
    """
    Rule definitions. Firing them is the recurring job's business;
    this service never touches nextRun after creation.
    """

    entity_type = "rule"

    async def create(
        self,
        user_id: str,
        payload: Union[dict, RecurringRuleCreate],
    ) -> RecurringRule:
        user_id = require_user(user_id)
        data = parse_payload(RecurringRuleCreate, payload)
        template = data.template
        require_positive(template.amount, "template.amount")
        if data.base_fx is not None:
            require_positive(data.base_fx, "baseFx", MAX_RATE_PLACES)

        account = Account.from_item(await self._load(
            Collection.ACCOUNTS, user_id, template.account_id, "Account"
        ))
        category = Category.from_item(await self._load(
            Collection.CATEGORIES, user_id, template.category_id, "Category"
        ))
        if category.type != template.type:
            raise ValidationError("Template type must match category type")
        ensure_currency_match(template.currency, account.currency)

        now = self.now()
        rule = RecurringRule(
            user_id=user_id,
            frequency=data.frequency,
            next_run=data.next_run or now,
            template=template,
            base_fx=data.base_fx,
            created_at=now,
            updated_at=now,
        )
        await self.store.put_item(PutItem(
            collection=Collection.RECURRING,
            item=rule.to_item(),
            condition=Condition.MUST_NOT_EXIST,
        ))
        self._audit(AuditEventType.ENTITY_CREATED, user_id, rule.rule_id)
        return rule

    async def get(self, user_id: str, rule_id: str) -> RecurringRule:
        user_id = require_user(user_id)
        item = await self._load(Collection.RECURRING, user_id, rule_id, "Recurring rule")
        return RecurringRule.from_item(item)

    async def list(self, user_id: str) -> list[RecurringRule]:
        user_id = require_user(user_id)
        items = await self.store.query(Collection.RECURRING, user_id)
        return [RecurringRule.from_item(item) for item in items]

    async def delete(self, user_id: str, rule_id: str) -> None:
        user_id = require_user(user_id)
        await self.get(user_id, rule_id)
        await self.store.delete_item(DeleteItem(
            collection=Collection.RECURRING,
            user_id=user_id,
            key=rule_id,
            condition=Condition.MUST_EXIST,
        ))
        self._audit(AuditEventType.ENTITY_DELETED, user_id, rule_id)
