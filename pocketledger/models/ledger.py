"""
Core Data Models for PocketLedger

These models define the schemas for every record the ledger persists
and every payload it accepts. They are designed to:
1. Keep the persisted field names stable (camelCase aliases)
2. Provide clear validation error messages
3. Round-trip through any store as plain JSON-compatible mappings

DESIGN DECISION: Python code uses snake_case attributes, storage uses the
aliased names (userId, accountId, currentBalance, ...). Records are
written with to_item() and read back with from_item(), never as raw dicts.
"""

import calendar
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional, TypeVar
from uuid import uuid4

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError as PydanticValidationError,
    field_validator,
)

from pocketledger.errors import ValidationError


# =============================================================================
# TIMESTAMPS
# =============================================================================

def normalize_timestamp(value: datetime) -> datetime:
    """UTC, millisecond precision. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return normalize_timestamp(datetime.now(timezone.utc))


def to_iso(value: datetime) -> str:
    """
    Render as 2024-03-01T12:00:00.000Z.

    Fixed width, so string order is chronological order. Sort keys
    depend on this.
    """
    value = normalize_timestamp(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any, field: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string (or datetime) into a normalized datetime."""
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a valid ISO8601 timestamp")

    text = value.strip()
    if text[-1] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{field} must be a valid ISO8601 timestamp")
    return normalize_timestamp(parsed)


def _coerce_timestamp(value: Any) -> datetime:
    try:
        return parse_timestamp(value)
    except ValidationError as e:
        raise ValueError(e.message)


Timestamp = Annotated[
    datetime,
    BeforeValidator(_coerce_timestamp),
    PlainSerializer(to_iso, return_type=str),
]


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _decimal_input(value: Any) -> Any:
    """Floats go through str() so 0.1 stays 0.1; booleans are not numbers."""
    if isinstance(value, bool):
        raise ValueError("must be a number")
    if isinstance(value, float):
        return str(value)
    return value


def _clean_tags(value: Any) -> Any:
    """Trim tags and drop blank ones."""
    if value is None:
        return []
    if isinstance(value, list):
        return [t.strip() for t in value if isinstance(t, str) and t.strip()]
    return value


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Kinds of account a user can hold."""
    CASH = "cash"
    BANK = "bank"
    CARD = "card"
    CRYPTO = "crypto"


class TransactionType(str, Enum):
    """
    Direction of money flow.

    Categories share this enum: a transaction's type must equal its
    category's type.
    """
    EXPENSE = "expense"
    INCOME = "income"


class Frequency(str, Enum):
    """Recurring rule cadence."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


# Case-insensitive on input
AccountTypeField = Annotated[AccountType, BeforeValidator(_lower)]
TransactionTypeField = Annotated[TransactionType, BeforeValidator(_lower)]
FrequencyField = Annotated[Frequency, BeforeValidator(_lower)]
Tags = Annotated[list[str], BeforeValidator(_clean_tags)]
Money = Annotated[Decimal, BeforeValidator(_decimal_input)]


# =============================================================================
# PERSISTED RECORDS
# =============================================================================

class LedgerRecord(BaseModel):
    """Base for every persisted record."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    def to_item(self) -> dict:
        """JSON-compatible mapping with the persisted field names."""
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_item(cls, item: dict):
        return cls.model_validate(item)


class Account(LedgerRecord):
    """
    A place money lives.

    current_balance is a running aggregate:
    opening_balance + sum of signed amounts of posted transactions.
    Only the transaction engine and the recurring job move it.
    """
    user_id: str = Field(..., alias="userId", min_length=1)
    account_id: str = Field(
        default_factory=lambda: str(uuid4()),
        alias="accountId",
    )
    name: str = Field(..., min_length=1, max_length=200)
    type: AccountTypeField
    currency: str = Field(..., min_length=3, max_length=3)
    opening_balance: Money = Field(default=Decimal("0"), alias="openingBalance")
    current_balance: Money = Field(default=Decimal("0"), alias="currentBalance")
    archived: bool = False
    created_at: Timestamp = Field(default_factory=utc_now, alias="createdAt")
    updated_at: Timestamp = Field(default_factory=utc_now, alias="updatedAt")


class Category(LedgerRecord):
    """
    Expense or income bucket with display metadata.

    txn_count is maintained by the transaction writes that reference the
    category, never set directly.
    """
    user_id: str = Field(..., alias="userId", min_length=1)
    category_id: str = Field(
        default_factory=lambda: str(uuid4()),
        alias="categoryId",
    )
    name: str = Field(..., min_length=1, max_length=200)
    type: TransactionTypeField
    color: str = "#36c"
    icon: str = "📦"
    txn_count: int = Field(default=0, alias="txnCount")
    created_at: Timestamp = Field(default_factory=utc_now, alias="createdAt")
    updated_at: Timestamp = Field(default_factory=utc_now, alias="updatedAt")


SORT_KEY_PREFIX = "DT#"


def build_sort_key(occurred_at: datetime, txn_id: str) -> str:
    """Occurrence time first, transaction id as tiebreaker."""
    return f"{SORT_KEY_PREFIX}{to_iso(occurred_at)}#TX#{txn_id}"


class Transaction(LedgerRecord):
    """
    A single posted money movement.

    The sort key is part of identity. Changing occurred_at means the
    record moves to a new key.
    """
    user_id: str = Field(..., alias="userId", min_length=1)
    sk: str
    txn_id: str = Field(..., alias="txnId")
    account_id: str = Field(..., alias="accountId")
    category_id: str = Field(..., alias="categoryId")
    type: TransactionTypeField
    amount: Money
    currency: str
    fx_rate_to_base: Money = Decimal("1")
    amount_base: Money
    note: Optional[str] = None
    tags: Tags = Field(default_factory=list)
    occurred_at: Timestamp = Field(..., alias="occurredAt")
    created_at: Timestamp = Field(default_factory=utc_now, alias="createdAt")
    updated_at: Timestamp = Field(default_factory=utc_now, alias="updatedAt")


MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def period_key(month: str, category_id: Optional[str]) -> str:
    return f"{month}#{category_id or 'all'}"


def month_bounds(month: str) -> tuple[datetime, datetime]:
    """First and last millisecond of a YYYY-MM month, UTC."""
    year, month_number = (int(part) for part in month.split("-"))
    last_day = calendar.monthrange(year, month_number)[1]
    start = datetime(year, month_number, 1, tzinfo=timezone.utc)
    end = datetime(
        year, month_number, last_day, 23, 59, 59, 999000, tzinfo=timezone.utc
    )
    return start, end


class Budget(LedgerRecord):
    """Monthly spending target, for one category or the whole ledger."""
    user_id: str = Field(..., alias="userId", min_length=1)
    period_cat: str = Field(..., alias="periodCat")
    month: str = Field(..., pattern=MONTH_PATTERN)
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    currency: str = Field(..., min_length=3, max_length=3)
    limit: Money = Field(..., gt=0)
    alert_threshold: float = Field(default=0.9, gt=0.0, le=1.5, alias="alertThreshold")
    rollover: bool = False
    period_start: Timestamp = Field(..., alias="periodStart")
    period_end: Timestamp = Field(..., alias="periodEnd")
    created_at: Timestamp = Field(default_factory=utc_now, alias="createdAt")
    updated_at: Timestamp = Field(default_factory=utc_now, alias="updatedAt")


class RecurringTemplate(LedgerRecord):
    """The transaction a recurring rule stamps out each time it fires."""
    account_id: str = Field(..., alias="accountId", min_length=1)
    category_id: str = Field(..., alias="categoryId", min_length=1)
    type: TransactionTypeField
    amount: Money = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    note: Optional[str] = None
    tags: Tags = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class RecurringRule(LedgerRecord):
    """
    A schedule plus a template.

    next_run is advanced by exactly one frequency unit each time the
    rule fires, counted from the missed next_run rather than from now.
    """
    user_id: str = Field(..., alias="userId", min_length=1)
    rule_id: str = Field(
        default_factory=lambda: str(uuid4()),
        alias="ruleId",
    )
    frequency: FrequencyField
    next_run: Timestamp = Field(..., alias="nextRun")
    template: RecurringTemplate
    base_fx: Optional[Money] = Field(default=None, alias="baseFx")
    created_at: Optional[Timestamp] = Field(default=None, alias="createdAt")
    updated_at: Optional[Timestamp] = Field(default=None, alias="updatedAt")


# =============================================================================
# REQUEST PAYLOADS
# =============================================================================

class Payload(BaseModel):
    """Base for inbound request bodies."""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    def provided(self) -> set[str]:
        """Names of fields the caller actually sent."""
        return set(self.model_fields_set)


class TransactionCreate(Payload):
    account_id: str = Field(..., alias="accountId", min_length=1)
    category_id: str = Field(..., alias="categoryId", min_length=1)
    type: TransactionTypeField
    amount: Money
    currency: Optional[str] = None
    occurred_at: Optional[Timestamp] = Field(default=None, alias="occurredAt")
    fx_rate_to_base: Optional[Money] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    tags: Tags = Field(default_factory=list)


class TransactionUpdate(Payload):
    """Partial amendment. Omitted fields keep their current value."""
    account_id: Optional[str] = Field(default=None, alias="accountId", min_length=1)
    category_id: Optional[str] = Field(default=None, alias="categoryId", min_length=1)
    type: Optional[TransactionTypeField] = None
    amount: Optional[Money] = None
    currency: Optional[str] = None
    occurred_at: Optional[Timestamp] = Field(default=None, alias="occurredAt")
    fx_rate_to_base: Optional[Money] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    tags: Optional[Tags] = None


class AccountCreate(Payload):
    name: str = Field(..., min_length=2, max_length=200)
    type: AccountTypeField
    currency: str
    opening_balance: Money = Field(default=Decimal("0"), alias="openingBalance")
    archived: bool = False


class AccountUpdate(Payload):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    type: Optional[AccountTypeField] = None
    currency: Optional[str] = None
    opening_balance: Optional[Money] = Field(default=None, alias="openingBalance")
    archived: Optional[bool] = None


class CategoryCreate(Payload):
    name: str = Field(..., min_length=2, max_length=200)
    type: TransactionTypeField
    color: Optional[str] = None
    icon: Optional[str] = None


class CategoryUpdate(Payload):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    type: Optional[TransactionTypeField] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class BudgetCreate(Payload):
    month: str = Field(..., pattern=MONTH_PATTERN)
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    currency: str
    limit: Money = Field(..., gt=0)
    alert_threshold: Optional[float] = Field(
        default=None, gt=0.0, le=1.5, alias="alertThreshold"
    )
    rollover: bool = False


class BudgetUpdate(Payload):
    currency: Optional[str] = None
    limit: Optional[Money] = Field(default=None, gt=0)
    alert_threshold: Optional[float] = Field(
        default=None, gt=0.0, le=1.5, alias="alertThreshold"
    )
    rollover: Optional[bool] = None


class RecurringRuleCreate(Payload):
    frequency: FrequencyField
    next_run: Optional[Timestamp] = Field(default=None, alias="nextRun")
    template: RecurringTemplate
    base_fx: Optional[Money] = Field(default=None, gt=0, alias="baseFx")


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: type[PayloadT], data: Any) -> PayloadT:
    """
    Validate a request body.

    Pydantic errors become a ValidationError listing each bad field,
    so callers only ever deal with the ledger's own error types.
    """
    if isinstance(data, model):
        return data
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        issues = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        first = issues[0] if issues else {"field": "body", "message": "invalid"}
        raise ValidationError(
            f"Invalid {first['field']}: {first['message']}",
            details=issues,
        )
