"""
Recurring Materializer

Scheduled job that turns due recurring rules into posted transactions.

DESIGN DECISION: One occurrence per rule per run. nextRun advances by
one frequency unit from the MISSED nextRun, not from now, so a rule
that is three periods behind needs three runs to catch up, and every
missed period still gets exactly one transaction.

A due rule is first checked against its account and category the way
the engine checks a new transaction. A rule whose account or category
is gone, or no longer matches its currency or type, is malformed.

Each firing is ONE transact_write of four items:
1. Put the new transaction (must not exist)
2. Increment the account balance (account must exist, currency unchanged)
3. Count the transaction on its category (category type unchanged)
4. Advance the rule's nextRun (rule must exist, nextRun unchanged)

The nextRun guard means two overlapping runs cannot both fire the same
occurrence; the loser gets ConflictError and counts it as a failure.

Malformed rules are skipped and logged, failures are logged with the
rule's keys, and neither stops the scan.
"""

import calendar
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from pocketledger.audit import AuditLogger, create_correlation_id
from pocketledger.errors import LedgerError, ValidationError
from pocketledger.ledger.engine import balance_update, category_reference
from pocketledger.ledger.money import (
    MAX_RATE_PLACES,
    ensure_currency_match,
    require_positive,
    to_base,
    type_to_delta,
)
from pocketledger.models.audit import AuditEventBuilder
from pocketledger.models.ledger import (
    Account,
    Category,
    Frequency,
    RecurringRule,
    Transaction,
    build_sort_key,
    parse_timestamp,
    to_iso,
    utc_now,
)
from pocketledger.services.storage import (
    Collection,
    Condition,
    LedgerStoreInterface,
    PutItem,
    UpdateItem,
)


logger = structlog.get_logger("pocketledger.jobs.recurring")


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month addition, clamped to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_next_run(frequency: Any, reference: datetime) -> datetime:
    """
    The run after `reference` for a cadence.

    Raises:
        ValueError: Unknown frequency
    """
    frequency = Frequency(getattr(frequency, "value", frequency))
    if frequency == Frequency.DAILY:
        return reference + timedelta(days=1)
    if frequency == Frequency.WEEKLY:
        return reference + timedelta(days=7)
    if frequency == Frequency.MONTHLY:
        return add_months(reference, 1)
    if frequency == Frequency.QUARTERLY:
        return add_months(reference, 3)
    return add_months(reference, 12)


def item_key(item: dict, field: str) -> Optional[str]:
    """Identifying key of a raw item, for logging malformed records."""
    value = item.get(field)
    return str(value) if value is not None else None


class RecurringRunReport(BaseModel):
    """Outcome of one materializer run."""
    correlation_id: UUID
    started_at: datetime
    pages: int = 0
    scanned: int = 0
    materialized: int = 0
    not_due: int = 0
    skipped: int = 0
    failed: int = 0
    cursor: Optional[str] = Field(
        default=None,
        description="Resume point when max_pages stopped the scan early"
    )

    @property
    def completed(self) -> bool:
        return self.cursor is None

    def summary(self) -> dict:
        return self.model_dump(mode="json", exclude={"correlation_id"})


class RecurringMaterializer:
    """
    Usage::

        job = RecurringMaterializer(store)
        report = await job.run()
        while not report.completed:
            report = await job.run(cursor=report.cursor, max_pages=10)
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        page_size: int = 100,
    ):
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self._clock = clock or utc_now
        self.page_size = page_size

    async def run(
        self,
        cursor: Optional[str] = None,
        max_pages: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> RecurringRunReport:
        now = parse_timestamp(self._clock(), "now")
        report = RecurringRunReport(
            correlation_id=correlation_id or create_correlation_id(),
            started_at=now,
        )
        logger.info("recurring_run_started", correlation_id=str(report.correlation_id))

        while True:
            page = await self.store.scan(
                Collection.RECURRING, cursor=cursor, limit=self.page_size
            )
            report.pages += 1
            for item in page.items:
                report.scanned += 1
                await self._process(item, now, report)

            cursor = page.cursor
            if cursor is None:
                break
            if max_pages is not None and report.pages >= max_pages:
                break

        report.cursor = cursor
        self.audit_logger.log_job_completed(
            "recurring", report.summary(), report.correlation_id
        )
        logger.info("recurring_run_finished", **report.summary())
        return report

    async def _process(self, item: dict, now: datetime, report: RecurringRunReport) -> None:
        user_id = item_key(item, "userId")
        rule_id = item_key(item, "ruleId")

        try:
            rule = RecurringRule.from_item(item)
            template = rule.template
            amount = require_positive(template.amount, "template.amount")
            rate = rule.base_fx if rule.base_fx is not None and rule.base_fx > 0 else 1
            rate = require_positive(rate, "baseFx", MAX_RATE_PLACES)
            next_run = compute_next_run(rule.frequency, rule.next_run)
        except (PydanticValidationError, ValidationError, ValueError) as e:
            reason = e.message if isinstance(e, LedgerError) else str(e)
            self._skip(user_id, rule_id, reason, report)
            return

        if rule.next_run > now:
            report.not_due += 1
            return

        try:
            account, category = await self._load_references(rule)
        except ValidationError as e:
            self._skip(user_id, rule_id, e.message, report)
            return

        txn_id = str(uuid4())
        txn = Transaction(
            user_id=rule.user_id,
            sk=build_sort_key(now, txn_id),
            txn_id=txn_id,
            account_id=account.account_id,
            category_id=category.category_id,
            type=template.type,
            amount=amount,
            currency=account.currency,
            fx_rate_to_base=rate,
            amount_base=to_base(amount, rate),
            note=template.note,
            tags=template.tags,
            occurred_at=now,
            created_at=now,
            updated_at=now,
        )

        try:
            await self.store.transact_write([
                PutItem(
                    collection=Collection.TRANSACTIONS,
                    item=txn.to_item(),
                    condition=Condition.MUST_NOT_EXIST,
                ),
                balance_update(
                    rule.user_id,
                    account.account_id,
                    type_to_delta(txn.type, amount),
                    now,
                    account.currency,
                ),
                category_reference(rule.user_id, category, 1),
                UpdateItem(
                    collection=Collection.RECURRING,
                    user_id=rule.user_id,
                    key=rule.rule_id,
                    set_fields={"nextRun": to_iso(next_run), "updatedAt": to_iso(now)},
                    expected={"nextRun": item["nextRun"]},
                    condition=Condition.MUST_EXIST,
                ),
            ])
        except Exception as e:
            report.failed += 1
            message = e.message if isinstance(e, LedgerError) else str(e)
            logger.error(
                "recurring_rule_failed",
                user_id=rule.user_id,
                rule_id=rule.rule_id,
                error=message,
            )
            self.audit_logger.log(AuditEventBuilder.recurring_failed(
                user_id=rule.user_id,
                rule_id=rule.rule_id,
                error_message=message,
                correlation_id=report.correlation_id,
            ))
            return

        report.materialized += 1
        self.audit_logger.log(AuditEventBuilder.recurring_materialized(
            user_id=rule.user_id,
            rule_id=rule.rule_id,
            txn_id=txn_id,
            next_run=to_iso(next_run),
            correlation_id=report.correlation_id,
        ))

    async def _load_references(self, rule: RecurringRule) -> tuple[Account, Category]:
        """
        The template's account and category, checked the way the engine
        checks a new transaction.

        Raises:
            ValidationError: Either record is gone or no longer fits the
                template (the account currency or category type changed)
        """
        template = rule.template
        account_item = await self.store.get_item(
            Collection.ACCOUNTS, rule.user_id, template.account_id
        )
        if account_item is None:
            raise ValidationError("Template account not found")
        category_item = await self.store.get_item(
            Collection.CATEGORIES, rule.user_id, template.category_id
        )
        if category_item is None:
            raise ValidationError("Template category not found")

        account = Account.from_item(account_item)
        category = Category.from_item(category_item)
        if category.type != template.type:
            raise ValidationError("Template type must match category type")
        ensure_currency_match(template.currency, account.currency)
        return account, category

    def _skip(
        self,
        user_id: Optional[str],
        rule_id: Optional[str],
        reason: str,
        report: RecurringRunReport,
    ) -> None:
        report.skipped += 1
        logger.warning(
            "recurring_rule_skipped", user_id=user_id, rule_id=rule_id, reason=reason
        )
        self.audit_logger.log(AuditEventBuilder.recurring_skipped(
            user_id=user_id,
            rule_id=rule_id,
            reason=reason,
            correlation_id=report.correlation_id,
        ))
