"""
FX Refresher

Scheduled job that re-prices every non-base transaction at the latest
rate-to-base.

DESIGN DECISION: Only fx_rate_to_base, amount_base and updatedAt change.
Account balances are kept in account currency, so a rate change never
touches them. Each refresh is a single-item update guarded on the
amount, currency and updatedAt that were scanned: if the transaction
was amended meanwhile, the stale re-price is rejected instead of
overwriting the amendment.

Rate changes below epsilon are ignored, so running the job twice in a
row writes nothing the second time.
"""

from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from pocketledger.audit import AuditLogger, create_correlation_id
from pocketledger.errors import LedgerError
from pocketledger.jobs.recurring import item_key
from pocketledger.ledger.money import (
    FX_EPSILON,
    rate_changed,
    require_positive,
    to_base,
)
from pocketledger.models.audit import AuditEventBuilder
from pocketledger.models.ledger import parse_timestamp, to_iso, utc_now
from pocketledger.services.fx import RateTable
from pocketledger.services.storage import (
    Collection,
    Condition,
    LedgerStoreInterface,
    UpdateItem,
)


logger = structlog.get_logger("pocketledger.jobs.fx_refresh")

RateTableLoader = Callable[[Optional[UUID]], Awaitable[RateTable]]


class FxRunReport(BaseModel):
    """Outcome of one refresher run."""
    correlation_id: UUID
    started_at: datetime
    base_currency: str
    rate_source: str = "fallback"
    pages: int = 0
    scanned: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_base: int = 0
    skipped_no_rate: int = 0
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


class FxRefresher:
    """
    Usage::

        loader = functools.partial(load_rate_table, "USD", provider, fallback)
        job = FxRefresher(store, loader, base_currency="USD")
        report = await job.run()
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        rate_table_loader: RateTableLoader,
        base_currency: str = "USD",
        epsilon: Decimal = FX_EPSILON,
        audit_logger: Optional[AuditLogger] = None,
        page_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.rate_table_loader = rate_table_loader
        self.base_currency = base_currency.upper()
        self.epsilon = epsilon
        self.audit_logger = audit_logger or AuditLogger()
        self.page_size = page_size
        self._clock = clock or utc_now

    async def run(
        self,
        cursor: Optional[str] = None,
        max_pages: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> FxRunReport:
        now = parse_timestamp(self._clock(), "now")
        report = FxRunReport(
            correlation_id=correlation_id or create_correlation_id(),
            started_at=now,
            base_currency=self.base_currency,
        )

        # Loaded once per run; every transaction sees the same table
        table = await self.rate_table_loader(report.correlation_id)
        report.rate_source = table.source
        logger.info(
            "fx_run_started",
            correlation_id=str(report.correlation_id),
            rate_count=len(table.rates),
            source=table.source,
        )

        while True:
            page = await self.store.scan(
                Collection.TRANSACTIONS, cursor=cursor, limit=self.page_size
            )
            report.pages += 1
            for item in page.items:
                report.scanned += 1
                await self._process(item, table, now, report)

            cursor = page.cursor
            if cursor is None:
                break
            if max_pages is not None and report.pages >= max_pages:
                break

        report.cursor = cursor
        self.audit_logger.log_job_completed(
            "fx_refresh", report.summary(), report.correlation_id
        )
        logger.info("fx_run_finished", **report.summary())
        return report

    async def _process(
        self,
        item: dict,
        table: RateTable,
        now: datetime,
        report: FxRunReport,
    ) -> None:
        currency = item.get("currency")
        if not isinstance(currency, str) or currency.upper() == self.base_currency:
            report.skipped_base += 1
            return

        latest = table.rate_for(currency)
        if latest is None or latest <= 0:
            report.skipped_no_rate += 1
            return

        current = item.get("fx_rate_to_base")
        if not rate_changed(current, latest, self.epsilon):
            report.unchanged += 1
            return

        user_id = item_key(item, "userId")
        sk = item_key(item, "sk")
        try:
            amount = require_positive(item.get("amount"), "amount")
            await self.store.update_item(UpdateItem(
                collection=Collection.TRANSACTIONS,
                user_id=user_id,
                key=sk,
                set_fields={
                    "fx_rate_to_base": str(latest),
                    "amount_base": str(to_base(amount, latest)),
                    "updatedAt": to_iso(now),
                },
                expected={
                    "amount": item.get("amount"),
                    "currency": currency,
                    "updatedAt": item.get("updatedAt"),
                },
                condition=Condition.MUST_EXIST,
            ))
        except Exception as e:
            report.failed += 1
            message = e.message if isinstance(e, LedgerError) else str(e)
            logger.error("fx_refresh_failed", user_id=user_id, sk=sk, error=message)
            self.audit_logger.log(AuditEventBuilder.fx_refresh_failed(
                user_id=user_id,
                sk=sk,
                error_message=message,
                correlation_id=report.correlation_id,
            ))
            return

        report.updated += 1
        self.audit_logger.log(AuditEventBuilder.fx_transaction_refreshed(
            user_id=user_id,
            sk=sk,
            old_rate=str(current),
            new_rate=str(latest),
            correlation_id=report.correlation_id,
        ))
