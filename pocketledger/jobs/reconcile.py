"""
Balance Reconciler

Report-only safety net for the denormalized running balance.

For every account, recompute openingBalance + sum of signed transaction
amounts and compare it with the stored currentBalance. Mismatches are
reported and logged as BALANCE_DRIFT_DETECTED events. Nothing is
written: whether drift should be corrected automatically is left to an
operator.

Accounts are scanned in (userId, accountId) order, so one user's
transactions are loaded once and reused for all of that user's accounts.
"""

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from pocketledger.audit import AuditLogger, create_correlation_id
from pocketledger.errors import LedgerError
from pocketledger.jobs.recurring import item_key
from pocketledger.ledger.money import to_decimal, type_to_delta
from pocketledger.models.audit import AuditEventBuilder
from pocketledger.models.ledger import SORT_KEY_PREFIX, parse_timestamp, utc_now
from pocketledger.services.storage import Collection, LedgerStoreInterface


logger = structlog.get_logger("pocketledger.jobs.reconcile")


class AccountDrift(BaseModel):
    user_id: str
    account_id: str
    stored: Decimal
    expected: Decimal

    @property
    def difference(self) -> Decimal:
        return self.stored - self.expected


class ReconcileReport(BaseModel):
    """Outcome of one reconciliation run."""
    correlation_id: UUID
    started_at: datetime
    pages: int = 0
    accounts_checked: int = 0
    drifted: int = 0
    failed: int = 0
    drift: list[AccountDrift] = Field(default_factory=list)
    cursor: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.cursor is None

    def summary(self) -> dict:
        return self.model_dump(mode="json", exclude={"correlation_id", "drift"})


async def account_sums(store: LedgerStoreInterface, user_id: str) -> dict[str, Decimal]:
    """Signed transaction total per account for one user."""
    sums: dict[str, Decimal] = defaultdict(Decimal)
    items = await store.query(
        Collection.TRANSACTIONS, user_id, begins_with=SORT_KEY_PREFIX
    )
    for item in items:
        amount = to_decimal(item.get("amount"), "amount")
        sums[item.get("accountId")] += type_to_delta(item.get("type"), amount)
    return dict(sums)


class _UserSums:
    """Sums of the most recently seen user, owned by a single run."""

    def __init__(self, store: LedgerStoreInterface):
        self.store = store
        self.user_id: Optional[str] = None
        self.sums: dict[str, Decimal] = {}

    async def for_user(self, user_id: str) -> dict[str, Decimal]:
        if self.user_id != user_id:
            self.sums = await account_sums(self.store, user_id)
            self.user_id = user_id
        return self.sums


class BalanceReconciler:
    def __init__(
        self,
        store: LedgerStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        page_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self.page_size = page_size
        self._clock = clock or utc_now

    async def run(
        self,
        cursor: Optional[str] = None,
        max_pages: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> ReconcileReport:
        report = ReconcileReport(
            correlation_id=correlation_id or create_correlation_id(),
            started_at=parse_timestamp(self._clock(), "now"),
        )
        sums_cache = _UserSums(self.store)

        while True:
            page = await self.store.scan(
                Collection.ACCOUNTS, cursor=cursor, limit=self.page_size
            )
            report.pages += 1
            for item in page.items:
                await self._check(item, sums_cache, report)

            cursor = page.cursor
            if cursor is None:
                break
            if max_pages is not None and report.pages >= max_pages:
                break

        report.cursor = cursor
        self.audit_logger.log_job_completed(
            "reconcile", report.summary(), report.correlation_id
        )
        logger.info("reconcile_run_finished", **report.summary())
        return report

    async def _check(
        self,
        item: dict,
        sums_cache: "_UserSums",
        report: ReconcileReport,
    ) -> None:
        user_id = item_key(item, "userId")
        account_id = item_key(item, "accountId")
        try:
            sums = await sums_cache.for_user(user_id)
            opening = to_decimal(item.get("openingBalance", 0), "openingBalance")
            stored = to_decimal(item.get("currentBalance", 0), "currentBalance")
        except LedgerError as e:
            report.failed += 1
            logger.error(
                "reconcile_account_failed",
                user_id=user_id,
                account_id=account_id,
                error=e.message,
            )
            return

        report.accounts_checked += 1
        expected = opening + sums.get(account_id, Decimal("0"))
        if stored == expected:
            return

        report.drifted += 1
        report.drift.append(AccountDrift(
            user_id=user_id,
            account_id=account_id,
            stored=stored,
            expected=expected,
        ))
        self.audit_logger.log(AuditEventBuilder.balance_drift(
            user_id=user_id,
            account_id=account_id,
            stored=str(stored),
            expected=str(expected),
            correlation_id=report.correlation_id,
        ))
