"""
Audit Models for PocketLedger

Every balance-affecting write and every batch job decision is logged.
This provides:
1. Traceability of how each balance got to its value
2. Debugging information when a write conflicts or a rule is skipped
3. Identifying keys (userId, txnId, ruleId) on every batch failure

DESIGN DECISION: Audit events are append-only. We never delete or modify them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Grouped by the component that emits them.
    """
    # Transaction consistency engine
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_AMENDED = "transaction_amended"
    TRANSACTION_MOVED = "transaction_moved"
    TRANSACTION_DELETED = "transaction_deleted"
    WRITE_CONFLICT = "write_conflict"

    # Catalog (accounts, categories, budgets, rules)
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_DELETED = "entity_deleted"

    # Recurring materializer
    RECURRING_MATERIALIZED = "recurring_materialized"
    RECURRING_SKIPPED = "recurring_skipped"
    RECURRING_FAILED = "recurring_failed"

    # FX refresher
    FX_RATES_LOADED = "fx_rates_loaded"
    FX_PROVIDER_DEGRADED = "fx_provider_degraded"
    FX_TRANSACTION_REFRESHED = "fx_transaction_refreshed"
    FX_REFRESH_FAILED = "fx_refresh_failed"

    # Reconciliation
    BALANCE_DRIFT_DETECTED = "balance_drift_detected"

    # Jobs
    JOB_COMPLETED = "job_completed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    user_id: Optional[str] = Field(
        default=None,
        description="Owner of the ledger partition"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'account', 'rule')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Key of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one job run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(user_id, txn_id, ...)
        event = AuditEventBuilder.recurring_failed(user_id, rule_id, error, cid)
    """

    @staticmethod
    def transaction_created(
        user_id: str,
        txn_id: str,
        account_id: str,
        delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=txn_id,
            correlation_id=correlation_id,
            description=f"Transaction created, balance delta {delta}",
            details={
                "account_id": account_id,
                "delta": delta,
            },
        )

    @staticmethod
    def transaction_amended(
        user_id: str,
        txn_id: str,
        moved: bool,
        adjustments: dict[str, str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.TRANSACTION_MOVED
                if moved
                else AuditEventType.TRANSACTION_AMENDED
            ),
            user_id=user_id,
            entity_type="transaction",
            entity_id=txn_id,
            correlation_id=correlation_id,
            description=(
                "Transaction moved to a new sort key"
                if moved
                else "Transaction amended in place"
            ),
            details={
                "balance_adjustments": adjustments,
            },
        )

    @staticmethod
    def transaction_deleted(
        user_id: str,
        txn_id: str,
        account_id: str,
        delta: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            user_id=user_id,
            entity_type="transaction",
            entity_id=txn_id,
            correlation_id=correlation_id,
            description=f"Transaction deleted, balance delta {delta}",
            details={
                "account_id": account_id,
                "delta": delta,
            },
        )

    @staticmethod
    def write_conflict(
        user_id: str,
        entity_type: str,
        entity_id: str,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WRITE_CONFLICT,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Conditional write rejected during {operation}",
            error_message=error_message,
            details={
                "operation": operation,
            },
        )

    @staticmethod
    def entity_changed(
        event_type: AuditEventType,
        user_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        verb = {
            AuditEventType.ENTITY_CREATED: "created",
            AuditEventType.ENTITY_UPDATED: "updated",
            AuditEventType.ENTITY_DELETED: "deleted",
        }.get(event_type, "changed")
        return AuditEvent(
            event_type=event_type,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"{entity_type.capitalize()} {verb}",
            details=details or {},
        )

    @staticmethod
    def recurring_materialized(
        user_id: str,
        rule_id: str,
        txn_id: str,
        next_run: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_MATERIALIZED,
            user_id=user_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description=f"Recurring rule fired, next run {next_run}",
            details={
                "txn_id": txn_id,
                "next_run": next_run,
            },
        )

    @staticmethod
    def recurring_skipped(
        user_id: Optional[str],
        rule_id: Optional[str],
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_SKIPPED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description="Malformed recurring rule skipped",
            details={
                "reason": reason,
            },
        )

    @staticmethod
    def recurring_failed(
        user_id: str,
        rule_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description="Failed to materialise recurring transaction",
            error_message=error_message,
        )

    @staticmethod
    def fx_rates_loaded(
        base_currency: str,
        rate_count: int,
        source: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FX_RATES_LOADED,
            correlation_id=correlation_id,
            description=f"Loaded {rate_count} rates to {base_currency} from {source}",
            details={
                "base_currency": base_currency,
                "rate_count": rate_count,
                "source": source,
            },
        )

    @staticmethod
    def fx_provider_degraded(
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FX_PROVIDER_DEGRADED,
            severity=AuditSeverity.WARNING,
            correlation_id=correlation_id,
            description="Rate provider unavailable, using fallback rates",
            error_message=error_message,
        )

    @staticmethod
    def fx_transaction_refreshed(
        user_id: str,
        sk: str,
        old_rate: str,
        new_rate: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FX_TRANSACTION_REFRESHED,
            severity=AuditSeverity.DEBUG,
            user_id=user_id,
            entity_type="transaction",
            entity_id=sk,
            correlation_id=correlation_id,
            description=f"fx_rate_to_base {old_rate} -> {new_rate}",
            details={
                "old_rate": old_rate,
                "new_rate": new_rate,
            },
        )

    @staticmethod
    def fx_refresh_failed(
        user_id: Optional[str],
        sk: Optional[str],
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FX_REFRESH_FAILED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="transaction",
            entity_id=sk,
            correlation_id=correlation_id,
            description="Failed to refresh transaction FX rate",
            error_message=error_message,
        )

    @staticmethod
    def balance_drift(
        user_id: str,
        account_id: str,
        stored: str,
        expected: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_DRIFT_DETECTED,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Stored balance {stored} != recomputed {expected}",
            details={
                "stored_balance": stored,
                "expected_balance": expected,
            },
        )

    @staticmethod
    def job_completed(
        job: str,
        summary: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.JOB_COMPLETED,
            correlation_id=correlation_id,
            description=f"Job finished: {job}",
            details=summary,
        )
