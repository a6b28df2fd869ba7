"""
Audit Logger

DESIGN DECISION: Every balance-affecting write and every batch job
decision is logged. This provides:
1. Complete traceability
2. Debugging capability for write conflicts
3. Identifying keys for every skipped or failed batch item

The audit logger:
- Never raises (a logging failure must not undo or block a ledger write)
- Supports correlation IDs to trace all events of one job run
"""

from collections import deque
from typing import Optional
from uuid import UUID, uuid4

import structlog

from pocketledger.models.audit import AuditEvent, AuditEventBuilder, AuditEventType


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Every event goes to the structured log. The most recent events are
    also kept in memory, up to max_events, so callers and tests can
    inspect what happened. Long-lived loggers shared by request
    handlers are built with keep_events=False.
    """

    def __init__(self, keep_events: bool = True, max_events: int = 1000):
        self._logger = structlog.get_logger("pocketledger.audit")
        self._keep_events = keep_events
        self.events: deque[AuditEvent] = deque(maxlen=max_events)

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        if self._keep_events:
            self.events.append(event)

        log_dict = event.to_log_dict()
        try:
            if event.severity.value in ("error", "critical"):
                self._logger.error("audit_event", **log_dict)
            elif event.severity.value == "warning":
                self._logger.warning("audit_event", **log_dict)
            elif event.severity.value == "debug":
                self._logger.debug("audit_event", **log_dict)
            else:
                self._logger.info("audit_event", **log_dict)
        except Exception as e:
            # Logging must never break a ledger operation
            self._logger.error(
                "audit_log_failed",
                error=str(e),
                event_id=str(event.event_id),
            )

    def events_of(self, event_type: AuditEventType) -> list[AuditEvent]:
        """Kept events of one type, oldest first."""
        return [e for e in self.events if e.event_type == event_type]

    def log_write_conflict(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a rejected conditional write."""
        self.log(AuditEventBuilder.write_conflict(
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    def log_job_completed(
        self,
        job: str,
        summary: dict,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the end-of-run summary of a batch job."""
        self.log(AuditEventBuilder.job_completed(
            job=job,
            summary=summary,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a request or job run.
    Pass it through all subsequent operations.
    """
    return uuid4()
