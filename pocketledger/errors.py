"""
Error Taxonomy

Every failure the ledger can surface belongs to exactly one of these
kinds. Each carries the status code a request handler should answer
with, so the mapping lives in one place.

- ValidationError: bad input shape or range, user-correctable
- NotFoundError: a referenced entity is absent
- ConflictError: a conditional write lost a race or broke uniqueness
- DependencyError: storage or an external service failed
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        """Response body for this error."""
        return {"message": self.message, "details": self.details}


class ValidationError(LedgerError):
    """Input failed validation. Nothing was written."""

    status_code = 400


class AuthenticationError(LedgerError):
    """No usable authenticated user id."""

    status_code = 401


class NotFoundError(LedgerError):
    """A referenced entity does not exist."""

    status_code = 404


class ConflictError(LedgerError):
    """
    A write condition did not hold.

    The caller should re-read and retry. The ledger itself never retries,
    because replaying a balance delta could apply it twice.
    """

    status_code = 409


class DependencyError(LedgerError):
    """Storage backend or external service failure."""

    status_code = 503


class StorageError(DependencyError):
    """The storage backend failed (not a condition failure)."""
    pass
