"""Exception hierarchy raised by the trade ledger engines."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error raised on purpose by the package."""


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced party, bill, or position is unknown."""


class AllocationError(BusinessRuleViolation):
    """Raised by the opt-in allocation gate when a voucher over-allocates."""

    def __init__(self, message: str, issues: tuple = ()) -> None:
        super().__init__(message)
        self.issues = issues
