"""Error taxonomy raised by the shop ledger core.

Every error is terminal for the call that raised it: nothing in the package
retries or swallows these, and any partial ledger write has already been
rolled back by the time the caller sees one.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all domain errors raised by the package."""


class ValidationError(LedgerError):
    """Raised when an input field is missing or malformed."""


class PricingNotFoundError(LedgerError):
    """Raised when no pricing rule matches a location/service/duration."""


class NotFoundError(LedgerError):
    """Raised when a transaction, staff member, or roster slot is unknown."""


class ConflictError(LedgerError):
    """Raised when a write targets a transaction that is no longer ``ACTIVE``.

    Usually the symptom of a lost update or a duplicate submission; callers
    should re-fetch and retry with fresh data.
    """


__all__ = [
    "LedgerError",
    "ValidationError",
    "PricingNotFoundError",
    "NotFoundError",
    "ConflictError",
]
