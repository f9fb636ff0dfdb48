"""Enumerations shared across the shop ledger modules.

The data access layer, the ledger, the aggregators and the CLI all rely on
these identifiers, so they live in one place.
"""

from __future__ import annotations

from enum import Enum, IntEnum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionStatus(str, Enum):
    """Lifecycle states of a recorded session."""

    ACTIVE = "ACTIVE"
    SUPERSEDED = "SUPERSEDED"
    VOID = "VOID"


class PaymentStatus(str, Enum):
    """Fee-payment standing of a staff member."""

    NEVER = "never"
    CURRENT = "current"
    OVERDUE = "overdue"


class StaffPaymentType(str, Enum):
    """Kinds of fee payment handed to staff."""

    REGULAR = "regular"
    ADVANCE = "advance"


class RosterStatus(str, Enum):
    """Read-time availability of a roster entry."""

    AVAILABLE = "available"
    BUSY = "busy"


class Weekday(IntEnum):
    """Weekday numbers matching :meth:`datetime.date.weekday`."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRICING_RULES = "PricingRules"
    TRANSACTIONS = "Transactions"
    STAFF_PAYMENTS = "StaffPayments"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionStatus",
    "PaymentStatus",
    "StaffPaymentType",
    "RosterStatus",
    "Weekday",
    "SheetName",
]
