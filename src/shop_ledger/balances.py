"""Derived staff balances and daily totals.

Everything here is a pure function of the transaction and payment logs.
Only ``ACTIVE`` transactions count toward any figure: superseded and voided
rows stay in the ledger for audit but are never summed, which is what keeps a
corrected session from being counted twice.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from . import data_manager, log
from .constants import PaymentStatus, TransactionStatus, Weekday
from .errors import ValidationError
from .ledger import align_to


ZERO = Decimal("0")


@dataclass(frozen=True)
class BalancePolicy:
    """Tunable thresholds for payment status and the reporting week."""

    grace_period_days: int = data_manager.DEFAULT_GRACE_PERIOD_DAYS
    week_starts_on: Weekday = Weekday.MONDAY

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "BalancePolicy":
        return cls(
            grace_period_days=settings.grace_period_days,
            week_starts_on=settings.week_starts_on,
        )


@dataclass(frozen=True)
class StaffBalance:
    """A staff member's earned and paid fees as of a point in time."""

    staff_name: str
    total_fees_earned: Decimal
    total_fees_paid: Decimal
    outstanding_balance: Decimal
    this_week_sessions: int
    this_week_fees: Decimal
    last_payment_date: Optional[date]
    last_payment_amount: Optional[Decimal]
    payment_status: PaymentStatus


@dataclass(frozen=True)
class BreakdownLine:
    count: int
    revenue: Decimal
    fees: Decimal


@dataclass(frozen=True)
class DailySummary:
    """Totals of one business day's ``ACTIVE`` sessions."""

    day: date
    transaction_count: int
    total_revenue: Decimal
    total_fees: Decimal
    payment_breakdown: Dict[str, BreakdownLine] = field(default_factory=dict)
    staff_breakdown: Dict[str, BreakdownLine] = field(default_factory=dict)


@dataclass(frozen=True)
class StaffWeekLine:
    staff_name: str
    session_count: int
    total_fees: Decimal


@dataclass(frozen=True)
class WeeklyStaffReport:
    """Fees each staff member earned over one reporting week, largest first."""

    week_start: date
    week_end: date
    lines: List[StaffWeekLine] = field(default_factory=list)


@dataclass(frozen=True)
class MonthlySummary:
    """Totals of one calendar month's ``ACTIVE`` sessions.

    ``service_breakdown`` is keyed by service name and ordered by revenue,
    highest first.
    """

    year: int
    month: int
    transaction_count: int
    total_revenue: Decimal
    total_fees: Decimal
    service_breakdown: Dict[str, BreakdownLine] = field(default_factory=dict)


def start_of_week(now: datetime, week_starts_on: Weekday = Weekday.MONDAY) -> datetime:
    """Return midnight of the most recent ``week_starts_on`` day, in ``now``'s timezone."""
    days_back = (now.weekday() - int(week_starts_on)) % 7
    first_day = now.date() - timedelta(days=days_back)
    return datetime.combine(first_day, time.min, tzinfo=now.tzinfo)


def payment_status_for(
    outstanding_balance: Decimal,
    last_payment_date: Optional[date],
    today: date,
    policy: BalancePolicy,
) -> PaymentStatus:
    """Classify a staff member's payment standing.

    Nothing owed is always ``current``. Otherwise a staff member who was never
    paid is ``never``, one paid within the grace period is ``current``, and
    anyone else is ``overdue``.
    """
    if outstanding_balance <= ZERO:
        return PaymentStatus.CURRENT
    if last_payment_date is None:
        return PaymentStatus.NEVER
    if (today - last_payment_date).days <= policy.grace_period_days:
        return PaymentStatus.CURRENT
    return PaymentStatus.OVERDUE


def compute_staff_balance(
    transactions: Iterable[data_manager.TransactionRow],
    payments: Iterable[data_manager.PaymentRow],
    staff_name: str,
    now: datetime,
    policy: BalancePolicy = BalancePolicy(),
) -> StaffBalance:
    """Derive the :class:`StaffBalance` of ``staff_name`` as of ``now``."""
    week_start = start_of_week(now, policy.week_starts_on)

    earned = ZERO
    week_fees = ZERO
    week_sessions = 0
    for row in transactions:
        if row.staff_name != staff_name or row.status != TransactionStatus.ACTIVE:
            continue
        earned += row.staff_fee
        if align_to(week_start, row.start_time) <= row.start_time <= align_to(now, row.start_time):
            week_sessions += 1
            week_fees += row.staff_fee

    paid = ZERO
    last_payment: Optional[data_manager.PaymentRow] = None
    for payment in payments:
        if payment.staff_name != staff_name:
            continue
        paid += payment.amount
        if last_payment is None or payment.payment_date >= last_payment.payment_date:
            last_payment = payment

    outstanding = earned - paid
    last_date = last_payment.payment_date if last_payment is not None else None
    status = payment_status_for(outstanding, last_date, now.date(), policy)
    log.debug(
        "Balance for '%s': earned=%s paid=%s outstanding=%s status=%s",
        staff_name,
        earned,
        paid,
        outstanding,
        status.value,
    )
    return StaffBalance(
        staff_name=staff_name,
        total_fees_earned=earned,
        total_fees_paid=paid,
        outstanding_balance=outstanding,
        this_week_sessions=week_sessions,
        this_week_fees=week_fees,
        last_payment_date=last_date,
        last_payment_amount=last_payment.amount if last_payment is not None else None,
        payment_status=status,
    )


def compute_all_balances(
    transactions: Iterable[data_manager.TransactionRow],
    payments: Iterable[data_manager.PaymentRow],
    now: datetime,
    policy: BalancePolicy = BalancePolicy(),
) -> List[StaffBalance]:
    """Balances of every staff member seen in either log, largest debt first."""
    transactions = list(transactions)
    payments = list(payments)
    names = {row.staff_name for row in transactions} | {payment.staff_name for payment in payments}
    balances = [
        compute_staff_balance(transactions, payments, name, now, policy)
        for name in names
    ]
    balances.sort(key=lambda balance: (-balance.outstanding_balance, balance.staff_name))
    return balances


def summarize_day(transactions: Iterable[data_manager.TransactionRow], day: date) -> DailySummary:
    """Count, revenue and fees of the ``ACTIVE`` sessions that started on ``day``.

    The breakdowns are keyed by payment method and by staff name.
    """
    count = 0
    revenue = ZERO
    fees = ZERO
    by_method: Dict[str, List[data_manager.TransactionRow]] = defaultdict(list)
    by_staff: Dict[str, List[data_manager.TransactionRow]] = defaultdict(list)
    for row in transactions:
        if row.status != TransactionStatus.ACTIVE or row.start_time.date() != day:
            continue
        count += 1
        revenue += row.price
        fees += row.staff_fee
        by_method[row.payment_method].append(row)
        by_staff[row.staff_name].append(row)

    return DailySummary(
        day=day,
        transaction_count=count,
        total_revenue=revenue,
        total_fees=fees,
        payment_breakdown={key: _breakdown(rows) for key, rows in by_method.items()},
        staff_breakdown={key: _breakdown(rows) for key, rows in by_staff.items()},
    )


def weekly_staff_report(
    transactions: Iterable[data_manager.TransactionRow],
    day: date,
    policy: BalancePolicy = BalancePolicy(),
) -> WeeklyStaffReport:
    """Session count and fees per staff member for the week containing ``day``.

    The week runs seven calendar days from ``policy.week_starts_on``. Lines are
    sorted by fees, highest first, then by name.
    """
    week_start = day - timedelta(days=(day.weekday() - int(policy.week_starts_on)) % 7)
    week_end = week_start + timedelta(days=6)
    counts: Dict[str, int] = defaultdict(int)
    fees: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for row in transactions:
        if row.status != TransactionStatus.ACTIVE:
            continue
        if not week_start <= row.start_time.date() <= week_end:
            continue
        counts[row.staff_name] += 1
        fees[row.staff_name] += row.staff_fee

    lines = [StaffWeekLine(name, counts[name], fees[name]) for name in counts]
    lines.sort(key=lambda line: (-line.total_fees, line.staff_name))
    return WeeklyStaffReport(week_start=week_start, week_end=week_end, lines=lines)


def summarize_month(transactions: Iterable[data_manager.TransactionRow], year: int, month: int) -> MonthlySummary:
    """Count, revenue and fees of the ``ACTIVE`` sessions started in ``year``/``month``."""
    if not 1 <= month <= 12:
        raise ValidationError(f"Month must be between 1 and 12, got {month}")
    count = 0
    revenue = ZERO
    fees = ZERO
    by_service: Dict[str, List[data_manager.TransactionRow]] = defaultdict(list)
    for row in transactions:
        started = row.start_time
        if row.status != TransactionStatus.ACTIVE or (started.year, started.month) != (year, month):
            continue
        count += 1
        revenue += row.price
        fees += row.staff_fee
        by_service[row.service_name].append(row)

    lines = sorted(
        ((name, _breakdown(rows)) for name, rows in by_service.items()),
        key=lambda item: (-item[1].revenue, item[0]),
    )
    return MonthlySummary(
        year=year,
        month=month,
        transaction_count=count,
        total_revenue=revenue,
        total_fees=fees,
        service_breakdown=dict(lines),
    )


def _breakdown(rows: List[data_manager.TransactionRow]) -> BreakdownLine:
    return BreakdownLine(
        count=len(rows),
        revenue=sum((row.price for row in rows), ZERO),
        fees=sum((row.staff_fee for row in rows), ZERO),
    )
