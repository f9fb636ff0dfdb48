"""Business logic layer for the shop ledger.

This module is the narrow interface that outer surfaces (the CLI, an HTTP
layer, admin tooling) call into. It wires the pricing catalog, the ledger,
the correction engine, the roster and the balance policy around one open
workbook, and never touches the workbook directly: all I/O goes through the
data access layer.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from openpyxl.workbook import Workbook

from . import balances, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, RosterStatus, StaffPaymentType, TransactionStatus
from .correction import CorrectionEngine
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger import TransactionFilter, TransactionInput, TransactionLedger, utc_now
from .pricing import PricingCatalog, PriceQuote
from .roster import Roster, status_of


_PERSIST_LOCK = threading.Lock()


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook, and the components built on it."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    ledger: TransactionLedger
    corrections: CorrectionEngine
    roster: Roster
    policy: balances.BalancePolicy
    clock: Callable[[], datetime] = utc_now
    _source: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class RosterView:
    """A roster entry as shown to staff, with its read-time status."""

    position: int
    staff_name: str
    status: RosterStatus
    busy_until: Optional[datetime]
    today_sessions: int


def build_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    clock: Optional[Callable[[], datetime]] = None,
    roster: Optional[Roster] = None,
    fingerprint: Optional[str] = None,
) -> RuntimeContext:
    """Assemble the components around an already opened workbook.

    Settings are handed to each component here, at construction; nothing reads
    configuration later. ``fingerprint`` is the digest of the data file the
    workbook was read from; :func:`persist_context` refuses to save over a file
    whose digest has since changed.
    """
    clock = clock or utc_now
    catalog = PricingCatalog.from_workbook(workbook)
    ledger = TransactionLedger(workbook, catalog, clock=clock)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        ledger=ledger,
        corrections=CorrectionEngine(ledger),
        roster=roster if roster is not None else Roster(settings.roster_size),
        policy=balances.BalancePolicy.from_settings(settings),
        clock=clock,
        _source={"fingerprint": fingerprint},
    )


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    fingerprint = data_manager.file_fingerprint(settings.data_file)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook, clock=clock, fingerprint=fingerprint)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def reload_pricing(context: RuntimeContext) -> PricingCatalog:
    """Rebuild the catalog from the ``PricingRules`` sheet.

    Only later transactions see the new prices; stored rows keep theirs.
    """
    catalog = PricingCatalog.from_workbook(context.workbook)
    context.ledger.catalog = catalog
    log.info("Reloaded pricing catalog with %d rules", len(catalog))
    return catalog


def quote_price(context: RuntimeContext, location: str, service_name: str, duration_minutes: int) -> PriceQuote:
    return context.ledger.catalog.resolve(location, service_name, duration_minutes)


def create_transaction(context: RuntimeContext, command: TransactionInput) -> data_manager.TransactionRow:
    """Record a new session priced from the catalog.

    Raises:
        ValidationError: If the input is incomplete or malformed.
        PricingNotFoundError: If no pricing rule matches.
    """
    return context.ledger.append(command)


def correct_transaction(
    context: RuntimeContext,
    original_id: str,
    updated_fields: Mapping[str, Any],
) -> data_manager.TransactionRow:
    """Supersede a transaction with a corrected copy; see :class:`CorrectionEngine`."""
    return context.corrections.correct(original_id, updated_fields)


def void_transaction(context: RuntimeContext, transaction_id: str) -> None:
    """Void a mistaken transaction without recording a replacement.

    Raises:
        NotFoundError: If ``transaction_id`` is unknown.
        ConflictError: If it is no longer ``ACTIVE``.
    """
    context.ledger.void(transaction_id)


def list_transactions(
    context: RuntimeContext,
    transaction_filter: Optional[TransactionFilter] = None,
) -> List[data_manager.TransactionRow]:
    """Return a snapshot of the ledger in creation order, optionally filtered."""
    rows = context.ledger.get_all()
    if transaction_filter is None:
        return rows
    return [row for row in rows if transaction_filter.matches(row)]


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    return context.ledger.get_by_id(transaction_id)


def get_transaction_chain(context: RuntimeContext, transaction_id: str) -> List[data_manager.TransactionRow]:
    """Return the correction chain containing ``transaction_id``, oldest first."""
    return context.ledger.chain_of(transaction_id)


def latest_active_transaction(context: RuntimeContext, staff_name: Optional[str] = None) -> data_manager.TransactionRow:
    """Return the newest ``ACTIVE`` transaction, optionally for one staff member.

    Raises:
        NotFoundError: If there is nothing left to correct.
    """
    return context.ledger.latest_active(staff_name)


def list_payments(context: RuntimeContext) -> List[data_manager.PaymentRow]:
    return list(data_manager.iter_payments(context.workbook))


def record_staff_payment(
    context: RuntimeContext,
    staff_name: str,
    amount: Decimal,
    *,
    payment_date: Optional[date] = None,
    method: Optional[StaffPaymentType] = None,
    notes: Optional[str] = None,
) -> data_manager.PaymentRow:
    """Append a fee payment handed to a staff member.

    Raises:
        ValidationError: If the name is blank, the amount is not a positive
            number, or the method is not a known payment type.
    """
    name = (staff_name or "").strip()
    if not name:
        raise ValidationError("Staff name is required")
    try:
        amount = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid payment amount: {amount}") from exc
    if not amount.is_finite() or amount <= Decimal("0"):
        log.error("Payment validation failed for '%s': amount %s", name, amount)
        raise ValidationError("Valid payment amount is required")
    if method is not None:
        try:
            method = StaffPaymentType(method)
        except ValueError as exc:
            raise ValidationError(f"Payment type must be one of: {', '.join(t.value for t in StaffPaymentType)}") from exc

    payment = data_manager.PaymentRow(
        staff_name=name,
        amount=amount,
        payment_date=payment_date or context.clock().date(),
        method=method.value if method is not None else None,
        notes=notes,
    )
    data_manager.append_payment(context.workbook, payment)
    log.info("Recorded payment of %s to '%s' on %s", amount, name, payment.payment_date)
    return payment


def get_staff_balance(
    context: RuntimeContext,
    staff_name: str,
    now: Optional[datetime] = None,
) -> balances.StaffBalance:
    """Derive a staff member's balance from the ledger and payment log.

    Raises:
        NotFoundError: If the staff member appears in neither log.
    """
    transactions = context.ledger.get_all()
    payments = list_payments(context)
    known = any(row.staff_name == staff_name for row in transactions) or any(
        payment.staff_name == staff_name for payment in payments
    )
    if not known:
        log.warning("Balance requested for unknown staff member '%s'", staff_name)
        raise NotFoundError(f"Unknown staff member: {staff_name}")
    return balances.compute_staff_balance(
        transactions,
        payments,
        staff_name,
        now or context.clock(),
        context.policy,
    )


def list_staff_balances(context: RuntimeContext, now: Optional[datetime] = None) -> List[balances.StaffBalance]:
    return balances.compute_all_balances(
        context.ledger.get_all(),
        list_payments(context),
        now or context.clock(),
        context.policy,
    )


def summarize_day(context: RuntimeContext, day: Optional[date] = None) -> balances.DailySummary:
    return balances.summarize_day(context.ledger.get_all(), day or context.clock().date())


def weekly_staff_report(context: RuntimeContext, day: Optional[date] = None) -> balances.WeeklyStaffReport:
    """Per-staff session count and fees for the week containing ``day``, used for payouts."""
    return balances.weekly_staff_report(context.ledger.get_all(), day or context.clock().date(), context.policy)


def summarize_month(
    context: RuntimeContext,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> balances.MonthlySummary:
    """Monthly totals with a per-service breakdown; defaults to the clock's month.

    Raises:
        ValidationError: If ``month`` is outside 1..12.
    """
    today = context.clock().date()
    return balances.summarize_month(
        context.ledger.get_all(),
        year if year is not None else today.year,
        month if month is not None else today.month,
    )


def start_business_day(context: RuntimeContext, today: Optional[date] = None) -> bool:
    """Reset the roster if the business day has changed since it was built."""
    return context.roster.roll_over(today or context.clock().date())


def roster_view(context: RuntimeContext, now: Optional[datetime] = None) -> List[RosterView]:
    """Roster entries with their status and count of today's ``ACTIVE`` sessions."""
    now = now or context.clock()
    today = now.date()
    counts: dict[str, int] = {}
    for row in context.ledger.get_active():
        if row.start_time.date() == today:
            counts[row.staff_name] = counts.get(row.staff_name, 0) + 1
    return [
        RosterView(
            position=entry.position,
            staff_name=entry.staff_name,
            status=status_of(entry, now),
            busy_until=entry.busy_until,
            today_sessions=counts.get(entry.staff_name, 0),
        )
        for entry in context.roster.entries()
    ]


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file.

    Raises:
        ConflictError: If another writer saved the data file after this
            context loaded it. Nothing is written; reload and retry.
    """
    data_file = context.settings.data_file
    with _PERSIST_LOCK:
        expected = context._source.get("fingerprint")
        if expected is not None:
            current = data_manager.file_fingerprint(data_file)
            if current != expected:
                log.error("Workbook '%s' changed on disk since it was loaded; refusing to overwrite", data_file)
                raise ConflictError(f"Workbook {data_file} was modified by another writer; reload and retry")
        data_manager.save_workbook(context.workbook, destination=data_file)
        context._source["fingerprint"] = data_manager.file_fingerprint(data_file)
    log.info("Persisted workbook '%s'", data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The roster lives only in memory, so it carries over to the new context.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    fingerprint = data_manager.file_fingerprint(context.settings.data_file)
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(
        context.settings,
        workbook,
        clock=context.clock,
        roster=context.roster,
        fingerprint=fingerprint,
    )


__all__ = [
    "RuntimeContext",
    "RosterView",
    "TransactionFilter",
    "TransactionInput",
    "TransactionStatus",
    "build_context",
    "load_runtime_context",
    "ensure_schema_version",
    "reload_pricing",
    "quote_price",
    "create_transaction",
    "correct_transaction",
    "void_transaction",
    "list_transactions",
    "get_transaction",
    "get_transaction_chain",
    "latest_active_transaction",
    "list_payments",
    "record_staff_payment",
    "get_staff_balance",
    "list_staff_balances",
    "summarize_day",
    "weekly_staff_report",
    "summarize_month",
    "start_business_day",
    "roster_view",
    "persist_context",
    "refresh_context",
]
