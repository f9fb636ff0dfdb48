"""Append-only transaction ledger.

The ledger owns id generation and the ``ACTIVE -> SUPERSEDED | VOID`` status
transitions. Rows are never deleted or edited beyond their status: a
correction is recorded as a new row that points back at the row it replaces
through ``corrected_from_id``.

All writes run under a per-ledger re-entrant lock. :meth:`TransactionLedger.atomic`
groups several writes into one unit and journals each of them, so a failure
half-way through restores the workbook to its state before the unit began.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, fields, replace
from datetime import UTC, date, datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import TransactionStatus
from .errors import ConflictError, NotFoundError, ValidationError
from .pricing import PricingCatalog


ID_PREFIX = "T"
ID_TIME_FORMAT = "%Y%m%d%H%M%S%f"


@dataclass(frozen=True)
class TransactionInput:
    """Caller-supplied fields of a session; price and fee are never inputs."""

    staff_name: str
    service_name: str
    location: str
    duration_minutes: int
    payment_method: str
    start_time: datetime
    end_time: datetime
    customer_contact: Optional[str] = None


INPUT_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(TransactionInput))
_REQUIRED_TEXT_FIELDS = ("staff_name", "service_name", "location", "payment_method")


@dataclass(frozen=True)
class TransactionFilter:
    """Optional constraints for listing transactions; ``None`` means any."""

    status: Optional[TransactionStatus] = None
    staff_name: Optional[str] = None
    business_day: Optional[date] = None

    def matches(self, row: data_manager.TransactionRow) -> bool:
        if self.status is not None and row.status != self.status:
            return False
        if self.staff_name is not None and row.staff_name != self.staff_name:
            return False
        if self.business_day is not None and row.start_time.date() != self.business_day:
            return False
        return True


def input_of(row: data_manager.TransactionRow) -> TransactionInput:
    """Extract the caller-supplied fields of a stored row."""
    return TransactionInput(**{name: getattr(row, name) for name in INPUT_FIELDS})


def validate_input(command: TransactionInput) -> TransactionInput:
    """Check required fields and session times, returning a normalized copy.

    Text fields are stripped and a blank ``customer_contact`` becomes ``None``.

    Raises:
        ValidationError: If a required field is missing or blank, the duration
            is not a positive whole number of minutes, or ``end_time`` is not
            strictly after ``start_time`` on the same business day.
    """
    missing = [
        name
        for name in _REQUIRED_TEXT_FIELDS
        if not isinstance(getattr(command, name), str) or not getattr(command, name).strip()
    ]
    if command.start_time is None:
        missing.append("start_time")
    if command.end_time is None:
        missing.append("end_time")
    if missing:
        log.error("Transaction validation failed, missing fields: %s", ", ".join(missing))
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    duration = command.duration_minutes
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        log.error("Transaction validation failed: duration %r", duration)
        raise ValidationError("duration_minutes must be a positive whole number")

    start, end = command.start_time, command.end_time
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        raise ValidationError("start_time and end_time must be datetimes")
    try:
        ends_after_start = end > start
    except TypeError as exc:
        raise ValidationError("start_time and end_time must share timezone awareness") from exc
    if not ends_after_start:
        log.error("Transaction validation failed: end %s not after start %s", end, start)
        raise ValidationError("end_time must be after start_time")
    if end.date() != start.date():
        log.error("Transaction validation failed: session spans %s to %s", start.date(), end.date())
        raise ValidationError("A session must start and end on the same business day")

    contact = command.customer_contact
    if contact is not None:
        contact = str(contact).strip() or None

    return replace(
        command,
        staff_name=command.staff_name.strip(),
        service_name=command.service_name.strip(),
        location=command.location.strip(),
        payment_method=command.payment_method.strip(),
        customer_contact=contact,
    )


def utc_now() -> datetime:
    return datetime.now(UTC)


def align_to(reference: datetime, moment: datetime) -> datetime:
    """Return ``reference`` made comparable with ``moment``.

    When exactly one side carries an offset, the naive side is read as wall-clock
    time in the other side's zone.
    """
    if moment.tzinfo is None and reference.tzinfo is not None:
        return reference.replace(tzinfo=None)
    if moment.tzinfo is not None and reference.tzinfo is None:
        return reference.replace(tzinfo=moment.tzinfo)
    return reference


def generate_transaction_id(*, when: Optional[datetime] = None) -> str:
    """Generate a sortable transaction identifier.

    Returns:
        str: Identifier formed as ``T{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or utc_now()
    return f"{ID_PREFIX}{when.strftime(ID_TIME_FORMAT)}"


class TransactionLedger:
    """Workbook-backed store of :class:`~shop_ledger.data_manager.TransactionRow`."""

    def __init__(
        self,
        workbook: Workbook,
        catalog: PricingCatalog,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.catalog = catalog
        self.clock = clock or utc_now
        self._workbook = workbook
        self._lock = threading.RLock()
        self._journal: Optional[List[Tuple[str, Any, Any]]] = None
        self._cache: Dict[str, Any] = {}

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _ensure_cache(self) -> Dict[str, Any]:
        if "all" not in self._cache:
            all_rows = list(data_manager.iter_transactions(self._workbook))
            self._cache["all"] = all_rows
            self._cache["by_id"] = {row.transaction_id: row for row in all_rows}
            self._cache["successors"] = {
                row.corrected_from_id: row.transaction_id
                for row in all_rows
                if row.corrected_from_id is not None
            }
            log.debug("Populated transactions cache with %d entries", len(all_rows))
        return self._cache

    def _invalidate(self) -> None:
        self._cache.clear()

    def get_all(self) -> List[data_manager.TransactionRow]:
        """Snapshot of every row in creation order, whatever its status."""
        return list(self._ensure_cache()["all"])

    def get_active(self) -> List[data_manager.TransactionRow]:
        return [row for row in self._ensure_cache()["all"] if row.status == TransactionStatus.ACTIVE]

    def get_by_id(self, transaction_id: str) -> data_manager.TransactionRow:
        """Resolve a row by id.

        Raises:
            NotFoundError: If the ledger has no such transaction.
        """
        try:
            return self._ensure_cache()["by_id"][transaction_id]
        except KeyError as exc:
            log.warning("Transaction lookup failed for id '%s'", transaction_id)
            raise NotFoundError(f"Unknown transaction id: {transaction_id}") from exc

    def latest_active(self, staff_name: Optional[str] = None) -> data_manager.TransactionRow:
        """Return the most recently created ``ACTIVE`` row, the usual target of a correction.

        Raises:
            NotFoundError: If no ``ACTIVE`` row matches ``staff_name``.
        """
        for row in reversed(self._ensure_cache()["all"]):
            if row.status != TransactionStatus.ACTIVE:
                continue
            if staff_name is None or row.staff_name == staff_name:
                return row
        raise NotFoundError(
            "No active transaction to correct" + (f" for {staff_name}" if staff_name else "")
        )

    def successor_of(self, transaction_id: str) -> Optional[str]:
        return self._ensure_cache()["successors"].get(transaction_id)

    def chain_of(self, transaction_id: str) -> List[data_manager.TransactionRow]:
        """Return the whole correction chain containing ``transaction_id``, oldest first."""
        cache = self._ensure_cache()
        by_id = cache["by_id"]
        root = self.get_by_id(transaction_id)
        while root.corrected_from_id is not None and root.corrected_from_id in by_id:
            root = by_id[root.corrected_from_id]

        chain = [root]
        next_id = cache["successors"].get(root.transaction_id)
        while next_id is not None:
            chain.append(by_id[next_id])
            next_id = cache["successors"].get(next_id)
        return chain

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator["TransactionLedger"]:
        """Hold the write lock and undo every journaled write if the block fails.

        Nested calls join the outermost unit.
        """
        with self._lock:
            if self._journal is not None:
                yield self
                return
            self._journal = []
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            finally:
                self._journal = None

    def _rollback(self) -> None:
        """Undo the journal newest first.

        A failing undo step is logged and skipped so the remaining steps still
        run; the caller re-raises the error that triggered the rollback.
        """
        journal = self._journal or []
        if journal:
            log.warning("Rolling back %d uncommitted ledger write(s)", len(journal))
        for action, target, previous in reversed(journal):
            try:
                if action == "append":
                    data_manager.remove_row(self._workbook, data_manager.TRANSACTIONS_SHEET, target)
                else:
                    data_manager.update_transaction(self._workbook, target, field_values=previous)
            except Exception:
                log.exception("Failed to undo ledger %s of '%s' during rollback", action, target)
        self._invalidate()

    def _next_transaction_id(self, when: datetime) -> str:
        candidate = generate_transaction_id(when=when)
        by_id = self._ensure_cache()["by_id"]
        if not by_id:
            return candidate
        last_id = max(by_id)
        if candidate > last_id:
            return candidate
        try:
            last_moment = datetime.strptime(last_id[len(ID_PREFIX):], ID_TIME_FORMAT)
        except ValueError:
            last_moment = when.replace(tzinfo=None)
        bumped = generate_transaction_id(when=last_moment + timedelta(microseconds=1))
        log.debug("Transaction id %s already issued, using %s", candidate, bumped)
        return bumped

    def append(self, command: TransactionInput, corrected_from_id: Optional[str] = None) -> data_manager.TransactionRow:
        """Validate, price, and store a new ``ACTIVE`` transaction.

        Args:
            command (TransactionInput): Session details supplied by the caller.
            corrected_from_id (str | None): Id of the transaction this row
                replaces. The referenced row must already be ``SUPERSEDED`` and
                must not have another successor.

        Returns:
            data_manager.TransactionRow: The stored row.

        Raises:
            ValidationError: If the input is incomplete or malformed.
            PricingNotFoundError: If the catalog has no matching rule.
            NotFoundError: If ``corrected_from_id`` is unknown.
            ConflictError: If ``corrected_from_id`` is still ``ACTIVE`` or has
                already been corrected.
        """
        command = validate_input(command)
        quote = self.catalog.resolve(command.location, command.service_name, command.duration_minutes)

        with self.atomic():
            if corrected_from_id is not None:
                self._require_open_predecessor(corrected_from_id)

            timestamp = self.clock()
            transaction = data_manager.TransactionRow(
                transaction_id=self._next_transaction_id(timestamp),
                created_at=timestamp,
                staff_name=command.staff_name,
                service_name=command.service_name,
                location=command.location,
                duration_minutes=command.duration_minutes,
                payment_method=command.payment_method,
                start_time=command.start_time,
                end_time=command.end_time,
                customer_contact=command.customer_contact,
                price=quote.price,
                staff_fee=quote.staff_fee,
                status=TransactionStatus.ACTIVE,
                corrected_from_id=corrected_from_id,
            )
            row_index = data_manager.append_transaction(self._workbook, transaction)
            self._journal.append(("append", row_index, None))
            self._invalidate()

        log.info(
            "Recorded transaction '%s' for '%s' (%s %s min at %s, price=%s, fee=%s)",
            transaction.transaction_id,
            transaction.staff_name,
            transaction.service_name,
            transaction.duration_minutes,
            transaction.location,
            transaction.price,
            transaction.staff_fee,
        )
        return transaction

    def _require_open_predecessor(self, corrected_from_id: str) -> None:
        predecessor = self.get_by_id(corrected_from_id)
        if predecessor.status != TransactionStatus.SUPERSEDED:
            log.error(
                "Cannot link correction to '%s' with status %s",
                corrected_from_id,
                predecessor.status.value,
            )
            raise ConflictError(
                f"Transaction '{corrected_from_id}' must be superseded before it is replaced"
            )
        existing = self.successor_of(corrected_from_id)
        if existing is not None:
            log.error("Transaction '%s' was already corrected by '%s'", corrected_from_id, existing)
            raise ConflictError(
                f"Transaction '{corrected_from_id}' was already corrected by '{existing}'"
            )

    def mark_superseded(self, transaction_id: str) -> None:
        """Move an ``ACTIVE`` transaction to ``SUPERSEDED``.

        Raises:
            NotFoundError: If ``transaction_id`` is unknown.
            ConflictError: If the transaction is not ``ACTIVE``.
        """
        self._transition(transaction_id, TransactionStatus.SUPERSEDED)

    def void(self, transaction_id: str) -> None:
        """Move an ``ACTIVE`` transaction to ``VOID`` without a replacement.

        Raises:
            NotFoundError: If ``transaction_id`` is unknown.
            ConflictError: If the transaction is not ``ACTIVE``.
        """
        self._transition(transaction_id, TransactionStatus.VOID)

    def _transition(self, transaction_id: str, target: TransactionStatus) -> None:
        with self.atomic():
            current = self.get_by_id(transaction_id)
            if current.status != TransactionStatus.ACTIVE:
                log.error(
                    "Cannot mark transaction '%s' %s: status is %s",
                    transaction_id,
                    target.value,
                    current.status.value,
                )
                raise ConflictError(
                    f"Transaction '{transaction_id}' is {current.status.value}, not ACTIVE"
                )
            previous = data_manager.update_transaction(
                self._workbook,
                transaction_id,
                field_values={"Status": target.value},
            )
            self._journal.append(("update", transaction_id, previous))
            self._invalidate()
        log.info("Marked transaction '%s' as %s", transaction_id, target.value)
