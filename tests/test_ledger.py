"""Unit tests for the append-only transaction ledger."""

from __future__ import annotations

import threading
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from shop_ledger import data_manager
from shop_ledger.constants import TransactionStatus
from shop_ledger.errors import ConflictError, NotFoundError, PricingNotFoundError, ValidationError
from shop_ledger.ledger import (
    TransactionFilter,
    TransactionInput,
    generate_transaction_id,
    input_of,
    validate_input,
)


# ---------------------------------------------------------------------------
# Id generation and validation
# ---------------------------------------------------------------------------


def test_generate_transaction_id_uses_microsecond_timestamp():
    moment = datetime(2024, 5, 15, 9, 30, 1, 42, tzinfo=UTC)
    assert generate_transaction_id(when=moment) == "T20240515093001000042"


def test_validate_input_strips_text_and_blank_contact(session_input):
    command = validate_input(session_input(staff_name="  Anna ", customer_contact="   "))
    assert command.staff_name == "Anna"
    assert command.customer_contact is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"staff_name": "  "},
        {"service_name": ""},
        {"location": None},
        {"payment_method": ""},
        {"start_time": None},
        {"duration_minutes": 0},
        {"duration_minutes": -30},
        {"duration_minutes": True},
        {"duration_minutes": "60"},
    ],
)
def test_validate_input_rejects_missing_or_malformed_fields(session_input, overrides):
    with pytest.raises(ValidationError):
        validate_input(session_input(**overrides))


def test_validate_input_requires_end_after_start(session_input):
    start = datetime(2024, 5, 15, 9, 0, tzinfo=UTC)
    with pytest.raises(ValidationError, match="after"):
        validate_input(session_input(start_time=start, end_time=start))


def test_validate_input_rejects_sessions_spanning_midnight(session_input):
    start = datetime(2024, 5, 15, 23, 30, tzinfo=UTC)
    with pytest.raises(ValidationError, match="same business day"):
        validate_input(session_input(start_time=start, end_time=start + timedelta(hours=1)))


def test_validate_input_rejects_mixed_timezone_awareness(session_input):
    with pytest.raises(ValidationError):
        validate_input(session_input(end_time=datetime(2024, 5, 15, 10, 0)))


# ---------------------------------------------------------------------------
# Appending
# ---------------------------------------------------------------------------


def test_append_prices_from_catalog(ledger, session_input, clock):
    """Stored price and fee should come from the catalog, never from the caller."""

    row = ledger.append(session_input(duration_minutes=90, end_time=clock() + timedelta(minutes=30)))
    assert row.price == Decimal("400")
    assert row.staff_fee == Decimal("150")
    assert row.status is TransactionStatus.ACTIVE
    assert row.created_at == clock()
    assert row.corrected_from_id is None
    assert ledger.get_by_id(row.transaction_id) == row


def test_append_writes_to_workbook(ledger, session_input):
    row = ledger.append(session_input(customer_contact="555-0101"))
    stored = list(data_manager.iter_transactions(ledger.workbook))
    assert stored == [row]


def test_append_generates_unique_increasing_ids_under_fixed_clock(ledger, session_input):
    """Several appends in the same microsecond must still get distinct ids."""

    ids = [ledger.append(session_input()).transaction_id for _ in range(5)]
    assert len(set(ids)) == 5
    assert ids == sorted(ids)


def test_append_ids_follow_clock(ledger, session_input, clock):
    first = ledger.append(session_input())
    clock.advance(seconds=5)
    second = ledger.append(session_input())
    assert second.transaction_id == generate_transaction_id(when=clock())
    assert second.transaction_id > first.transaction_id


def test_append_unknown_service_writes_nothing(ledger, session_input):
    with pytest.raises(PricingNotFoundError):
        ledger.append(session_input(service_name="Hot Stone"))
    assert ledger.get_all() == []


def test_append_invalid_input_writes_nothing(ledger, session_input):
    with pytest.raises(ValidationError):
        ledger.append(session_input(staff_name=""))
    assert list(data_manager.iter_transactions(ledger.workbook)) == []


def test_append_with_active_predecessor_conflicts(ledger, session_input):
    """A successor can only point at a row that was already superseded."""

    original = ledger.append(session_input())
    with pytest.raises(ConflictError):
        ledger.append(session_input(), corrected_from_id=original.transaction_id)
    assert len(ledger.get_all()) == 1


def test_append_with_unknown_predecessor_raises(ledger, session_input):
    with pytest.raises(NotFoundError):
        ledger.append(session_input(), corrected_from_id="T-missing")


def test_append_rejects_second_successor(ledger, session_input):
    original = ledger.append(session_input())
    with ledger.atomic():
        ledger.mark_superseded(original.transaction_id)
        ledger.append(session_input(), corrected_from_id=original.transaction_id)
    with pytest.raises(ConflictError, match="already corrected"):
        ledger.append(session_input(), corrected_from_id=original.transaction_id)


def test_concurrent_appends_keep_ids_unique(ledger, session_input):
    errors: list[BaseException] = []

    def worker() -> None:
        try:
            for _ in range(5):
                ledger.append(session_input())
        except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    rows = ledger.get_all()
    assert len(rows) == 20
    assert len({row.transaction_id for row in rows}) == 20


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


def test_void_marks_transaction_void(ledger, session_input):
    row = ledger.append(session_input())
    ledger.void(row.transaction_id)
    assert ledger.get_by_id(row.transaction_id).status is TransactionStatus.VOID
    assert ledger.get_active() == []


def test_void_twice_conflicts(ledger, session_input):
    row = ledger.append(session_input())
    ledger.void(row.transaction_id)
    with pytest.raises(ConflictError):
        ledger.void(row.transaction_id)


def test_mark_superseded_requires_active(ledger, session_input):
    row = ledger.append(session_input())
    ledger.void(row.transaction_id)
    with pytest.raises(ConflictError):
        ledger.mark_superseded(row.transaction_id)


def test_void_unknown_transaction_raises(ledger):
    with pytest.raises(NotFoundError):
        ledger.void("T-missing")


# ---------------------------------------------------------------------------
# Atomic units
# ---------------------------------------------------------------------------


def test_atomic_rolls_back_appends_and_status_changes(ledger, session_input):
    """A failing unit should leave the workbook exactly as it found it."""

    kept = ledger.append(session_input())
    with pytest.raises(RuntimeError):
        with ledger.atomic():
            ledger.void(kept.transaction_id)
            ledger.append(session_input(staff_name="Bella"))
            raise RuntimeError("boom")

    rows = list(data_manager.iter_transactions(ledger.workbook))
    assert rows == [kept]
    assert ledger.get_by_id(kept.transaction_id).status is TransactionStatus.ACTIVE


def test_atomic_nested_units_join_outer(ledger, session_input):
    with pytest.raises(RuntimeError):
        with ledger.atomic():
            with ledger.atomic():
                ledger.append(session_input())
            raise RuntimeError("outer failure")
    assert ledger.get_all() == []


def test_append_after_rollback_lands_on_clean_rows(ledger, session_input):
    with pytest.raises(RuntimeError):
        with ledger.atomic():
            ledger.append(session_input())
            raise RuntimeError("boom")
    row = ledger.append(session_input(staff_name="Bella"))
    ledger.void(row.transaction_id)
    assert [r.status for r in ledger.get_all()] == [TransactionStatus.VOID]


def test_rollback_keeps_undoing_after_a_failed_step(ledger, session_input, monkeypatch, caplog):
    """The error that started the rollback wins over a failing undo step."""

    kept = ledger.append(session_input())

    def refuse_update(*args, **kwargs):
        raise KeyError("TransactionID not found")

    with pytest.raises(RuntimeError, match="boom"):
        with ledger.atomic():
            ledger.void(kept.transaction_id)
            ledger.append(session_input(staff_name="Bella"))
            monkeypatch.setattr(data_manager, "update_transaction", refuse_update)
            raise RuntimeError("boom")

    assert [row.staff_name for row in data_manager.iter_transactions(ledger.workbook)] == ["Anna"]
    assert "Failed to undo ledger update" in caplog.text


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def test_chain_of_returns_whole_chain_from_any_member(ledger, session_input):
    first = ledger.append(session_input())
    with ledger.atomic():
        ledger.mark_superseded(first.transaction_id)
        second = ledger.append(session_input(duration_minutes=90, end_time=first.end_time + timedelta(minutes=30)), corrected_from_id=first.transaction_id)

    chain_ids = [row.transaction_id for row in ledger.chain_of(second.transaction_id)]
    assert chain_ids == [first.transaction_id, second.transaction_id]
    assert ledger.chain_of(first.transaction_id) == ledger.chain_of(second.transaction_id)
    assert ledger.successor_of(first.transaction_id) == second.transaction_id


def test_latest_active_skips_superseded_and_void_rows(ledger, session_input):
    first = ledger.append(session_input())
    bella = ledger.append(session_input(staff_name="Bella"))
    third = ledger.append(session_input())
    ledger.void(third.transaction_id)

    assert ledger.latest_active() == bella
    assert ledger.latest_active("Anna") == first

    with ledger.atomic():
        ledger.mark_superseded(first.transaction_id)
        replacement = ledger.append(session_input(payment_method="card"), corrected_from_id=first.transaction_id)
    assert ledger.latest_active("Anna") == replacement


def test_latest_active_without_candidates_raises(ledger, session_input):
    row = ledger.append(session_input())
    ledger.void(row.transaction_id)
    with pytest.raises(NotFoundError):
        ledger.latest_active()
    with pytest.raises(NotFoundError, match="Chai"):
        ledger.latest_active("Chai")


def test_input_of_extracts_caller_fields(ledger, session_input):
    command = session_input(customer_contact="555-0101")
    row = ledger.append(command)
    assert input_of(row) == command


def test_transaction_filter_matches_each_constraint(ledger, session_input):
    anna = ledger.append(session_input())
    bella = ledger.append(session_input(staff_name="Bella"))
    ledger.void(bella.transaction_id)
    rows = ledger.get_all()

    by_status = TransactionFilter(status=TransactionStatus.ACTIVE)
    by_staff = TransactionFilter(staff_name="Bella")
    by_day = TransactionFilter(business_day=date(2024, 5, 14))

    assert [row.transaction_id for row in rows if by_status.matches(row)] == [anna.transaction_id]
    assert [row.transaction_id for row in rows if by_staff.matches(row)] == [bella.transaction_id]
    assert [row for row in rows if by_day.matches(row)] == []


def test_get_by_id_unknown_raises(ledger):
    with pytest.raises(NotFoundError):
        ledger.get_by_id("T-missing")


def test_input_type_is_frozen(session_input):
    command = session_input()
    with pytest.raises(AttributeError):
        command.staff_name = "Other"  # type: ignore[misc]
    assert isinstance(command, TransactionInput)
