"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records, appending rows, and
   updating individual cells of an existing row.
"""


from __future__ import annotations

import configparser
import hashlib
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName, TransactionStatus, Weekday
from .errors import ValidationError


CONFIG_FILE_NAME = "config.ini"
PRICING_RULES_SHEET = SheetName.PRICING_RULES.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
STAFF_PAYMENTS_SHEET = SheetName.STAFF_PAYMENTS.value

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_ROSTER_SIZE = 20
DEFAULT_SESSION_MINUTES = 60

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRICING_RULES_SHEET: [
        "Location",
        "ServiceName",
        "DurationMinutes",
        "Price",
        "StaffFee",
        "IsActive",
    ],
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "CreatedAt",
        "StaffName",
        "ServiceName",
        "Location",
        "DurationMinutes",
        "PaymentMethod",
        "StartTime",
        "EndTime",
        "CustomerContact",
        "Price",
        "StaffFee",
        "Status",
        "CorrectedFromID",
    ],
    STAFF_PAYMENTS_SHEET: [
        "StaffName",
        "Amount",
        "PaymentDate",
        "Method",
        "Notes",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    week_starts_on: Weekday = Weekday.MONDAY
    roster_size: int = DEFAULT_ROSTER_SIZE
    default_session_minutes: int = DEFAULT_SESSION_MINUTES


@dataclass(frozen=True)
class PricingRuleRow:
    """In-memory view of a row from the ``PricingRules`` sheet."""

    location: str
    service_name: str
    duration_minutes: int
    price: Decimal
    staff_fee: Decimal
    is_active: bool = True


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    created_at: datetime
    staff_name: str
    service_name: str
    location: str
    duration_minutes: int
    payment_method: str
    start_time: datetime
    end_time: datetime
    customer_contact: Optional[str]
    price: Decimal
    staff_fee: Decimal
    status: TransactionStatus
    corrected_from_id: Optional[str]


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``StaffPayments`` sheet."""

    staff_name: str
    amount: Decimal
    payment_date: date
    method: Optional[str] = None
    notes: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Payments]`` and ``[Roster]`` are
    optional and fall back to the module defaults. Relative ``DataFile``
    entries are anchored at ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional numeric or weekday entry cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    grace_period_days = parser.getint(
        "Payments", "GracePeriodDays", fallback=DEFAULT_GRACE_PERIOD_DAYS)
    week_start_raw = parser.get("Payments", "WeekStartsOn", fallback=Weekday.MONDAY.name)
    try:
        week_starts_on = Weekday[week_start_raw.strip().upper()]
    except KeyError as exc:
        raise ValueError(f"Unknown weekday in WeekStartsOn: {week_start_raw}") from exc
    roster_size = parser.getint("Roster", "Size", fallback=DEFAULT_ROSTER_SIZE)
    default_session_minutes = parser.getint(
        "Roster", "DefaultSessionMinutes", fallback=DEFAULT_SESSION_MINUTES)

    if grace_period_days < 0:
        raise ValueError("GracePeriodDays must be zero or positive")
    if roster_size <= 0:
        raise ValueError("Roster Size must be greater than zero")
    if default_session_minutes <= 0:
        raise ValueError("DefaultSessionMinutes must be greater than zero")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        grace_period_days=grace_period_days,
        week_starts_on=week_starts_on,
        roster_size=roster_size,
        default_session_minutes=default_session_minutes,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def file_fingerprint(data_file: Path) -> Optional[str]:
    """Return a digest of the workbook bytes on disk, or ``None`` if it is missing.

    Two fingerprints differ whenever another writer saved the file in between.
    """

    data_file = Path(data_file).expanduser().resolve()
    try:
        content = data_file.read_bytes()
    except FileNotFoundError:
        return None
    return hashlib.sha256(content).hexdigest()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_pricing_rules(workbook: Workbook) -> Iterable[PricingRuleRow]:
    """Iterate over pricing rules stored on the ``PricingRules`` worksheet.

    The header row and fully empty rows are skipped.

    Raises:
        ValidationError: If a row lacks its key, price, or fee.
    """

    sheet = workbook[PRICING_RULES_SHEET]
    for row_number, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            yield deserialize_pricing_rule(raw, row_number=row_number)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet.

    Rows come back in sheet order, which is also creation order because the
    sheet is append-only.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_transaction(raw)


def iter_payments(workbook: Workbook) -> Iterable[PaymentRow]:
    """Stream fee-payment records from the ``StaffPayments`` worksheet."""

    sheet = workbook[STAFF_PAYMENTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_payment(raw)


def append_pricing_rule(workbook: Workbook, record: PricingRuleRow) -> None:
    """Append a pricing rule to the ``PricingRules`` worksheet."""

    sheet = workbook[PRICING_RULES_SHEET]
    sheet.append(serialize_pricing_rule(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> int:
    """Append a transaction record to the ``Transactions`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the transactions sheet.
        record (TransactionRow): Transaction to persist.

    Returns:
        int: 1-based row index the record landed on, so callers can undo the
            append before the workbook is saved.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    sheet.append(serialize_transaction(record))
    return sheet.max_row


def append_payment(workbook: Workbook, record: PaymentRow) -> None:
    """Append a fee-payment record to the ``StaffPayments`` worksheet."""

    sheet = workbook[STAFF_PAYMENTS_SHEET]
    sheet.append(serialize_payment(record))


def update_transaction(workbook: Workbook, transaction_id: str, *, field_values: dict[str, Any]) -> dict[str, Any]:
    """Update selected columns for an existing transaction.

    Only the specified columns are modified. The previous cell values are
    returned so that the caller can restore them.

    Args:
        workbook (Workbook): Workbook containing the transactions sheet.
        transaction_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Returns:
        dict[str, Any]: Mapping of the same column names to their prior values.

    Raises:
        KeyError: If the transaction or any referenced column cannot be found.
    """

    sheet_name = TRANSACTIONS_SHEET
    row_index = locate_row(workbook, sheet_name, "TransactionID", transaction_id)
    if row_index is None:
        raise KeyError(f"Transaction not found: {transaction_id}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    previous: dict[str, Any] = {}
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown transaction field: {field}")
        cell = sheet.cell(row=row_index, column=header_map[field])
        previous[field] = cell.value
        cell.value = value
    return previous


def remove_row(workbook: Workbook, sheet_name: str, row_index: int) -> None:
    """Delete a single data row; used only to undo an uncommitted append."""

    if row_index < 2:
        raise ValueError("Refusing to delete the header row")
    log.debug("Removing row %d from sheet '%s'", row_index, sheet_name)
    workbook[sheet_name].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_pricing_rule(record: PricingRuleRow) -> list[object]:
    """Convert a pricing rule into the ``PricingRules`` column ordering."""

    return [
        record.location,
        record.service_name,
        record.duration_minutes,
        record.price,
        record.staff_fee,
        record.is_active,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order.

    Timestamps are stored as ISO 8601 text so that timezone offsets survive
    the round trip through Excel.
    """

    return [
        record.transaction_id,
        record.created_at.isoformat(),
        record.staff_name,
        record.service_name,
        record.location,
        record.duration_minutes,
        record.payment_method,
        record.start_time.isoformat(),
        record.end_time.isoformat(),
        record.customer_contact,
        record.price,
        record.staff_fee,
        record.status.value,
        record.corrected_from_id,
    ]


def serialize_payment(record: PaymentRow) -> list[object]:
    """Convert a payment record into the ``StaffPayments`` column ordering."""

    return [
        record.staff_name,
        record.amount,
        record.payment_date.isoformat(),
        record.method,
        record.notes,
    ]


def deserialize_pricing_rule(raw_row: Sequence[object], *, row_number: Optional[int] = None) -> PricingRuleRow:
    """Convert a raw worksheet row into a strongly typed pricing rule.

    A blank ``IsActive`` cell means active; text values such as ``"FALSE"`` or
    ``"no"`` are parsed rather than taken for their truthiness.

    Raises:
        ValidationError: If the key, price, or fee is missing or malformed.
            The message names the sheet row when ``row_number`` is given.
    """

    where = f"{PRICING_RULES_SHEET} row {row_number}" if row_number is not None else PRICING_RULES_SHEET
    location, service_name, duration_raw, price_raw, fee_raw, is_active = (list(raw_row) + [None] * 6)[:6]
    for column, value in (("Location", location), ("ServiceName", service_name)):
        if value is None or not str(value).strip():
            raise ValidationError(f"{where}: {column} is required")
    try:
        duration_minutes = int(duration_raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{where}: DurationMinutes must be a whole number, got {duration_raw!r}") from exc
    return PricingRuleRow(
        location=str(location).strip(),
        service_name=str(service_name).strip(),
        duration_minutes=duration_minutes,
        price=_required_decimal(price_raw, "Price", where),
        staff_fee=_required_decimal(fee_raw, "StaffFee", where),
        is_active=_to_flag(is_active, "IsActive", where),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Money columns become :class:`~decimal.Decimal`, timestamps are parsed from
    ISO text (Excel-native datetimes are accepted too), and blank optional
    columns stay ``None``.
    """

    (
        transaction_id,
        created_at,
        staff_name,
        service_name,
        location,
        duration_raw,
        payment_method,
        start_time,
        end_time,
        customer_contact,
        price_raw,
        fee_raw,
        status_raw,
        corrected_from_id,
    ) = raw_row[:14]

    return TransactionRow(
        transaction_id=str(transaction_id),
        created_at=_to_datetime(created_at),
        staff_name=str(staff_name),
        service_name=str(service_name),
        location=str(location),
        duration_minutes=int(duration_raw),
        payment_method=str(payment_method),
        start_time=_to_datetime(start_time),
        end_time=_to_datetime(end_time),
        customer_contact=_optional_text(customer_contact),
        price=_to_decimal(price_raw),
        staff_fee=_to_decimal(fee_raw),
        status=TransactionStatus(str(status_raw)),
        corrected_from_id=_optional_text(corrected_from_id),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    """Convert a raw worksheet row into a strongly typed payment record."""

    staff_name, amount_raw, payment_date, method, notes = raw_row[:5]
    if isinstance(payment_date, datetime):
        paid_on = payment_date.date()
    elif isinstance(payment_date, date):
        paid_on = payment_date
    else:
        paid_on = date.fromisoformat(str(payment_date))
    return PaymentRow(
        staff_name=str(staff_name),
        amount=_to_decimal(amount_raw),
        payment_date=paid_on,
        method=_optional_text(method),
        notes=_optional_text(notes),
    )


def _to_decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0.00")


_TRUE_TEXT = frozenset({"true", "yes", "y", "1"})
_FALSE_TEXT = frozenset({"false", "no", "n", "0"})


def _required_decimal(raw: object, column: str, where: str) -> Decimal:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError(f"{where}: {column} is required")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{where}: {column} must be a number, got {raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise ValidationError(f"{where}: {column} must be a non-negative number, got {raw!r}")
    return value


def _to_flag(raw: object, column: str, where: str) -> bool:
    if raw is None:
        return True
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    text = str(raw).strip().lower()
    if not text or text in _TRUE_TEXT:
        return True
    if text in _FALSE_TEXT:
        return False
    raise ValidationError(f"{where}: {column} must be TRUE or FALSE, got {raw!r}")


def _to_datetime(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None
