"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the calls exposed by :mod:`shop_ledger.core_logic`.
Keeping the CLI thin lets tests, scripts, or an HTTP front-end reuse the same
business layer.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import StaffPaymentType, TransactionStatus
from .errors import ConflictError, LedgerError, NotFoundError
from .ledger import TransactionFilter, TransactionInput


WRITE_COMMANDS = ("record", "correct", "void", "pay-staff")

# dest name -> transaction input field, for options shared by record/correct
_INPUT_OPTIONS: Mapping[str, str] = {
    "staff_name": "staff_name",
    "service": "service_name",
    "location": "location",
    "duration": "duration_minutes",
    "payment_method": "payment_method",
    "start": "start_time",
    "end": "end_time",
    "customer_contact": "customer_contact",
}


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_timestamp(raw: str) -> datetime:
    """argparse type for ISO 8601 timestamps."""
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {raw}") from exc


def parse_day(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO date: {raw}") from exc


def parse_amount(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Command-line tools for the shop ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "record": register_record_command(subparsers),
        "correct": register_correct_command(subparsers),
        "void": register_void_command(subparsers),
        "pay-staff": register_pay_staff_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "log": register_log_command(subparsers),
        "balance": register_balance_command(subparsers),
        "balances": register_balances_command(subparsers),
        "summary": register_summary_command(subparsers),
        "price": register_price_command(subparsers),
        "weekly": register_weekly_command(subparsers),
        "monthly": register_monthly_command(subparsers),
        "latest": register_latest_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_input_options(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--staff-name", required=required)
    parser.add_argument("--service", required=required)
    parser.add_argument("--location", required=required)
    parser.add_argument("--duration", type=int, required=required, help="Session length in minutes.")
    parser.add_argument("--payment-method", required=required)
    parser.add_argument("--start", type=parse_timestamp, required=required, help="ISO 8601 start time.")
    parser.add_argument("--end", type=parse_timestamp, required=required, help="ISO 8601 end time.")
    parser.add_argument("--customer-contact", default=None)


def register_record_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``record``."""
    name = "record"
    help_text = "Record a new session."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_input_options(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record)


def register_correct_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``correct``."""
    name = "correct"
    help_text = "Replace a session with a corrected copy; omitted fields are kept."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        _add_input_options(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_correct)


def register_void_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void``."""
    name = "void"
    help_text = "Void a mistaken session without a replacement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void)


def register_pay_staff_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-staff``."""
    name = "pay-staff"
    help_text = "Record a fee payment handed to a staff member."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--staff-name", required=True)
        parser.add_argument("--amount", type=parse_amount, required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in StaffPaymentType],
            default=None,
        )
        parser.add_argument("--date", dest="payment_date", type=parse_day, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_staff)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--status",
            choices=[member.value for member in TransactionStatus],
            default=None,
        )
        parser.add_argument("--staff-name", default=None)
        parser.add_argument("--day", type=parse_day, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display one staff member's fee balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--staff-name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance_report)


def register_balances_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balances``."""
    name = "balances"
    help_text = "Display every staff member's fee balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balances_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display one day's revenue and fees."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--day", type=parse_day, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``price``."""
    name = "price"
    help_text = "Look up the price and staff fee of a service."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location", required=True)
        parser.add_argument("--service", required=True)
        parser.add_argument("--duration", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_price_lookup)


def register_weekly_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``weekly``."""
    name = "weekly"
    help_text = "Display each staff member's sessions and fees for one week."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--day", type=parse_day, default=None, help="Any day within the week (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_weekly_report)


def register_monthly_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``monthly``."""
    name = "monthly"
    help_text = "Display one month's totals broken down by service."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--year", type=int, default=None)
        parser.add_argument("--month", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_monthly_report)


def register_latest_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``latest``."""
    name = "latest"
    help_text = "Show the most recent active transaction, the usual one to correct."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--staff-name", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_latest_lookup)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_record(args: argparse.Namespace) -> TransactionInput:
    """Translate CLI args into a transaction input."""
    return TransactionInput(
        staff_name=args.staff_name,
        service_name=args.service,
        location=args.location,
        duration_minutes=args.duration,
        payment_method=args.payment_method,
        start_time=args.start,
        end_time=args.end,
        customer_contact=args.customer_contact,
    )


def translate_correct(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into the fields a correction changes."""
    return {
        field: getattr(args, dest)
        for dest, field in _INPUT_OPTIONS.items()
        if getattr(args, dest, None) is not None
    }


def translate_log_filter(args: argparse.Namespace) -> TransactionFilter:
    return TransactionFilter(
        status=TransactionStatus(args.status) if args.status else None,
        staff_name=args.staff_name,
        business_day=args.day,
    )


def format_transaction(row: Any) -> str:
    return "\t".join(
        [
            row.transaction_id,
            row.status.value,
            row.staff_name,
            f"{row.service_name} {row.duration_minutes}m @ {row.location}",
            row.start_time.isoformat(),
            str(row.price),
            str(row.staff_fee),
            row.corrected_from_id or "-",
        ]
    )


def format_balance(balance: Any) -> str:
    return "\t".join(
        [
            balance.staff_name,
            f"earned={balance.total_fees_earned}",
            f"paid={balance.total_fees_paid}",
            f"outstanding={balance.outstanding_balance}",
            f"week={balance.this_week_sessions}/{balance.this_week_fees}",
            balance.payment_status.value,
        ]
    )


def run_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the record workflow via the BLL."""
    transaction = core_logic.create_transaction(context, translate_record(args))
    print(format_transaction(transaction))
    return 0


def run_correct(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the correction workflow via the BLL."""
    transaction = core_logic.correct_transaction(context, args.transaction_id, translate_correct(args))
    print(format_transaction(transaction))
    return 0


def run_void(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the void workflow via the BLL."""
    core_logic.void_transaction(context, args.transaction_id)
    return 0


def run_pay_staff(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the staff payment workflow via the BLL."""
    core_logic.record_staff_payment(
        context,
        args.staff_name,
        args.amount,
        payment_date=args.payment_date,
        method=StaffPaymentType(args.method) if args.method else None,
        notes=args.notes,
    )
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction log reporting workflow."""
    for row in core_logic.list_transactions(context, translate_log_filter(args)):
        print(format_transaction(row))
    return 0


def run_balance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(format_balance(core_logic.get_staff_balance(context, args.staff_name)))
    return 0


def run_balances_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for balance in core_logic.list_staff_balances(context):
        print(format_balance(balance))
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.summarize_day(context, args.day)
    print(
        f"{summary.day.isoformat()}\tsessions={summary.transaction_count}"
        f"\trevenue={summary.total_revenue}\tfees={summary.total_fees}"
    )
    for method, line in summary.payment_breakdown.items():
        print(f"  {method}\t{line.count}\t{line.revenue}")
    return 0


def run_weekly_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    report = core_logic.weekly_staff_report(context, args.day)
    print(f"{report.week_start.isoformat()}..{report.week_end.isoformat()}")
    for line in report.lines:
        print(f"  {line.staff_name}\tsessions={line.session_count}\tfees={line.total_fees}")
    return 0


def run_monthly_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.summarize_month(context, args.year, args.month)
    print(
        f"{summary.year:04d}-{summary.month:02d}\tsessions={summary.transaction_count}"
        f"\trevenue={summary.total_revenue}\tfees={summary.total_fees}"
    )
    for service, line in summary.service_breakdown.items():
        print(f"  {service}\t{line.count}\t{line.revenue}")
    return 0


def run_latest_lookup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(format_transaction(core_logic.latest_active_transaction(context, args.staff_name)))
    return 0


def run_price_lookup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    quote = core_logic.quote_price(context, args.location, args.service, args.duration)
    print(f"price={quote.price}\tstaff_fee={quote.staff_fee}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes."""
    log.error("%s", error)
    if isinstance(error, ConflictError):
        return 5
    if isinstance(error, NotFoundError):
        return 4
    if isinstance(error, LedgerError):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and args.command in WRITE_COMMANDS:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
