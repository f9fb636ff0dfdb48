"""Utility for initializing the shop ledger workbook.

The module doubles as a script (``python -m shop_ledger.setup_workbook``) and
as a library used by tests or other tooling.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager

# Price list the shop opened with; ``--with-default-pricing`` seeds it.
DEFAULT_PRICING_RULES: Sequence[data_manager.PricingRuleRow] = (
    data_manager.PricingRuleRow("Shop", "Thai", 60, Decimal("250"), Decimal("100")),
    data_manager.PricingRuleRow("Shop", "Thai", 90, Decimal("400"), Decimal("150")),
    data_manager.PricingRuleRow("Shop", "Neck and Shoulder", 30, Decimal("150"), Decimal("60")),
    data_manager.PricingRuleRow("Shop", "Foot", 60, Decimal("200"), Decimal("80")),
    data_manager.PricingRuleRow("Shop", "Oil", 60, Decimal("400"), Decimal("150")),
)

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def create_ledger_workbook(
    destination: Path,
    *,
    pricing_rules: Iterable[data_manager.PricingRuleRow] = (),
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for rule in pricing_rules:
        data_manager.append_pricing_rule(workbook, rule)

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, seed_pricing: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_ledger_workbook(
        settings.data_file,
        pricing_rules=DEFAULT_PRICING_RULES if seed_pricing else (),
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the shop ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--with-default-pricing",
        action="store_true",
        help="Seed the PricingRules sheet with the default price list.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Shop Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(
            config_path,
            overwrite=args.force,
            seed_pricing=args.with_default_pricing,
        )
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
