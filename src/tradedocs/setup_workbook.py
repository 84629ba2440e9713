"""Utility for initializing the tradedocs master workbook.

The module doubles as a script (``tradedocs-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import sys
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager
from .constants import DEFAULT_MIN_STOCK

# Header rows derive from the record dataclasses so the two never drift apart.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    sheet.value: spec.headers for sheet, spec in data_manager.TABLES.items()
}

SAMPLE_ITEMS: Sequence[Mapping[str, object]] = (
    {"name": "Web Development Service", "description": "Fullstack web development",
     "price": Decimal("15000000"), "stock": 100},
    {"name": "Mobile App Development", "description": "Flutter based mobile app",
     "price": Decimal("25000000"), "stock": 50},
    {"name": "Server Maintenance", "description": "Monthly server maintenance",
     "price": Decimal("2000000"), "stock": 2},
)

SAMPLE_CUSTOMERS: Sequence[Mapping[str, object]] = (
    {"name": "PT Maju Jaya", "address": "Jl. Sudirman No. 1, Jakarta",
     "phone": "021-1234567", "email": "info@majujaya.com"},
    {"name": "CV Berkah Abadi", "address": "Jl. Ahmad Yani No. 10, Surabaya",
     "phone": "031-9876543", "email": "contact@berkahabadi.com"},
)

CONFIG_FILE = "config.ini"


def build_master_workbook(
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    seed: bool = False,
) -> Workbook:
    """Return an in-memory workbook with every sheet and its bold header row.

    When ``seed`` is true a couple of sample customers and catalog items are
    appended so a fresh installation has something to quote against.
    """

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

    if seed:
        seed_catalog(workbook, customers=SAMPLE_CUSTOMERS, items=SAMPLE_ITEMS)

    return workbook


def seed_catalog(
    workbook: Workbook,
    *,
    customers: Iterable[Mapping[str, object]],
    items: Iterable[Mapping[str, object]],
) -> None:
    """Append sample customers and items through the regular repositories."""

    store = data_manager.WorkbookStore(workbook)
    now = datetime.now(UTC)
    for customer in customers:
        store.customers.create(customer, now=now)
    for item in items:
        store.items.create({"min_stock": DEFAULT_MIN_STOCK, **item}, now=now)


def create_master_workbook(
    destination: Path,
    *,
    seed: bool = False,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    workbook = build_master_workbook(seed=seed)
    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, seed: bool = False, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    resolved = config_path.expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    return create_master_workbook(settings.data_file, seed=seed, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the tradedocs data file")
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
        "--seed",
        action="store_true",
        help="Add sample customers and catalog items.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- tradedocs Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, seed=args.seed, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
