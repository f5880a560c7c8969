"""Bootstrap a cropvault installation: a starter config and an empty workbook.

Used by the ``cropvault-setup`` script and by the test fixtures, so the sheet
layout below is the single definition of the workbook schema.
"""

from __future__ import annotations

import argparse
import configparser
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, PaymentMethod, SheetName, UserRole

# Column order must match the serializers in ``data_manager``.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.LOCATIONS.value: [
        "LocationID",
        "LocationName",
        "Capacity",
        "OwnerID",
        "MobileNumber",
        "Address",
    ],
    SheetName.AREAS.value: [
        "AreaID",
        "AreaName",
        "LocationID",
        "Capacity",
        "OwnerID",
    ],
    SheetName.CROP_TYPES.value: [
        "CropTypeID",
        "CropTypeName",
        "Rate1",
        "Rate6",
        "Rate12",
        "Insurance",
        "OwnerID",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "CustomerName",
        "MobileNumber",
        "OwnerID",
    ],
    SheetName.INFLOWS.value: [
        "InflowID",
        "OwnerID",
        "CustomerID",
        "CropTypeID",
        "LocationID",
        "DateAdded",
        "Allocations",
        "LabourCharge",
        "Version",
    ],
    SheetName.OUTFLOWS.value: [
        "OutflowID",
        "InflowID",
        "OwnerID",
        "CustomerID",
        "Date",
        "QuantityWithdrawn",
        "StorageDuration",
        "CostPerBag",
        "StorageCost",
        "InsuranceCharge",
        "LabourCharge",
        "TotalBill",
        "AmountPaid",
        "BalanceDue",
        "RateOverridden",
        "CustomerName",
        "LocationName",
        "CropTypeName",
        "Version",
    ],
    SheetName.PAYMENTS.value: [
        "PaymentID",
        "OutflowID",
        "CustomerID",
        "OwnerID",
        "Date",
        "Amount",
        "PaymentMethod",
        "Notes",
    ],
}

DEFAULT_CONFIG_FILE = Path("config.ini")
DEFAULT_DATA_FILE = "cropvault.xlsx"
HEADER_FONT = Font(bold=True)
MIN_COLUMN_WIDTH = 12


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini`` the same way the runtime does.

    Relative ``DataFile`` entries resolve against the directory holding the
    configuration file.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If a required entry is missing or invalid.
    """

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def write_sample_config(
    destination: Path,
    *,
    owner_id: str,
    business_name: str = "Cold Storage",
    data_file: str = DEFAULT_DATA_FILE,
    overwrite: bool = False,
) -> Path:
    """Write a starter ``config.ini`` for a single tenant.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {destination}")

    parser = configparser.ConfigParser()
    parser.optionxform = str  # keep the CamelCase keys readable
    parser["System"] = {
        "DataFile": data_file,
        "BusinessName": business_name,
        "SchemaVersion": EXPECTED_SCHEMA_VERSION,
    }
    parser["Defaults"] = {
        "OwnerID": owner_id,
        "Role": UserRole.USER.value,
        "PaymentMethod": PaymentMethod.CASH.value,
    }
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    return destination


def _format_sheet(worksheet: Worksheet, columns: Sequence[str]) -> None:
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index, value=column_name)
        cell.font = HEADER_FONT
        letter = get_column_letter(column_index)
        worksheet.column_dimensions[letter].width = max(MIN_COLUMN_WIDTH, len(column_name) + 2)
    worksheet.freeze_panes = "A2"


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    business_name: str | None = None,
    overwrite: bool = False,
) -> Path:
    """Create an empty cropvault workbook at ``destination``.

    Every sheet gets a bold, frozen header row sized to its column titles.
    Locations, areas, crop types and customers are added afterwards through
    ``cropvault-cli``.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    # openpyxl always starts with one blank sheet.
    workbook.remove(workbook.active)
    for sheet_name, columns in sheet_columns.items():
        _format_sheet(workbook.create_sheet(title=sheet_name), columns)

    if business_name:
        workbook.properties.title = business_name
    workbook.properties.keywords = f"cropvault schema {EXPECTED_SCHEMA_VERSION}"

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by the ``DataFile`` entry of ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, business_name=settings.business_name, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cropvault-setup",
        description="Create the cropvault workbook named in config.ini.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help="Path to configuration file (default: ./config.ini).",
    )
    parser.add_argument(
        "--write-config",
        metavar="OWNER_ID",
        default=None,
        help="First write a starter config.ini for this owner at --config.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing files instead of refusing.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``cropvault-setup``; returns a process exit code."""

    args = parse_args(argv)
    config_path = args.config.expanduser().resolve()

    try:
        if args.write_config:
            write_sample_config(config_path, owner_id=args.write_config, overwrite=args.force)
            print(f"Wrote configuration '{config_path}'")
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        log.error("%s", exc)
        print("Pass --force to replace it.", file=sys.stderr)
        return 1
    except (FileNotFoundError, KeyError) as exc:
        log.error("Invalid configuration: %s", exc)
        return 1
    except OSError as exc:
        log.error("Unable to write workbook: %s", exc)
        return 1

    print(f"Created master workbook '{output_path}'")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
