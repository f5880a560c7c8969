"""Data access layer for cropvault.

This module provides low-level helpers that read from and write to the
cropvault workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet queries: loading typed records, optionally narrowed to a tenant,
   customer, or location.
4. Change sets: writing every record of one business operation together,
   after checking that none of the rows changed since they were read.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import ZERO, PaymentMethod, SheetName, UserRole
from .errors import MissingReferenceError, StaleRecordError
from .models import (
    AreaAllocation,
    BillingSnapshot,
    CropType,
    Customer,
    Inflow,
    Outflow,
    Payment,
    RateCard,
    StorageArea,
    StorageLocation,
    to_money,
)


CONFIG_FILE_NAME = "config.ini"
LOCATIONS_SHEET = SheetName.LOCATIONS.value
AREAS_SHEET = SheetName.AREAS.value
CROP_TYPES_SHEET = SheetName.CROP_TYPES.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
INFLOWS_SHEET = SheetName.INFLOWS.value
OUTFLOWS_SHEET = SheetName.OUTFLOWS.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value

ALLOCATION_SEPARATOR = ";"
ALLOCATION_ASSIGNMENT = "="


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_owner_id: str
    default_role: UserRole = UserRole.USER
    default_payment_method: PaymentMethod = PaymentMethod.CASH


@dataclass
class ChangeSet:
    """Every row written by one business operation.

    Updated and deleted records carry the ``version`` they were read at;
    :func:`apply_change_set` refuses the whole set if any stored row has moved
    on since.
    """

    new_inflows: List[Inflow] = field(default_factory=list)
    updated_inflows: List[Inflow] = field(default_factory=list)
    deleted_inflows: List[Inflow] = field(default_factory=list)
    new_outflows: List[Outflow] = field(default_factory=list)
    updated_outflows: List[Outflow] = field(default_factory=list)
    new_payments: List[Payment] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(
            (
                self.new_inflows,
                self.updated_inflows,
                self.deleted_inflows,
                self.new_outflows,
                self.updated_outflows,
                self.new_payments,
            )
        )


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
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
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

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.
    ``Role`` and ``PaymentMethod`` are optional and default to ``user`` and
    ``Cash``.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or the role or
            payment method is not recognised.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_owner = parser.get("Defaults", "OwnerID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    role_raw = parser.get("Defaults", "Role", fallback=UserRole.USER.value)
    method_raw = parser.get("Defaults", "PaymentMethod", fallback=PaymentMethod.CASH.value)
    try:
        default_role = UserRole(role_raw.strip().lower())
        default_method = PaymentMethod(method_raw.strip())
    except ValueError as exc:
        raise KeyError(f"Invalid configuration value: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_owner_id=default_owner,
        default_role=default_role,
        default_payment_method=default_method,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the cropvault workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def file_stamp(data_file: Path) -> Optional[int]:
    """Return the modification stamp of ``data_file`` in nanoseconds, if any."""

    path = Path(data_file).expanduser().resolve()
    if not path.exists():
        return None
    return path.stat().st_mtime_ns


def save_workbook(workbook: Workbook, destination: Path, *, expected_stamp: Optional[int] = None) -> Optional[int]:
    """Persist the workbook to disk at an explicitly provided destination.

    When ``expected_stamp`` is given the save is refused if the file on disk
    was modified since that stamp was taken, which stops two processes from
    silently overwriting each other's work.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
        expected_stamp (int | None): Stamp recorded when the workbook was
            opened.

    Returns:
        int | None: The new file stamp after saving.

    Raises:
        StaleRecordError: If the file changed since ``expected_stamp``.
    """

    dest = Path(destination).expanduser().resolve()
    if expected_stamp is not None:
        current = file_stamp(dest)
        if current != expected_stamp:
            raise StaleRecordError(str(dest), f"Workbook '{dest}' was modified by another process")
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    return file_stamp(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _within(owner_id: str, owner_ids: Optional[Collection[str]]) -> bool:
    return owner_ids is None or owner_id in owner_ids


def iter_locations(workbook: Workbook, *, owner_ids: Optional[Collection[str]] = None) -> Iterable[StorageLocation]:
    """Yield storage locations, optionally limited to ``owner_ids``."""

    for raw in _rows(workbook, LOCATIONS_SHEET):
        location = deserialize_location(raw)
        if _within(location.owner_id, owner_ids):
            yield location


def iter_areas(workbook: Workbook, *, location_id: Optional[str] = None) -> Iterable[StorageArea]:
    """Yield storage areas, optionally limited to one location."""

    for raw in _rows(workbook, AREAS_SHEET):
        area = deserialize_area(raw)
        if location_id is None or area.location_id == location_id:
            yield area


def iter_crop_types(workbook: Workbook, *, owner_ids: Optional[Collection[str]] = None) -> Iterable[CropType]:
    """Yield crop types, optionally limited to ``owner_ids``."""

    for raw in _rows(workbook, CROP_TYPES_SHEET):
        crop_type = deserialize_crop_type(raw)
        if _within(crop_type.owner_id, owner_ids):
            yield crop_type


def iter_customers(workbook: Workbook, *, owner_ids: Optional[Collection[str]] = None) -> Iterable[Customer]:
    for raw in _rows(workbook, CUSTOMERS_SHEET):
        customer = deserialize_customer(raw)
        if _within(customer.owner_id, owner_ids):
            yield customer


def iter_inflows(workbook: Workbook, *, owner_ids: Optional[Collection[str]] = None) -> Iterable[Inflow]:
    """Yield live inflows, optionally limited to ``owner_ids``."""

    for raw in _rows(workbook, INFLOWS_SHEET):
        inflow = deserialize_inflow(raw)
        if _within(inflow.owner_id, owner_ids):
            yield inflow


def iter_outflows(
    workbook: Workbook,
    *,
    owner_ids: Optional[Collection[str]] = None,
    customer_id: Optional[str] = None,
    outstanding_only: bool = False,
) -> Iterable[Outflow]:
    """Yield outflows narrowed by tenant, customer, and unpaid balance.

    Args:
        workbook (Workbook): Workbook containing the ``Outflows`` sheet.
        owner_ids (Collection[str] | None): Tenants to include; ``None``
            includes every tenant.
        customer_id (str | None): Restrict to a single customer.
        outstanding_only (bool): Only yield bills with ``balance_due > 0``.

    Yields:
        Outflow: Typed bill records in sheet order.
    """

    for raw in _rows(workbook, OUTFLOWS_SHEET):
        outflow = deserialize_outflow(raw)
        if not _within(outflow.owner_id, owner_ids):
            continue
        if customer_id is not None and outflow.customer_id != customer_id:
            continue
        if outstanding_only and outflow.balance_due <= ZERO:
            continue
        yield outflow


def iter_payments(
    workbook: Workbook,
    *,
    owner_ids: Optional[Collection[str]] = None,
    customer_id: Optional[str] = None,
) -> Iterable[Payment]:
    for raw in _rows(workbook, PAYMENTS_SHEET):
        payment = deserialize_payment(raw)
        if not _within(payment.owner_id, owner_ids):
            continue
        if customer_id is not None and payment.customer_id != customer_id:
            continue
        yield payment


def append_location(workbook: Workbook, record: StorageLocation) -> None:
    workbook[LOCATIONS_SHEET].append(serialize_location(record))


def append_area(workbook: Workbook, record: StorageArea) -> None:
    workbook[AREAS_SHEET].append(serialize_area(record))


def append_crop_type(workbook: Workbook, record: CropType) -> None:
    workbook[CROP_TYPES_SHEET].append(serialize_crop_type(record))


def append_customer(workbook: Workbook, record: Customer) -> None:
    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def apply_change_set(workbook: Workbook, changes: ChangeSet) -> None:
    """Write every record in ``changes`` or none of them.

    All preconditions are checked before the first cell is touched: updated
    and deleted rows must exist with the version the caller read, and new rows
    must not reuse an existing identifier. Updated rows are written with their
    version incremented by one.

    Args:
        workbook (Workbook): Workbook to modify in memory.
        changes (ChangeSet): Records produced by one business operation.

    Raises:
        MissingReferenceError: If an updated or deleted row no longer exists.
        StaleRecordError: If a row's stored version differs from the version
            the caller read, or a new identifier is already taken.
        ValueError: If one record appears twice within ``changes``.
    """

    _require_unique(
        "inflow",
        [
            *(record.inflow_id for record in changes.new_inflows),
            *(record.inflow_id for record in changes.updated_inflows),
            *(record.inflow_id for record in changes.deleted_inflows),
        ],
    )
    _require_unique(
        "outflow",
        [
            *(record.outflow_id for record in changes.new_outflows),
            *(record.outflow_id for record in changes.updated_outflows),
        ],
    )
    _require_unique("payment", [record.payment_id for record in changes.new_payments])

    for inflow in (*changes.updated_inflows, *changes.deleted_inflows):
        _require_version(workbook, INFLOWS_SHEET, "InflowID", inflow.inflow_id, inflow.version, "inflow")
    for outflow in changes.updated_outflows:
        _require_version(workbook, OUTFLOWS_SHEET, "OutflowID", outflow.outflow_id, outflow.version, "outflow")
    for sheet_name, key_column, key in (
        *((INFLOWS_SHEET, "InflowID", record.inflow_id) for record in changes.new_inflows),
        *((OUTFLOWS_SHEET, "OutflowID", record.outflow_id) for record in changes.new_outflows),
        *((PAYMENTS_SHEET, "PaymentID", record.payment_id) for record in changes.new_payments),
    ):
        if locate_row(workbook, sheet_name, key_column, key) is not None:
            raise StaleRecordError(key, f"Record '{key}' already exists in {sheet_name}")

    for inflow in changes.new_inflows:
        workbook[INFLOWS_SHEET].append(serialize_inflow(inflow))
    for outflow in changes.new_outflows:
        workbook[OUTFLOWS_SHEET].append(serialize_outflow(outflow))
    for payment in changes.new_payments:
        workbook[PAYMENTS_SHEET].append(serialize_payment(payment))

    for inflow in changes.updated_inflows:
        row_index = locate_row(workbook, INFLOWS_SHEET, "InflowID", inflow.inflow_id)
        _write_row(workbook[INFLOWS_SHEET], row_index, serialize_inflow(inflow, version=inflow.version + 1))
    for outflow in changes.updated_outflows:
        row_index = locate_row(workbook, OUTFLOWS_SHEET, "OutflowID", outflow.outflow_id)
        _write_row(workbook[OUTFLOWS_SHEET], row_index, serialize_outflow(outflow, version=outflow.version + 1))

    deletions = [
        locate_row(workbook, INFLOWS_SHEET, "InflowID", inflow.inflow_id)
        for inflow in changes.deleted_inflows
    ]
    # Delete bottom-up so earlier indices stay valid.
    for row_index in sorted((index for index in deletions if index is not None), reverse=True):
        workbook[INFLOWS_SHEET].delete_rows(row_index)

    log.debug(
        "Applied change set: %d new inflows, %d updated, %d deleted, %d new outflows, %d updated, %d payments",
        len(changes.new_inflows),
        len(changes.updated_inflows),
        len(changes.deleted_inflows),
        len(changes.new_outflows),
        len(changes.updated_outflows),
        len(changes.new_payments),
    )


def _require_unique(entity: str, keys: Sequence[str]) -> None:
    seen: set[str] = set()
    for key in keys:
        if key in seen:
            raise ValueError(f"{entity.capitalize()} '{key}' appears more than once in one change set")
        seen.add(key)


def record_exists(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> bool:
    return locate_row(workbook, sheet_name, key_column, key_value) is not None


def update_location(workbook: Workbook, record: StorageLocation) -> None:
    """Overwrite the stored row of ``record`` in place.

    Raises:
        MissingReferenceError: If the location row no longer exists.
    """

    row_index = locate_row(workbook, LOCATIONS_SHEET, "LocationID", record.location_id)
    if row_index is None:
        raise MissingReferenceError("location", record.location_id)
    _write_row(workbook[LOCATIONS_SHEET], row_index, serialize_location(record))


def delete_areas(workbook: Workbook, area_ids: Sequence[str]) -> None:
    """Remove the rows of ``area_ids``; nothing is removed if one is missing.

    Raises:
        MissingReferenceError: If any of the areas has no row.
    """

    rows = []
    for area_id in area_ids:
        row_index = locate_row(workbook, AREAS_SHEET, "AreaID", area_id)
        if row_index is None:
            raise MissingReferenceError("storage area", area_id)
        rows.append(row_index)
    for row_index in sorted(set(rows), reverse=True):
        workbook[AREAS_SHEET].delete_rows(row_index)
    log.debug("Deleted %d rows from %s", len(rows), AREAS_SHEET)


def _require_version(workbook: Workbook, sheet_name: str, key_column: str, key: str, expected: int, entity: str) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key)
    if row_index is None:
        raise MissingReferenceError(entity, key)
    sheet = workbook[sheet_name]
    stored = sheet.cell(row=row_index, column=_header_map(sheet)["Version"]).value
    if int(stored or 0) != expected:
        raise StaleRecordError(
            key,
            f"{entity.capitalize()} '{key}' changed since it was read (expected version {expected}, found {stored})",
        )


def _header_map(sheet: Worksheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _write_row(sheet: Worksheet, row_index: Optional[int], values: Sequence[object]) -> None:
    if row_index is None:
        raise KeyError("Cannot write to a missing row")
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_allocations(allocations: Sequence[AreaAllocation]) -> str:
    """Pack allocations into one cell as ``area=qty;area=qty``."""

    return ALLOCATION_SEPARATOR.join(
        f"{allocation.area_id}{ALLOCATION_ASSIGNMENT}{allocation.quantity}" for allocation in allocations
    )


def deserialize_allocations(raw: object) -> tuple[AreaAllocation, ...]:
    if raw is None or str(raw).strip() == "":
        return ()
    allocations = []
    for chunk in str(raw).split(ALLOCATION_SEPARATOR):
        area_id, _, quantity = chunk.rpartition(ALLOCATION_ASSIGNMENT)
        allocations.append(AreaAllocation(area_id=area_id.strip(), quantity=int(quantity)))
    return tuple(allocations)


def serialize_location(record: StorageLocation) -> list[object]:
    return [
        record.location_id,
        record.location_name,
        record.capacity,
        record.owner_id,
        record.mobile_number,
        record.address,
    ]


def serialize_area(record: StorageArea) -> list[object]:
    return [record.area_id, record.area_name, record.location_id, record.capacity, record.owner_id]


def serialize_crop_type(record: CropType) -> list[object]:
    return [
        record.crop_type_id,
        record.crop_type_name,
        record.rates.monthly,
        record.rates.half_yearly,
        record.rates.yearly,
        record.insurance,
        record.owner_id,
    ]


def serialize_customer(record: Customer) -> list[object]:
    return [record.customer_id, record.customer_name, record.mobile_number, record.owner_id]


def serialize_inflow(record: Inflow, *, version: Optional[int] = None) -> list[object]:
    """Convert an inflow into the ``Inflows`` column ordering.

    Args:
        record (Inflow): Inflow to transform.
        version (int | None): Version to store instead of ``record.version``.

    Returns:
        list[object]: ``[InflowID, OwnerID, CustomerID, CropTypeID,
        LocationID, DateAdded, Allocations, LabourCharge, Version]``.
    """

    return [
        record.inflow_id,
        record.owner_id,
        record.customer_id,
        record.crop_type_id,
        record.location_id,
        record.date_added.isoformat(),
        serialize_allocations(record.allocations),
        record.labour_charge,
        record.version if version is None else version,
    ]


def serialize_outflow(record: Outflow, *, version: Optional[int] = None) -> list[object]:
    """Convert an outflow into the ``Outflows`` column ordering.

    Monetary fields remain :class:`~decimal.Decimal` instances, and the
    billing snapshot is flattened into its three name columns.
    """

    return [
        record.outflow_id,
        record.inflow_id,
        record.owner_id,
        record.customer_id,
        record.date.isoformat(),
        record.quantity_withdrawn,
        record.storage_duration,
        record.cost_per_bag,
        record.storage_cost,
        record.insurance_charge,
        record.labour_charge,
        record.total_bill,
        record.amount_paid,
        record.balance_due,
        record.rate_overridden,
        record.snapshot.customer_name,
        record.snapshot.location_name,
        record.snapshot.crop_type_name,
        record.version if version is None else version,
    ]


def serialize_payment(record: Payment) -> list[object]:
    return [
        record.payment_id,
        record.outflow_id,
        record.customer_id,
        record.owner_id,
        record.date.isoformat(),
        record.amount,
        record.method.value,
        record.notes,
    ]


def _text(value: object) -> str:
    return str(value) if value is not None else ""


def _int(value: object) -> int:
    return int(value) if value is not None else 0


def _timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def deserialize_location(raw_row: Sequence[object]) -> StorageLocation:
    location_id, name, capacity, owner_id, mobile, address = raw_row[:6]
    return StorageLocation(
        location_id=str(location_id),
        location_name=_text(name),
        capacity=_int(capacity),
        owner_id=_text(owner_id),
        mobile_number=_text(mobile),
        address=_text(address),
    )


def deserialize_area(raw_row: Sequence[object]) -> StorageArea:
    area_id, name, location_id, capacity, owner_id = raw_row[:5]
    return StorageArea(
        area_id=str(area_id),
        area_name=_text(name),
        location_id=_text(location_id),
        capacity=_int(capacity),
        owner_id=_text(owner_id),
    )


def deserialize_crop_type(raw_row: Sequence[object]) -> CropType:
    """Convert a raw ``CropTypes`` row into a :class:`CropType`.

    Rate columns become a :class:`RateCard`; blank cells are read as zero.
    """

    crop_type_id, name, rate_1, rate_6, rate_12, insurance, owner_id = raw_row[:7]
    return CropType(
        crop_type_id=str(crop_type_id),
        crop_type_name=_text(name),
        rates=RateCard.from_mapping({1: rate_1, 6: rate_6, 12: rate_12}),
        insurance=to_money(insurance),
        owner_id=_text(owner_id),
    )


def deserialize_customer(raw_row: Sequence[object]) -> Customer:
    customer_id, name, mobile, owner_id = raw_row[:4]
    return Customer(
        customer_id=str(customer_id),
        customer_name=_text(name),
        mobile_number=_text(mobile),
        owner_id=_text(owner_id),
    )


def deserialize_inflow(raw_row: Sequence[object]) -> Inflow:
    """Convert a raw ``Inflows`` row into an :class:`Inflow`.

    The allocation cell is unpacked into :class:`AreaAllocation` entries and
    the labour charge is normalised to a two-place decimal.
    """

    (
        inflow_id,
        owner_id,
        customer_id,
        crop_type_id,
        location_id,
        date_added,
        allocations,
        labour_charge,
        version,
    ) = raw_row[:9]
    return Inflow(
        inflow_id=str(inflow_id),
        owner_id=_text(owner_id),
        customer_id=_text(customer_id),
        crop_type_id=_text(crop_type_id),
        location_id=_text(location_id),
        date_added=_timestamp(date_added),
        allocations=deserialize_allocations(allocations),
        labour_charge=to_money(labour_charge),
        version=_int(version) or 1,
    )


def deserialize_outflow(raw_row: Sequence[object]) -> Outflow:
    """Convert a raw ``Outflows`` row into an :class:`Outflow`.

    Decimal-compatible columns are normalised to two places so the balance
    invariant checked by :class:`Outflow` holds exactly after a round trip.
    """

    (
        outflow_id,
        inflow_id,
        owner_id,
        customer_id,
        date,
        quantity,
        duration,
        cost_per_bag,
        storage_cost,
        insurance_charge,
        labour_charge,
        total_bill,
        amount_paid,
        balance_due,
        rate_overridden,
        customer_name,
        location_name,
        crop_type_name,
        version,
    ) = raw_row[:19]
    return Outflow(
        outflow_id=str(outflow_id),
        inflow_id=_text(inflow_id),
        owner_id=_text(owner_id),
        customer_id=_text(customer_id),
        date=_timestamp(date),
        quantity_withdrawn=_int(quantity),
        storage_duration=_int(duration),
        cost_per_bag=to_money(cost_per_bag),
        storage_cost=to_money(storage_cost),
        insurance_charge=to_money(insurance_charge),
        labour_charge=to_money(labour_charge),
        total_bill=to_money(total_bill),
        amount_paid=to_money(amount_paid),
        balance_due=to_money(balance_due),
        rate_overridden=bool(rate_overridden),
        snapshot=BillingSnapshot(
            customer_name=_text(customer_name),
            location_name=_text(location_name),
            crop_type_name=_text(crop_type_name),
        ),
        version=_int(version) or 1,
    )


def deserialize_payment(raw_row: Sequence[object]) -> Payment:
    payment_id, outflow_id, customer_id, owner_id, date, amount, method, notes = raw_row[:8]
    return Payment(
        payment_id=str(payment_id),
        outflow_id=_text(outflow_id),
        customer_id=_text(customer_id),
        owner_id=_text(owner_id),
        date=_timestamp(date),
        amount=to_money(amount),
        method=PaymentMethod(str(method)) if method is not None else PaymentMethod.CASH,
        notes=(str(notes) if notes is not None else None),
    )
