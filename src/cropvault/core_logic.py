"""Business logic layer for cropvault.

This module orchestrates the pure billing engine (``allocation``,
``billing``, ``settlement``, ``payments``) against the workbook. It consumes
the Data Access Layer (DAL) for all I/O, scopes every read and write to the
calling tenant, and serialises mutations per entity so two concurrent
requests can never settle the same inflow or overfill the same area.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Set

from openpyxl.workbook import Workbook

from . import data_manager, log
from .allocation import AllocationRequest, allocate
from .billing import BillQuote, compute_bill
from .capacity import AreaUsage, CapacityLedger, LocationUsage
from .constants import EXPECTED_SCHEMA_VERSION, PRIVILEGED_ROLES, ZERO, ErrorKind, PaymentMethod, UserRole
from .errors import BusinessRuleViolation, LedgerError, MissingReferenceError, StaleRecordError
from .events import BillingEvent, InflowReceipt
from .models import (
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
from .payments import PaymentAllocation, apply_payment
from .settlement import settle, stock_error


# Held innermost, only around a write or an id reservation.
WORKBOOK_LOCK_KEY = "~workbook"


class EntityLocks:
    """Registry of per-entity locks keyed by strings such as ``inflow:IN123``."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Acquire every lock named in ``keys`` in sorted order."""
        acquired: List[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _locks: EntityLocks = field(default_factory=EntityLocks, repr=False, compare=False)
    _stamps: Dict[str, Optional[int]] = field(default_factory=dict, repr=False, compare=False)
    _issued_ids: Set[str] = field(default_factory=set, repr=False, compare=False)

    @property
    def locks(self) -> EntityLocks:
        return self._locks


@dataclass(frozen=True)
class CallerIdentity:
    """Who is asking. Owners see their own records; privileged roles see all."""

    user_id: str
    role: UserRole = UserRole.USER

    @property
    def sees_all_tenants(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def owner_scope(self) -> Optional[FrozenSet[str]]:
        """Owner ids visible to this caller, or ``None`` for every tenant."""
        if self.sees_all_tenants:
            return None
        return frozenset({self.user_id})

    def can_see(self, owner_id: str) -> bool:
        return self.sees_all_tenants or owner_id == self.user_id


@dataclass(frozen=True)
class AddLocationCommand:
    location_name: str
    capacity: int
    mobile_number: str = ""
    address: str = ""
    location_id: Optional[str] = None


@dataclass(frozen=True)
class AddAreaCommand:
    location_id: str
    area_name: str
    capacity: int
    area_id: Optional[str] = None


@dataclass(frozen=True)
class UpdateLocationCommand:
    """Fields to change on a location; ``None`` keeps the stored value."""

    location_id: str
    location_name: Optional[str] = None
    capacity: Optional[int] = None
    mobile_number: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class AddAreasBulkCommand:
    """Create ``{prefix}{n}`` areas for every prefix and every n in the range."""

    location_id: str
    prefixes: Sequence[str]
    start_number: int
    end_number: int
    capacity: int


@dataclass(frozen=True)
class AddCropTypeCommand:
    crop_type_name: str
    rates: Mapping[Any, Any]
    insurance: Decimal = ZERO
    crop_type_id: Optional[str] = None


@dataclass(frozen=True)
class AddCustomerCommand:
    customer_name: str
    mobile_number: str = ""
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class ReceiveInflowCommand:
    """User intent for depositing bags into one or more areas of a location."""

    customer_id: str
    crop_type_id: str
    location_id: str
    allocations: Sequence[AllocationRequest]
    labour_charge_per_bag: Decimal = ZERO
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SettleOutflowCommand:
    """User intent for withdrawing bags from an inflow and billing them."""

    inflow_id: str
    quantity: int
    amount_paid: Decimal = ZERO
    cost_per_bag_override: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PayDuesCommand:
    """User intent for paying down a customer's outstanding bills.

    ``outflow_ids`` selects the bills; when omitted every outstanding bill of
    the customer takes part.
    """

    customer_id: str
    amount: Decimal
    outflow_ids: Optional[Sequence[str]] = None
    payment_method: Optional[PaymentMethod] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StorageSummary:
    """Aggregate figures for the inflows received in a date range."""

    inflow_count: int
    total_bags: int
    potential_monthly_revenue: Decimal
    total_capacity: int
    locations: tuple[LocationUsage, ...]

    @property
    def utilization(self) -> float:
        return (self.total_bags / self.total_capacity) * 100 if self.total_capacity > 0 else 0.0


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def default_identity(context: RuntimeContext) -> CallerIdentity:
    """Build the caller identity configured under ``[Defaults]``."""

    return CallerIdentity(
        user_id=context.settings.default_owner_id,
        role=context.settings.default_role,
    )


def _identity(context: RuntimeContext, identity: Optional[CallerIdentity]) -> CallerIdentity:
    return identity if identity is not None else default_identity(context)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps one bucket per sheet. Each bucket stores
    the full record list and a ``by_id`` lookup so repeated queries do not
    re-scan the workbook.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking first.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(context: RuntimeContext, name: str, loader, key: str) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        records = list(loader(context.workbook))
        # "all" is the populated marker, so it is set last.
        bucket["by_id"] = {getattr(record, key): record for record in records}
        bucket["all"] = records
        log.debug("Populated %s cache with %d entries", name, len(records))
    return bucket


def _ensure_locations_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "locations", data_manager.iter_locations, "location_id")


def _ensure_areas_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "areas", data_manager.iter_areas, "area_id")


def _ensure_crop_types_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "crop_types", data_manager.iter_crop_types, "crop_type_id")


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "customers", data_manager.iter_customers, "customer_id")


def _ensure_inflows_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "inflows", data_manager.iter_inflows, "inflow_id")


def _ensure_outflows_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "outflows", data_manager.iter_outflows, "outflow_id")


def _ensure_payments_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "payments", data_manager.iter_payments, "payment_id")


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The modification stamp of the workbook is recorded so that
    :func:`persist_context` can refuse to overwrite changes made by another
    process in the meantime.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    context = RuntimeContext(settings=settings, workbook=workbook)
    context._stamps["workbook"] = data_manager.file_stamp(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return context


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


def _visible(records: Sequence[Any], identity: CallerIdentity) -> List[Any]:
    return [record for record in records if identity.can_see(record.owner_id)]


def list_locations(context: RuntimeContext, identity: Optional[CallerIdentity] = None) -> List[StorageLocation]:
    """Return the storage locations visible to ``identity`` in sheet order."""
    return _visible(_ensure_locations_cache(context)["all"], _identity(context, identity))


def list_areas(
    context: RuntimeContext,
    location_id: str,
    identity: Optional[CallerIdentity] = None,
) -> List[StorageArea]:
    """Return the areas of a location, after checking the location is visible."""
    get_location(context, location_id, identity)
    return [area for area in _ensure_areas_cache(context)["all"] if area.location_id == location_id]


def list_crop_types(context: RuntimeContext, identity: Optional[CallerIdentity] = None) -> List[CropType]:
    return _visible(_ensure_crop_types_cache(context)["all"], _identity(context, identity))


def list_customers(context: RuntimeContext, identity: Optional[CallerIdentity] = None) -> List[Customer]:
    return _visible(_ensure_customers_cache(context)["all"], _identity(context, identity))


def list_inflows(context: RuntimeContext, identity: Optional[CallerIdentity] = None) -> List[Inflow]:
    """Return live inflows visible to ``identity``, oldest first."""
    inflows = _visible(_ensure_inflows_cache(context)["all"], _identity(context, identity))
    return sorted(inflows, key=lambda inflow: inflow.date_added)


def list_outflows(
    context: RuntimeContext,
    identity: Optional[CallerIdentity] = None,
    *,
    customer_id: Optional[str] = None,
    outstanding_only: bool = False,
) -> List[Outflow]:
    """Return visible outflows, optionally limited to one customer or to unpaid bills."""
    result = []
    for outflow in _visible(_ensure_outflows_cache(context)["all"], _identity(context, identity)):
        if customer_id is not None and outflow.customer_id != customer_id:
            continue
        if outstanding_only and outflow.balance_due <= ZERO:
            continue
        result.append(outflow)
    return result


def _lookup(context: RuntimeContext, bucket: Dict[str, Any], entity: str, entity_id: str, identity: Optional[CallerIdentity]) -> Any:
    record = bucket["by_id"].get(entity_id)
    # Records of another tenant are reported exactly like missing ones.
    if record is None or not _identity(context, identity).can_see(record.owner_id):
        log.warning("%s lookup failed for id '%s'", entity.capitalize(), entity_id)
        raise MissingReferenceError(entity, entity_id)
    return record


def get_location(context: RuntimeContext, location_id: str, identity: Optional[CallerIdentity] = None) -> StorageLocation:
    """Resolve a storage location by its identifier.

    Raises:
        MissingReferenceError: If the location is unknown or belongs to a
            tenant the caller cannot see.
    """
    return _lookup(context, _ensure_locations_cache(context), "location", location_id, identity)


def get_area(context: RuntimeContext, area_id: str, identity: Optional[CallerIdentity] = None) -> StorageArea:
    return _lookup(context, _ensure_areas_cache(context), "storage area", area_id, identity)


def get_crop_type(context: RuntimeContext, crop_type_id: str, identity: Optional[CallerIdentity] = None) -> CropType:
    return _lookup(context, _ensure_crop_types_cache(context), "crop type", crop_type_id, identity)


def get_customer(context: RuntimeContext, customer_id: str, identity: Optional[CallerIdentity] = None) -> Customer:
    return _lookup(context, _ensure_customers_cache(context), "customer", customer_id, identity)


def get_inflow(context: RuntimeContext, inflow_id: str, identity: Optional[CallerIdentity] = None) -> Inflow:
    """Resolve a live inflow by its identifier.

    Fully withdrawn inflows no longer exist, so settling one twice surfaces
    as :class:`MissingReferenceError`.
    """
    return _lookup(context, _ensure_inflows_cache(context), "inflow", inflow_id, identity)


def get_outflow(context: RuntimeContext, outflow_id: str, identity: Optional[CallerIdentity] = None) -> Outflow:
    return _lookup(context, _ensure_outflows_cache(context), "outflow", outflow_id, identity)


def add_location(
    context: RuntimeContext,
    command: AddLocationCommand,
    identity: Optional[CallerIdentity] = None,
) -> StorageLocation:
    """Register a storage location owned by the caller.

    Raises:
        ValueError: If the name is blank or the capacity is not positive.
    """
    owner = _identity(context, identity)
    require_name(command.location_name)
    require_positive_quantity(command.capacity)
    record = StorageLocation(
        location_id=command.location_id or reserve_record_id(context, prefix="LOC"),
        location_name=command.location_name.strip(),
        capacity=int(command.capacity),
        owner_id=owner.user_id,
        mobile_number=command.mobile_number,
        address=command.address,
    )
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        data_manager.append_location(context.workbook, record)
    _invalidate_cache(context, "locations")
    log.info("Added location '%s' (%s, capacity=%d)", record.location_id, record.location_name, record.capacity)
    return record


def add_area(
    context: RuntimeContext,
    command: AddAreaCommand,
    identity: Optional[CallerIdentity] = None,
) -> StorageArea:
    """Register a storage area inside one of the caller's locations.

    Raises:
        MissingReferenceError: If the location is unknown to the caller.
        ValueError: If the name is blank or the capacity is not positive.
    """
    location = get_location(context, command.location_id, identity)
    require_name(command.area_name)
    require_positive_quantity(command.capacity)
    record = StorageArea(
        area_id=command.area_id or reserve_record_id(context, prefix="AREA"),
        area_name=command.area_name.strip(),
        location_id=location.location_id,
        capacity=int(command.capacity),
        owner_id=location.owner_id,
    )
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        data_manager.append_area(context.workbook, record)
    _invalidate_cache(context, "areas")
    log.info("Added area '%s' to location '%s' (capacity=%d)", record.area_id, location.location_id, record.capacity)
    return record


def add_crop_type(
    context: RuntimeContext,
    command: AddCropTypeCommand,
    identity: Optional[CallerIdentity] = None,
) -> CropType:
    """Register a crop type with its 1, 6 and 12 month rates.

    Raises:
        ValueError: If a rate tier is missing or any amount is negative.
    """
    owner = _identity(context, identity)
    require_name(command.crop_type_name)
    rates = RateCard.from_mapping(command.rates)
    require_nonnegative_money(Decimal(command.insurance))
    record = CropType(
        crop_type_id=command.crop_type_id or reserve_record_id(context, prefix="CROP"),
        crop_type_name=command.crop_type_name.strip(),
        rates=rates,
        insurance=to_money(command.insurance),
        owner_id=owner.user_id,
    )
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        data_manager.append_crop_type(context.workbook, record)
    _invalidate_cache(context, "crop_types")
    log.info("Added crop type '%s' (%s)", record.crop_type_id, record.crop_type_name)
    return record


def add_customer(
    context: RuntimeContext,
    command: AddCustomerCommand,
    identity: Optional[CallerIdentity] = None,
) -> Customer:
    owner = _identity(context, identity)
    require_name(command.customer_name)
    record = Customer(
        customer_id=command.customer_id or reserve_record_id(context, prefix="CUST"),
        customer_name=command.customer_name.strip(),
        mobile_number=command.mobile_number,
        owner_id=owner.user_id,
    )
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        data_manager.append_customer(context.workbook, record)
    _invalidate_cache(context, "customers")
    log.info("Added customer '%s' (%s)", record.customer_id, record.customer_name)
    return record


def update_location(
    context: RuntimeContext,
    command: UpdateLocationCommand,
    identity: Optional[CallerIdentity] = None,
) -> StorageLocation:
    """Change the name, capacity, mobile number or address of a location.

    Raises:
        MissingReferenceError: If the location is unknown to the caller.
        ValueError: If the new name is blank or the new capacity is not
            positive.
    """
    location = get_location(context, command.location_id, identity)
    name = location.location_name if command.location_name is None else command.location_name
    capacity = location.capacity if command.capacity is None else command.capacity
    require_name(name)
    require_positive_quantity(capacity)
    record = replace(
        location,
        location_name=name.strip(),
        capacity=int(capacity),
        mobile_number=location.mobile_number if command.mobile_number is None else command.mobile_number,
        address=location.address if command.address is None else command.address,
    )
    with context.locks.hold(f"location:{location.location_id}", WORKBOOK_LOCK_KEY):
        data_manager.update_location(context.workbook, record)
    _invalidate_cache(context, "locations")
    log.info("Updated location '%s' (%s, capacity=%d)", record.location_id, record.location_name, record.capacity)
    return record


def add_areas_bulk(
    context: RuntimeContext,
    command: AddAreasBulkCommand,
    identity: Optional[CallerIdentity] = None,
) -> List[StorageArea]:
    """Create a grid of areas such as ``a1..a4, b1..b4`` in one write.

    Blank prefixes are skipped. Every area gets the same capacity and the
    owner of the location.

    Raises:
        MissingReferenceError: If the location is unknown to the caller.
        ValueError: If no prefix is given, the range is empty or negative, or
            the capacity is not positive.
    """
    location = get_location(context, command.location_id, identity)
    prefixes = [prefix.strip() for prefix in command.prefixes if prefix and prefix.strip()]
    if not prefixes:
        log.error("Bulk area creation rejected for location '%s': no prefixes", location.location_id)
        raise ValueError("At least one area prefix is required")
    if command.start_number < 0 or command.end_number < command.start_number:
        log.error("Bulk area creation rejected: range %s..%s", command.start_number, command.end_number)
        raise ValueError("End number must be greater than or equal to a non-negative start number")
    require_positive_quantity(command.capacity)

    records = [
        StorageArea(
            area_id=reserve_record_id(context, prefix="AREA"),
            area_name=f"{prefix}{number}",
            location_id=location.location_id,
            capacity=int(command.capacity),
            owner_id=location.owner_id,
        )
        for prefix in prefixes
        for number in range(command.start_number, command.end_number + 1)
    ]
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        for record in records:
            data_manager.append_area(context.workbook, record)
    _invalidate_cache(context, "areas")
    log.info("Added %d areas to location '%s'", len(records), location.location_id)
    return records


def _delete_areas(context: RuntimeContext, location: StorageLocation, area_ids: Sequence[str]) -> List[StorageArea]:
    """Delete ``area_ids`` unless a live inflow still has bags in one of them."""
    with context.locks.hold(*(f"area:{area_id}" for area_id in area_ids)):
        current = {
            area.area_id: area
            for area in data_manager.iter_areas(context.workbook, location_id=location.location_id)
        }
        for area_id in area_ids:
            if area_id not in current:
                log.warning("Storage area lookup failed for id '%s'", area_id)
                raise MissingReferenceError("storage area", area_id)
        ledger = CapacityLedger([current[area_id] for area_id in area_ids], data_manager.iter_inflows(context.workbook))
        for area_id in area_ids:
            used = ledger.used(area_id)
            if used > 0:
                log.error("Refusing to delete area '%s': %d bags still stored", area_id, used)
                raise BusinessRuleViolation(
                    LedgerError(
                        ErrorKind.AREA_IN_USE,
                        f"Area '{current[area_id].area_name}' still holds {used} bags",
                        area_id,
                        {"used": used},
                    )
                )
        with context.locks.hold(WORKBOOK_LOCK_KEY):
            data_manager.delete_areas(context.workbook, list(area_ids))
        _invalidate_cache(context, "areas")
    log.info("Deleted %d areas from location '%s'", len(area_ids), location.location_id)
    return [current[area_id] for area_id in area_ids]


def delete_area(context: RuntimeContext, area_id: str, identity: Optional[CallerIdentity] = None) -> StorageArea:
    """Remove one empty storage area.

    Raises:
        BusinessRuleViolation: ``AreaInUse`` if a live inflow still has bags
            allocated to the area.
        MissingReferenceError: If the area is unknown to the caller.
    """
    area = get_area(context, area_id, identity)
    location = get_location(context, area.location_id, identity)
    (removed,) = _delete_areas(context, location, [area.area_id])
    return removed


def delete_location_areas(
    context: RuntimeContext,
    location_id: str,
    identity: Optional[CallerIdentity] = None,
) -> List[StorageArea]:
    """Remove every area of a location; nothing is removed if one still holds bags."""
    location = get_location(context, location_id, identity)
    area_ids = [area.area_id for area in list_areas(context, location.location_id, identity)]
    if not area_ids:
        return []
    return _delete_areas(context, location, area_ids)


def capacity_ledger(context: RuntimeContext, location_id: Optional[str] = None) -> CapacityLedger:
    """Build a capacity ledger from cached areas and live inflows."""
    areas = _ensure_areas_cache(context)["all"]
    if location_id is not None:
        areas = [area for area in areas if area.location_id == location_id]
    return CapacityLedger(areas, _ensure_inflows_cache(context)["all"])


def _snapshot(context: RuntimeContext, customer_id: str, location_id: str, crop_type_id: str) -> BillingSnapshot:
    customers = _ensure_customers_cache(context)["by_id"]
    locations = _ensure_locations_cache(context)["by_id"]
    crop_types = _ensure_crop_types_cache(context)["by_id"]
    customer = customers.get(customer_id)
    location = locations.get(location_id)
    crop_type = crop_types.get(crop_type_id)
    return BillingSnapshot(
        customer_name=customer.customer_name if customer else "",
        location_name=location.location_name if location else "",
        crop_type_name=crop_type.crop_type_name if crop_type else "",
    )


def _commit(context: RuntimeContext, changes: data_manager.ChangeSet) -> None:
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        data_manager.apply_change_set(context.workbook, changes)


def record_inflow(
    context: RuntimeContext,
    command: ReceiveInflowCommand,
    identity: Optional[CallerIdentity] = None,
) -> InflowReceipt:
    """Validate and store a new inflow split across the requested areas.

    The capacity ledger is rebuilt from the workbook while the target areas
    are locked, so the availability check and the write happen in one
    critical section. The labour charge is ``labour_charge_per_bag`` times
    the total quantity and is billed later, on the first outflow.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (ReceiveInflowCommand): Structured deposit intent.
        identity (CallerIdentity | None): Caller; defaults to the configured
            owner.

    Returns:
        InflowReceipt: Receipt for the stored inflow with per-area lines.

    Raises:
        BusinessRuleViolation: If an area lacks capacity, is repeated, or a
            quantity is not positive.
        MissingReferenceError: If the customer, crop type, location, or an
            area is unknown to the caller.
        ValueError: If the labour rate is negative.
    """
    owner = _identity(context, identity)
    customer = get_customer(context, command.customer_id, owner)
    crop_type = get_crop_type(context, command.crop_type_id, owner)
    location = get_location(context, command.location_id, owner)
    require_nonnegative_money(Decimal(command.labour_charge_per_bag))

    area_keys = [f"area:{request.area_id}" for request in command.allocations]
    with context.locks.hold(*area_keys):
        areas = list(data_manager.iter_areas(context.workbook, location_id=location.location_id))
        ledger = CapacityLedger(areas, data_manager.iter_inflows(context.workbook))
        outcome = allocate(command.allocations, ledger)
        if not outcome.ok:
            log.error("Inflow rejected for customer '%s': %s", customer.customer_id, outcome.error)
        allocations = outcome.unwrap()

        timestamp = _resolve_timestamp(command.timestamp)
        quantity = sum(allocation.quantity for allocation in allocations)
        inflow = Inflow(
            inflow_id=reserve_record_id(
                context, prefix="IN", when=timestamp, sheet_name=data_manager.INFLOWS_SHEET, key_column="InflowID"
            ),
            owner_id=location.owner_id,
            customer_id=customer.customer_id,
            crop_type_id=crop_type.crop_type_id,
            location_id=location.location_id,
            date_added=timestamp,
            allocations=allocations,
            labour_charge=to_money(Decimal(command.labour_charge_per_bag) * quantity),
        )
        _commit(context, data_manager.ChangeSet(new_inflows=[inflow]))
        _invalidate_cache(context, "inflows")

    log.info(
        "Recorded inflow '%s' for customer '%s' (%d bags in %d areas, labour=%s)",
        inflow.inflow_id,
        customer.customer_id,
        quantity,
        len(allocations),
        inflow.labour_charge,
    )
    snapshot = _snapshot(context, customer.customer_id, location.location_id, crop_type.crop_type_id)
    return InflowReceipt.for_inflow(inflow, snapshot, areas)


def quote_outflow(
    context: RuntimeContext,
    inflow_id: str,
    quantity: int,
    identity: Optional[CallerIdentity] = None,
    *,
    as_of: Optional[datetime] = None,
    cost_per_bag_override: Optional[Decimal] = None,
) -> BillQuote:
    """Price a withdrawal without writing anything.

    Raises:
        BusinessRuleViolation: If the quantity exceeds the stock held or the
            request has nothing to bill.
        MissingReferenceError: If the inflow or its crop type is unknown.
    """
    inflow = get_inflow(context, inflow_id, identity)
    problem = stock_error(inflow, quantity)
    if problem is not None:
        log.error("Quote rejected for inflow '%s': %s", inflow_id, problem)
        raise BusinessRuleViolation(problem)
    crop_type = get_crop_type(context, inflow.crop_type_id, identity)
    return compute_bill(
        inflow,
        crop_type,
        quantity,
        as_of=_resolve_timestamp(as_of),
        cost_per_bag_override=cost_per_bag_override,
    ).unwrap()


def _load_inflow(context: RuntimeContext, inflow_id: str, identity: CallerIdentity) -> Inflow:
    for inflow in data_manager.iter_inflows(context.workbook, owner_ids=identity.owner_scope):
        if inflow.inflow_id == inflow_id:
            return inflow
    log.warning("Inflow lookup failed for id '%s'", inflow_id)
    raise MissingReferenceError("inflow", inflow_id)


def record_outflow(
    context: RuntimeContext,
    command: SettleOutflowCommand,
    identity: Optional[CallerIdentity] = None,
) -> BillingEvent:
    """Withdraw bags from an inflow, bill them, and take an initial payment.

    The inflow is locked and re-read from the workbook, then
    :func:`settlement.settle` computes the whole plan. The outflow, the
    optional payment, and the inflow update or deletion are written as one
    change set, so either all of them land or none do.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SettleOutflowCommand): Structured withdrawal intent.
        identity (CallerIdentity | None): Caller; defaults to the configured
            owner.

    Returns:
        BillingEvent: The new bill and its initial payment, if any.

    Raises:
        BusinessRuleViolation: For ``ExceedsStock``, ``OverPayment``,
            ``NothingToBill`` and invalid amounts.
        MissingReferenceError: If the inflow no longer exists, including
            after it was fully withdrawn.
        StaleRecordError: If the inflow row changed underneath this request.
    """
    owner = _identity(context, identity)
    method = command.payment_method or context.settings.default_payment_method

    with context.locks.hold(f"inflow:{command.inflow_id}"):
        inflow = _load_inflow(context, command.inflow_id, owner)
        crop_type = get_crop_type(context, inflow.crop_type_id, owner)
        snapshot = _snapshot(context, inflow.customer_id, inflow.location_id, inflow.crop_type_id)
        timestamp = _resolve_timestamp(command.timestamp)

        outcome = settle(
            inflow,
            command.quantity,
            Decimal(command.amount_paid),
            crop_type,
            outflow_id=reserve_record_id(
                context, prefix="OUT", when=timestamp, sheet_name=data_manager.OUTFLOWS_SHEET, key_column="OutflowID"
            ),
            as_of=timestamp,
            snapshot=snapshot,
            cost_per_bag_override=command.cost_per_bag_override,
            payment_id=reserve_record_id(
                context, prefix="PAY", when=timestamp, sheet_name=data_manager.PAYMENTS_SHEET, key_column="PaymentID"
            ),
            payment_method=method,
            notes=command.notes,
        )
        if not outcome.ok:
            log.error("Settlement rejected for inflow '%s': %s", inflow.inflow_id, outcome.error)
        plan = outcome.unwrap()

        changes = data_manager.ChangeSet(new_outflows=[plan.outflow])
        if plan.payment is not None:
            changes.new_payments.append(plan.payment)
        if plan.inflow_after is None:
            changes.deleted_inflows.append(inflow)
        else:
            changes.updated_inflows.append(plan.inflow_after)
        _commit(context, changes)
        _invalidate_cache(context, "inflows", "outflows", "payments")

    if plan.quote.rate_overridden:
        log.warning(
            "Outflow '%s' billed at %s per bag instead of the scheduled %s",
            plan.outflow.outflow_id,
            plan.quote.cost_per_bag,
            plan.quote.computed_cost_per_bag,
        )
    log.info(
        "Recorded outflow '%s' from inflow '%s' (quantity=%d, total=%s, paid=%s, state=%s)",
        plan.outflow.outflow_id,
        inflow.inflow_id,
        plan.outflow.quantity_withdrawn,
        plan.outflow.total_bill,
        plan.outflow.amount_paid,
        plan.state.value,
    )
    return plan.event


def record_payment(
    context: RuntimeContext,
    command: PayDuesCommand,
    identity: Optional[CallerIdentity] = None,
) -> PaymentAllocation:
    """Distribute a payment over a customer's outstanding bills, oldest first.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (PayDuesCommand): Structured payment intent.
        identity (CallerIdentity | None): Caller; defaults to the configured
            owner.

    Returns:
        PaymentAllocation: Updated bills and one payment record per bill.

    Raises:
        BusinessRuleViolation: For ``ExcessPayment``, ``DuplicateOutflow`` or a
            non-positive amount.
        MissingReferenceError: If the customer or a selected bill is unknown.
        StaleRecordError: If a bill changed underneath this request.
    """
    owner = _identity(context, identity)
    customer = get_customer(context, command.customer_id, owner)
    method = command.payment_method or context.settings.default_payment_method

    if command.outflow_ids is not None:
        target_ids = list(command.outflow_ids)
        repeated = sorted({outflow_id for outflow_id in target_ids if target_ids.count(outflow_id) > 1})
        if repeated:
            log.error("Payment rejected for customer '%s': bill '%s' selected twice", customer.customer_id, repeated[0])
            raise BusinessRuleViolation(
                LedgerError(
                    ErrorKind.DUPLICATE_OUTFLOW,
                    f"Outflow '{repeated[0]}' is selected more than once",
                    repeated[0],
                )
            )
    else:
        target_ids = [
            outflow.outflow_id
            for outflow in list_outflows(context, owner, customer_id=customer.customer_id, outstanding_only=True)
        ]

    with context.locks.hold(*(f"outflow:{outflow_id}" for outflow_id in target_ids)):
        current = {
            outflow.outflow_id: outflow
            for outflow in data_manager.iter_outflows(
                context.workbook,
                owner_ids=owner.owner_scope,
                customer_id=customer.customer_id,
            )
        }
        selected = []
        for outflow_id in target_ids:
            if outflow_id not in current:
                log.warning("Outflow lookup failed for id '%s'", outflow_id)
                raise MissingReferenceError("outflow", outflow_id)
            selected.append(current[outflow_id])

        timestamp = _resolve_timestamp(command.timestamp)
        outcome = apply_payment(
            Decimal(command.amount),
            selected,
            paid_at=timestamp,
            payment_id_factory=lambda sequence: reserve_record_id(
                context,
                prefix="PAY",
                when=timestamp,
                sequence=sequence,
                sheet_name=data_manager.PAYMENTS_SHEET,
                key_column="PaymentID",
            ),
            method=method,
            notes=command.notes,
        )
        if not outcome.ok:
            log.error("Payment rejected for customer '%s': %s", customer.customer_id, outcome.error)
        allocation = outcome.unwrap()

        _commit(
            context,
            data_manager.ChangeSet(
                updated_outflows=list(allocation.updated_outflows),
                new_payments=list(allocation.payments),
            ),
        )
        _invalidate_cache(context, "outflows", "payments")

    log.info(
        "Recorded payment of %s for customer '%s' across %d bills",
        allocation.total_applied,
        customer.customer_id,
        len(allocation.payments),
    )
    return allocation


def area_usage(
    context: RuntimeContext,
    location_id: str,
    identity: Optional[CallerIdentity] = None,
) -> List[AreaUsage]:
    """Return used and available bags for every area of a location."""
    get_location(context, location_id, identity)
    return capacity_ledger(context, location_id).area_usage(location_id)


def location_usage(context: RuntimeContext, identity: Optional[CallerIdentity] = None) -> List[LocationUsage]:
    return capacity_ledger(context).location_usage(list_locations(context, identity))


def outstanding_dues(
    context: RuntimeContext,
    identity: Optional[CallerIdentity] = None,
    *,
    customer_id: Optional[str] = None,
) -> Dict[str, Decimal]:
    """Sum unpaid balances per customer.

    Returns:
        dict[str, Decimal]: ``customer_id`` to total ``balance_due``; only
            customers who owe something are present.
    """
    dues: Dict[str, Decimal] = {}
    for outflow in list_outflows(context, identity, customer_id=customer_id, outstanding_only=True):
        dues[outflow.customer_id] = dues.get(outflow.customer_id, ZERO) + outflow.balance_due
    log.debug("Calculated outstanding dues for %d customers", len(dues))
    return dues


def labour_register(context: RuntimeContext, identity: Optional[CallerIdentity] = None) -> List[Inflow]:
    """Return inflows that still carry an unbilled labour charge, newest first."""
    inflows = [inflow for inflow in list_inflows(context, identity) if inflow.labour_charge > ZERO]
    return sorted(inflows, key=lambda inflow: inflow.date_added, reverse=True)


def payment_history(
    context: RuntimeContext,
    identity: Optional[CallerIdentity] = None,
    *,
    customer_id: Optional[str] = None,
) -> List[Payment]:
    """Return visible payments, newest first."""
    payments = _visible(_ensure_payments_cache(context)["all"], _identity(context, identity))
    if customer_id is not None:
        payments = [payment for payment in payments if payment.customer_id == customer_id]
    return sorted(payments, key=lambda payment: payment.date, reverse=True)


def storage_summary(
    context: RuntimeContext,
    identity: Optional[CallerIdentity] = None,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> StorageSummary:
    """Summarise inflows received between ``start`` and ``end`` inclusive.

    Potential monthly revenue is each inflow's quantity priced at its crop
    type's one-month rate. Utilisation compares the bags of those inflows
    with the combined capacity of the visible locations.
    """
    crop_types = _ensure_crop_types_cache(context)["by_id"]
    inflows = [
        inflow
        for inflow in list_inflows(context, identity)
        if (start is None or inflow.date_added >= start) and (end is None or inflow.date_added <= end)
    ]
    revenue = ZERO
    for inflow in inflows:
        crop_type = crop_types.get(inflow.crop_type_id)
        if crop_type is not None:
            revenue += inflow.quantity * crop_type.rates.monthly
    locations = list_locations(context, identity)
    summary = StorageSummary(
        inflow_count=len(inflows),
        total_bags=sum(inflow.quantity for inflow in inflows),
        potential_monthly_revenue=to_money(revenue),
        total_capacity=sum(location.capacity for location in locations),
        locations=tuple(capacity_ledger(context).location_usage(locations)),
    )
    log.debug(
        "Calculated storage summary: %d inflows, %d bags, revenue=%s",
        summary.inflow_count,
        summary.total_bags,
        summary.potential_monthly_revenue,
    )
    return summary


def generate_record_id(*, prefix: str, when: Optional[datetime] = None, sequence: Optional[int] = None) -> str:
    """Generate a sortable record identifier using UTC timestamps.

    Args:
        prefix (str): Designator such as ``"IN"``, ``"OUT"`` or ``"PAY"``.
        when (datetime | None): Timestamp used for deterministically producing
            the identifier. When ``None`` the current UTC time is used.
        sequence (int | None): Two-digit suffix for records created together
            at the same moment.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}[NN]``.
    """
    when = when or _resolve_timestamp(None)
    suffix = "" if sequence is None else f"{sequence:02d}"
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{suffix}"


def reserve_record_id(
    context: RuntimeContext,
    *,
    prefix: str,
    when: Optional[datetime] = None,
    sequence: Optional[int] = None,
    sheet_name: Optional[str] = None,
    key_column: Optional[str] = None,
) -> str:
    """Return an identifier no other record of this context uses.

    Starts from :func:`generate_record_id` and raises the sequence suffix
    until the candidate was neither handed out by this context before nor,
    when ``sheet_name`` is given, already stored in that sheet. Requests at
    the same timestamp therefore get distinct ids.
    """
    when = when or _resolve_timestamp(None)
    with context.locks.hold(WORKBOOK_LOCK_KEY):
        while True:
            candidate = generate_record_id(prefix=prefix, when=when, sequence=sequence)
            taken = candidate in context._issued_ids or (
                sheet_name is not None
                and data_manager.record_exists(context.workbook, sheet_name, key_column or "", candidate)
            )
            if not taken:
                context._issued_ids.add(candidate)
                return candidate
            sequence = 0 if sequence is None else sequence + 1


def require_name(value: str) -> None:
    if not value or not value.strip():
        log.error("Name validation failed: %r", value)
        raise ValueError("Name must not be empty")


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    The save is refused when another process modified the workbook after this
    context opened it.

    Raises:
        StaleRecordError: If the file on disk changed since it was loaded.
    """
    try:
        new_stamp = data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
            expected_stamp=context._stamps.get("workbook"),
        )
    except StaleRecordError:
        log.error("Refusing to overwrite '%s': modified by another process", context.settings.data_file)
        raise
    context._stamps["workbook"] = new_stamp
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    refreshed = RuntimeContext(settings=context.settings, workbook=workbook)
    refreshed._stamps["workbook"] = data_manager.file_stamp(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return refreshed
