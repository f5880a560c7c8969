"""Immutable domain records for the crop-storage ledger.

Every record is a frozen dataclass. Mutations produce new instances via
:func:`dataclasses.replace` so the billing engine can compute a complete plan
from a snapshot before anything is written.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

from .constants import MONEY_QUANTUM, ZERO, PaymentMethod, RateTier


def to_money(value: Any) -> Decimal:
    """Coerce ``value`` into a two-place :class:`~decimal.Decimal`."""
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateCard:
    """Per-bag storage prices for the 1, 6 and 12 month tiers."""

    monthly: Decimal
    half_yearly: Decimal
    yearly: Decimal

    def __post_init__(self) -> None:
        for tier in (self.monthly, self.half_yearly, self.yearly):
            if tier < ZERO:
                raise ValueError("Storage rates must be zero or positive")

    @classmethod
    def from_mapping(cls, rates: Mapping[Any, Any]) -> "RateCard":
        """Build a rate card from a ``{1: x, 6: y, 12: z}`` style mapping.

        Keys may be integers, strings, or :class:`RateTier` members.

        Raises:
            ValueError: If a tier is missing or a rate is negative.
        """
        normalized = {int(key): value for key, value in rates.items()}
        try:
            return cls(
                monthly=to_money(normalized[RateTier.MONTHLY.value]),
                half_yearly=to_money(normalized[RateTier.HALF_YEARLY.value]),
                yearly=to_money(normalized[RateTier.YEARLY.value]),
            )
        except KeyError as exc:
            raise ValueError(f"Missing storage rate tier: {exc}") from exc

    def rate_for(self, tier: RateTier) -> Decimal:
        if tier is RateTier.MONTHLY:
            return self.monthly
        if tier is RateTier.HALF_YEARLY:
            return self.half_yearly
        return self.yearly


@dataclass(frozen=True)
class StorageLocation:
    location_id: str
    location_name: str
    capacity: int
    owner_id: str
    mobile_number: str = ""
    address: str = ""


@dataclass(frozen=True)
class StorageArea:
    area_id: str
    area_name: str
    location_id: str
    capacity: int
    owner_id: str


@dataclass(frozen=True)
class Customer:
    customer_id: str
    customer_name: str
    mobile_number: str
    owner_id: str


@dataclass(frozen=True)
class CropType:
    """Per-tenant crop definition carrying its rate card and insurance rate."""

    crop_type_id: str
    crop_type_name: str
    rates: RateCard
    insurance: Decimal
    owner_id: str


@dataclass(frozen=True)
class AreaAllocation:
    """Where part of an inflow physically sits."""

    area_id: str
    quantity: int


@dataclass(frozen=True)
class Inflow:
    """A single deposit of crop bags spread over one or more areas."""

    inflow_id: str
    owner_id: str
    customer_id: str
    crop_type_id: str
    location_id: str
    date_added: datetime
    allocations: tuple[AreaAllocation, ...]
    labour_charge: Decimal = ZERO
    version: int = 1

    @property
    def quantity(self) -> int:
        return sum(allocation.quantity for allocation in self.allocations)

    def allocation_for(self, area_id: str) -> Optional[AreaAllocation]:
        for allocation in self.allocations:
            if allocation.area_id == area_id:
                return allocation
        return None


@dataclass(frozen=True)
class BillingSnapshot:
    """Display names frozen onto a bill when it is created."""

    customer_name: str = ""
    location_name: str = ""
    crop_type_name: str = ""


@dataclass(frozen=True)
class Outflow:
    """A bill produced by withdrawing stock from an inflow.

    Only ``amount_paid`` and ``balance_due`` change after creation, and
    always together through :meth:`with_payment`.
    """

    outflow_id: str
    inflow_id: str
    owner_id: str
    customer_id: str
    date: datetime
    quantity_withdrawn: int
    storage_duration: int
    cost_per_bag: Decimal
    storage_cost: Decimal
    insurance_charge: Decimal
    labour_charge: Decimal
    total_bill: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    rate_overridden: bool = False
    snapshot: BillingSnapshot = field(default_factory=BillingSnapshot)
    version: int = 1

    def __post_init__(self) -> None:
        if self.total_bill != self.storage_cost + self.insurance_charge + self.labour_charge:
            raise ValueError(f"Outflow {self.outflow_id}: total bill does not match its charges")
        if not ZERO <= self.amount_paid <= self.total_bill:
            raise ValueError(f"Outflow {self.outflow_id}: amount paid outside 0..total bill")
        if self.balance_due != self.total_bill - self.amount_paid:
            raise ValueError(f"Outflow {self.outflow_id}: balance due out of sync")

    def with_payment(self, amount: Decimal) -> "Outflow":
        return replace(
            self,
            amount_paid=self.amount_paid + amount,
            balance_due=self.balance_due - amount,
        )


@dataclass(frozen=True)
class Payment:
    """An immutable record of one payment against one outflow."""

    payment_id: str
    outflow_id: str
    customer_id: str
    owner_id: str
    date: datetime
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CASH
    notes: Optional[str] = None


__all__ = [
    "to_money",
    "RateCard",
    "StorageLocation",
    "StorageArea",
    "Customer",
    "CropType",
    "AreaAllocation",
    "Inflow",
    "BillingSnapshot",
    "Outflow",
    "Payment",
]
