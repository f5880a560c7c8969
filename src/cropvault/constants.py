"""Enumerations shared across cropvault modules.

Centralises domain constants so that the data access layer (DAL), the pure
billing engine, the business logic layer (BLL), and the CLI rely on a single
source of truth for identifiers, tiers, and error kinds.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Money is stored with two decimal places.
MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


class RateTier(int, Enum):
    """Duration tiers (in months) a crop type carries a per-bag rate for."""

    MONTHLY = 1
    HALF_YEARLY = 6
    YEARLY = 12


# Withdrawals of up to this many months are billed month by month.
MONTHLY_BILLING_LIMIT = 5


class UserRole(str, Enum):
    """Enumerate the roles the identity provider may assign to a caller."""

    ADMIN = "admin"
    MANAGER = "manager"
    ASSISTANT = "assistant"
    USER = "user"


# Roles that may read records across every tenant.
PRIVILEGED_ROLES: frozenset[UserRole] = frozenset({UserRole.ADMIN, UserRole.MANAGER})


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms."""

    CASH = "Cash"
    CARD = "Card"
    ONLINE = "Online"


class InflowState(str, Enum):
    """Lifecycle of an inflow as stock is withdrawn."""

    ACTIVE = "ACTIVE"
    PARTIALLY_WITHDRAWN = "PARTIALLY_WITHDRAWN"
    FULLY_WITHDRAWN = "FULLY_WITHDRAWN"


class ErrorKind(str, Enum):
    """Tagged error kinds returned or raised by the ledger."""

    CAPACITY_EXCEEDED = "CapacityExceeded"
    INSUFFICIENT_CAPACITY = "InsufficientCapacity"
    EXCEEDS_STOCK = "ExceedsStock"
    OVER_PAYMENT = "OverPayment"
    NOTHING_TO_BILL = "NothingToBill"
    EXCESS_PAYMENT = "ExcessPayment"
    NOT_FOUND = "NotFound"
    DUPLICATE_AREA = "DuplicateArea"
    DUPLICATE_OUTFLOW = "DuplicateOutflow"
    AREA_IN_USE = "AreaInUse"
    INVALID_QUANTITY = "InvalidQuantity"
    INVALID_AMOUNT = "InvalidAmount"
    CONCURRENT_MODIFICATION = "ConcurrentModification"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    LOCATIONS = "Locations"
    AREAS = "Areas"
    CROP_TYPES = "CropTypes"
    CUSTOMERS = "Customers"
    INFLOWS = "Inflows"
    OUTFLOWS = "Outflows"
    PAYMENTS = "Payments"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "ZERO",
    "RateTier",
    "MONTHLY_BILLING_LIMIT",
    "UserRole",
    "PRIVILEGED_ROLES",
    "PaymentMethod",
    "InflowState",
    "ErrorKind",
    "SheetName",
]
