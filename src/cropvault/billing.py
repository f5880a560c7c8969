"""Bill computation for a withdrawal from an inflow."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .constants import ZERO, ErrorKind
from .errors import Outcome, fail
from .models import CropType, Inflow, to_money
from .rates import months_in_storage, storage_cost_per_bag


@dataclass(frozen=True)
class BillQuote:
    """Charges for withdrawing ``quantity`` bags at a given moment."""

    quantity: int
    months: int
    computed_cost_per_bag: Decimal
    cost_per_bag: Decimal
    storage_cost: Decimal
    insurance_charge: Decimal
    labour_charge: Decimal
    total_bill: Decimal
    rate_overridden: bool = False


def compute_bill(
    inflow: Inflow,
    crop_type: CropType,
    withdraw_quantity: int,
    *,
    as_of: datetime,
    cost_per_bag_override: Optional[Decimal] = None,
) -> Outcome[BillQuote]:
    """Price a withdrawal of ``withdraw_quantity`` bags from ``inflow``.

    The storage duration always comes from the rate schedule. An operator
    override replaces only the per-bag storage price; the computed price is
    kept on the quote so the deviation stays auditable. The inflow's labour
    charge is added flat, it is not scaled by the withdrawn quantity.

    A request with no bags and nothing to charge is rejected with
    ``NothingToBill``. No bags with an outstanding labour charge is a valid
    pay-only bill.
    """
    if withdraw_quantity < 0:
        return fail(
            ErrorKind.INVALID_QUANTITY,
            "Withdrawal quantity cannot be negative",
            inflow.inflow_id,
        )
    if cost_per_bag_override is not None and cost_per_bag_override < ZERO:
        return fail(
            ErrorKind.INVALID_AMOUNT,
            "Cost per bag override cannot be negative",
            inflow.inflow_id,
        )

    months = months_in_storage(inflow.date_added, as_of)
    computed = to_money(storage_cost_per_bag(months, crop_type.rates))
    cost_per_bag = computed if cost_per_bag_override is None else to_money(cost_per_bag_override)

    storage_cost = to_money(cost_per_bag * withdraw_quantity)
    insurance_charge = to_money(crop_type.insurance * withdraw_quantity)
    labour_charge = to_money(inflow.labour_charge)
    total_bill = storage_cost + insurance_charge + labour_charge

    if total_bill <= ZERO and withdraw_quantity <= 0:
        return fail(
            ErrorKind.NOTHING_TO_BILL,
            f"Inflow '{inflow.inflow_id}' has nothing to withdraw or bill",
            inflow.inflow_id,
        )

    return Outcome.success(
        BillQuote(
            quantity=withdraw_quantity,
            months=months,
            computed_cost_per_bag=computed,
            cost_per_bag=cost_per_bag,
            storage_cost=storage_cost,
            insurance_charge=insurance_charge,
            labour_charge=labour_charge,
            total_bill=total_bill,
            rate_overridden=cost_per_bag_override is not None,
        )
    )


__all__ = ["BillQuote", "compute_bill"]
