"""Outflow settlement: turning a withdrawal into a bill and new stock state.

``settle`` is a pure function from an inflow snapshot and a withdrawal request
to a :class:`SettlementPlan`. The plan names every record that has to be
written; the business logic layer hands it to the data layer as a single
change set so the bill and the inflow update land together or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .allocation import withdraw_from_allocations
from .billing import BillQuote, compute_bill
from .constants import ZERO, ErrorKind, InflowState, PaymentMethod
from .errors import LedgerError, Outcome, fail
from .events import BillingEvent
from .models import BillingSnapshot, CropType, Inflow, Outflow, Payment, to_money


def stock_error(inflow: Inflow, withdraw_quantity: int) -> Optional[LedgerError]:
    """Return an ``ExceedsStock`` error when more bags are requested than held."""
    if withdraw_quantity > inflow.quantity:
        return LedgerError(
            kind=ErrorKind.EXCEEDS_STOCK,
            message=f"Inflow '{inflow.inflow_id}' holds {inflow.quantity} bags, {withdraw_quantity} requested",
            entity_id=inflow.inflow_id,
            detail={"requested": withdraw_quantity, "available": inflow.quantity},
        )
    return None


@dataclass(frozen=True)
class SettlementPlan:
    """Every record produced by one settlement."""

    quote: BillQuote
    outflow: Outflow
    payment: Optional[Payment]
    inflow_before: Inflow
    inflow_after: Optional[Inflow]

    @property
    def state(self) -> InflowState:
        if self.inflow_after is None:
            return InflowState.FULLY_WITHDRAWN
        if self.inflow_after.quantity < self.inflow_before.quantity:
            return InflowState.PARTIALLY_WITHDRAWN
        return InflowState.ACTIVE

    @property
    def removes_inflow(self) -> bool:
        return self.inflow_after is None

    @property
    def event(self) -> BillingEvent:
        return BillingEvent(outflow=self.outflow, payment=self.payment)


def settle(
    inflow: Inflow,
    withdraw_quantity: int,
    amount_paid: Decimal,
    crop_type: CropType,
    *,
    outflow_id: str,
    as_of: datetime,
    snapshot: Optional[BillingSnapshot] = None,
    cost_per_bag_override: Optional[Decimal] = None,
    payment_id: Optional[str] = None,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
) -> Outcome[SettlementPlan]:
    """Plan the withdrawal of ``withdraw_quantity`` bags from ``inflow``.

    Steps run in a fixed order: stock check, bill, payment check, outflow,
    then the inflow update. Withdrawing the whole quantity removes the inflow.
    A partial withdrawal drains areas in ascending area id order. The inflow's
    labour charge is billed into this outflow and zeroed on the inflow, so
    later withdrawals never bill it again.

    Args:
        inflow: Current inflow snapshot.
        withdraw_quantity: Bags leaving storage. Zero settles charges only.
        amount_paid: Money taken at the counter for this bill.
        crop_type: Crop type supplying the rate card and insurance rate.
        outflow_id: Identifier for the new outflow.
        as_of: Withdrawal moment, used for the storage duration.
        snapshot: Display names to freeze onto the bill.
        cost_per_bag_override: Negotiated per-bag storage price.
        payment_id: Identifier for the payment record; required when
            ``amount_paid`` is positive.
        payment_method: How the initial payment was made.
        notes: Optional notes stored on the payment record.

    Returns:
        Outcome holding the settlement plan, or an ``ExceedsStock``,
        ``OverPayment``, ``NothingToBill``, ``InvalidQuantity`` or
        ``InvalidAmount`` error naming the inflow.
    """
    problem = stock_error(inflow, withdraw_quantity)
    if problem is not None:
        return Outcome.failure(problem)

    quoted = compute_bill(
        inflow,
        crop_type,
        withdraw_quantity,
        as_of=as_of,
        cost_per_bag_override=cost_per_bag_override,
    )
    if quoted.error is not None:
        return Outcome.failure(quoted.error)
    quote = quoted.unwrap()

    paid = to_money(amount_paid)
    if paid < ZERO:
        return fail(ErrorKind.INVALID_AMOUNT, "Amount paid cannot be negative", inflow.inflow_id)
    if paid > quote.total_bill:
        return fail(
            ErrorKind.OVER_PAYMENT,
            f"Amount paid {paid} exceeds the bill of {quote.total_bill} for inflow '{inflow.inflow_id}'",
            inflow.inflow_id,
            amount_paid=str(paid),
            total_bill=str(quote.total_bill),
        )

    outflow = Outflow(
        outflow_id=outflow_id,
        inflow_id=inflow.inflow_id,
        owner_id=inflow.owner_id,
        customer_id=inflow.customer_id,
        date=as_of,
        quantity_withdrawn=withdraw_quantity,
        storage_duration=quote.months,
        cost_per_bag=quote.cost_per_bag,
        storage_cost=quote.storage_cost,
        insurance_charge=quote.insurance_charge,
        labour_charge=quote.labour_charge,
        total_bill=quote.total_bill,
        amount_paid=paid,
        balance_due=quote.total_bill - paid,
        rate_overridden=quote.rate_overridden,
        snapshot=snapshot or BillingSnapshot(),
    )

    payment = None
    if paid > ZERO:
        if payment_id is None:
            raise ValueError("payment_id is required when an amount is paid at settlement")
        payment = Payment(
            payment_id=payment_id,
            outflow_id=outflow_id,
            customer_id=inflow.customer_id,
            owner_id=inflow.owner_id,
            date=as_of,
            amount=paid,
            method=payment_method,
            notes=notes,
        )

    if withdraw_quantity == inflow.quantity:
        inflow_after = None
    else:
        inflow_after = replace(
            inflow,
            allocations=withdraw_from_allocations(inflow.allocations, withdraw_quantity),
            labour_charge=ZERO,
        )

    return Outcome.success(
        SettlementPlan(
            quote=quote,
            outflow=outflow,
            payment=payment,
            inflow_before=inflow,
            inflow_after=inflow_after,
        )
    )


__all__ = ["SettlementPlan", "stock_error", "settle"]
