"""Distributing one payment over a customer's selected outstanding bills."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from .constants import ZERO, ErrorKind, PaymentMethod
from .errors import Outcome, fail
from .events import PaymentReceipt
from .models import Outflow, Payment, to_money


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of applying one payment across several bills."""

    updated_outflows: tuple[Outflow, ...]
    payments: tuple[Payment, ...]
    unapplied_remainder: Decimal = ZERO

    @property
    def total_applied(self) -> Decimal:
        return sum((payment.amount for payment in self.payments), ZERO)

    @property
    def receipts(self) -> tuple[PaymentReceipt, ...]:
        by_id = {outflow.outflow_id: outflow for outflow in self.updated_outflows}
        return tuple(PaymentReceipt.for_payment(payment, by_id[payment.outflow_id]) for payment in self.payments)


def settlement_order(outflows: Sequence[Outflow]) -> List[Outflow]:
    """Oldest debt first; equal dates fall back to the outflow id."""
    return sorted(outflows, key=lambda outflow: (outflow.date, outflow.outflow_id))


def apply_payment(
    amount: Decimal,
    outstanding: Sequence[Outflow],
    *,
    paid_at: datetime,
    payment_id_factory: Callable[[int], str],
    owner_id: Optional[str] = None,
    method: PaymentMethod = PaymentMethod.CASH,
    notes: Optional[str] = None,
) -> Outcome[PaymentAllocation]:
    """Spread ``amount`` over the caller-selected ``outstanding`` bills.

    Each bill may be selected once; a repeated ``outflow_id`` is rejected
    with ``DuplicateOutflow``. Only bills with a positive balance take part.
    They are paid oldest first, each one up to its balance, and every bill
    touched gets its own :class:`Payment` record. A payment larger than the
    selected balances is rejected with ``ExcessPayment`` instead of being
    parked elsewhere.

    Args:
        amount: Money received.
        outstanding: Bills the caller selected for this payment.
        paid_at: Payment moment stamped on every record.
        payment_id_factory: Called with a 0-based sequence number to name
            each payment record.
        owner_id: Tenant recorded on the payments; defaults to each bill's.
        method: Payment method for every record.
        notes: Optional notes copied onto every record.
    """
    amount = to_money(amount)
    if amount <= ZERO:
        return fail(ErrorKind.INVALID_AMOUNT, "Payment amount must be positive")

    by_id: Dict[str, Outflow] = {}
    for outflow in outstanding:
        if outflow.outflow_id in by_id:
            return fail(
                ErrorKind.DUPLICATE_OUTFLOW,
                f"Outflow '{outflow.outflow_id}' is selected more than once",
                outflow.outflow_id,
            )
        by_id[outflow.outflow_id] = outflow

    selected = settlement_order([outflow for outflow in by_id.values() if outflow.balance_due > ZERO])
    total_due = sum((outflow.balance_due for outflow in selected), ZERO)
    if amount > total_due:
        first_id = selected[0].outflow_id if selected else None
        return fail(
            ErrorKind.EXCESS_PAYMENT,
            f"Payment of {amount} exceeds the selected dues of {total_due}",
            first_id,
            unapplied_remainder=str(amount - total_due),
            outflow_ids=[outflow.outflow_id for outflow in selected],
        )

    remaining = amount
    updated: List[Outflow] = []
    payments: List[Payment] = []
    for outflow in selected:
        if remaining <= ZERO:
            break
        applied = min(outflow.balance_due, remaining)
        remaining -= applied
        updated.append(outflow.with_payment(applied))
        payments.append(
            Payment(
                payment_id=payment_id_factory(len(payments)),
                outflow_id=outflow.outflow_id,
                customer_id=outflow.customer_id,
                owner_id=owner_id or outflow.owner_id,
                date=paid_at,
                amount=applied,
                method=method,
                notes=notes,
            )
        )

    return Outcome.success(
        PaymentAllocation(
            updated_outflows=tuple(updated),
            payments=tuple(payments),
            unapplied_remainder=remaining,
        )
    )


__all__ = ["PaymentAllocation", "settlement_order", "apply_payment"]
