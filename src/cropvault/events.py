"""Billing events handed to receipt and invoice renderers.

Renderers only read these records; they never call back into the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from .constants import ZERO
from .models import BillingSnapshot, Inflow, Outflow, Payment, StorageArea, to_money


@dataclass(frozen=True)
class BillingEvent:
    """An outflow bill plus the payment taken when it was settled, if any."""

    outflow: Outflow
    payment: Optional[Payment] = None

    @property
    def snapshot(self) -> BillingSnapshot:
        return self.outflow.snapshot

    @property
    def receipt_number(self) -> str:
        return f"OUT{self.outflow.date.strftime('%Y%m%d')}{self.outflow.outflow_id[-4:].upper()}"

    @property
    def status(self) -> str:
        return "Pending" if self.outflow.balance_due > ZERO else "Paid"

    @property
    def unit_price(self) -> Decimal:
        if self.outflow.quantity_withdrawn <= 0:
            return ZERO
        return to_money(self.outflow.storage_cost / self.outflow.quantity_withdrawn)


@dataclass(frozen=True)
class PaymentReceipt:
    """Receipt for a single payment, showing the balance before and after."""

    payment: Payment
    outflow_id: str
    total_bill: Decimal
    previous_balance: Decimal
    new_balance: Decimal

    @property
    def receipt_number(self) -> str:
        return f"PAY{self.payment.payment_id[-8:].upper()}"

    @classmethod
    def for_payment(cls, payment: Payment, outflow_after: Outflow) -> "PaymentReceipt":
        return cls(
            payment=payment,
            outflow_id=outflow_after.outflow_id,
            total_bill=outflow_after.total_bill,
            previous_balance=outflow_after.balance_due + payment.amount,
            new_balance=outflow_after.balance_due,
        )


@dataclass(frozen=True)
class InflowReceiptLine:
    area_name: str
    quantity: int
    labour_share: Decimal


@dataclass(frozen=True)
class InflowReceipt:
    """Acknowledgement of a deposit, with labour split pro rata over areas."""

    inflow: Inflow
    snapshot: BillingSnapshot
    lines: tuple[InflowReceiptLine, ...]

    @property
    def receipt_number(self) -> str:
        return f"IN{self.inflow.date_added.strftime('%Y%m%d')}{self.inflow.inflow_id[-4:].upper()}"

    @property
    def total(self) -> Decimal:
        return self.inflow.labour_charge

    @classmethod
    def for_inflow(
        cls,
        inflow: Inflow,
        snapshot: BillingSnapshot,
        areas: Sequence[StorageArea],
    ) -> "InflowReceipt":
        names = {area.area_id: area.area_name for area in areas}
        quantity = inflow.quantity
        lines = tuple(
            InflowReceiptLine(
                area_name=names.get(allocation.area_id, allocation.area_id),
                quantity=allocation.quantity,
                labour_share=(
                    to_money(inflow.labour_charge * allocation.quantity / quantity) if quantity else ZERO
                ),
            )
            for allocation in inflow.allocations
        )
        return cls(inflow=inflow, snapshot=snapshot, lines=lines)


__all__ = [
    "BillingEvent",
    "PaymentReceipt",
    "InflowReceiptLine",
    "InflowReceipt",
]
