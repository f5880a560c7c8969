"""Placing inflow bags into storage areas and taking them back out."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from .capacity import CapacityLedger
from .constants import ErrorKind
from .errors import Outcome, fail
from .models import AreaAllocation


@dataclass(frozen=True)
class AllocationRequest:
    """Caller's choice of how many bags go into one area."""

    area_id: str
    quantity: int


def allocate(
    requests: Sequence[AllocationRequest],
    ledger: CapacityLedger,
) -> Outcome[tuple[AreaAllocation, ...]]:
    """Validate ``requests`` against ``ledger`` and build the allocations.

    The caller decides which areas receive how many bags; nothing is split
    automatically. Validation is all-or-nothing: the first request that does
    not fit rejects the whole inflow with ``InsufficientCapacity`` naming the
    area, and the ledger is left untouched.

    Args:
        requests: Area/quantity pairs in the order the caller entered them.
        ledger: Capacity snapshot covering every live inflow.

    Returns:
        Outcome holding the allocations in request order.
    """
    if not requests:
        return fail(ErrorKind.INVALID_QUANTITY, "At least one area allocation is required")

    seen: set[str] = set()
    for request in requests:
        if request.area_id in seen:
            return fail(
                ErrorKind.DUPLICATE_AREA,
                f"Area '{request.area_id}' can only be used once per inflow",
                request.area_id,
            )
        seen.add(request.area_id)
        if request.quantity <= 0:
            return fail(
                ErrorKind.INVALID_QUANTITY,
                f"Quantity for area '{request.area_id}' must be greater than zero",
                request.area_id,
            )

    allocations = tuple(AreaAllocation(request.area_id, request.quantity) for request in requests)
    for allocation in allocations:
        problem = ledger.validate_allocation(allocation.area_id, allocation.quantity)
        if problem is not None:
            return fail(
                ErrorKind.INSUFFICIENT_CAPACITY,
                f"Inflow rejected: {problem.message}",
                allocation.area_id,
                cause=problem.kind.value,
                **problem.detail,
            )
    return Outcome.success(allocations)


def withdraw_from_allocations(
    allocations: Sequence[AreaAllocation],
    quantity: int,
) -> tuple[AreaAllocation, ...]:
    """Remove ``quantity`` bags, draining areas in ascending ``area_id`` order.

    Each allocation is emptied before the next is touched and emptied
    allocations are dropped. Untouched allocations are returned unchanged.

    Raises:
        ValueError: If ``quantity`` is negative or larger than the total held.
    """
    if quantity < 0:
        raise ValueError("Withdrawal quantity cannot be negative")
    if quantity > sum(allocation.quantity for allocation in allocations):
        raise ValueError("Withdrawal quantity exceeds allocated stock")

    remaining = quantity
    result: List[AreaAllocation] = []
    for allocation in sorted(allocations, key=lambda item: item.area_id):
        taken = min(allocation.quantity, remaining)
        remaining -= taken
        left = allocation.quantity - taken
        if left > 0:
            result.append(allocation if taken == 0 else AreaAllocation(allocation.area_id, left))
    return tuple(result)


__all__ = ["AllocationRequest", "allocate", "withdraw_from_allocations"]
