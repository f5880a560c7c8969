"""Tiered storage rate schedule.

Short stays are billed month by month. Anything longer is billed in whole
years at the yearly rate, and any leftover months add a single half-year
block regardless of how many months are left over.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from .constants import MONTHLY_BILLING_LIMIT, RateTier
from .models import RateCard


def months_in_storage(date_added: datetime, as_of: datetime) -> int:
    """Return the billable number of whole calendar months, never below one."""
    delta = relativedelta(as_of, date_added)
    return max(1, delta.years * 12 + delta.months)


def storage_cost_per_bag(months: int, rates: RateCard) -> Decimal:
    """Price one bag stored for ``months`` months.

    Raises:
        ValueError: If ``months`` is not a positive integer.
    """
    if months < 1:
        raise ValueError("Storage duration must be at least one month")

    if months <= MONTHLY_BILLING_LIMIT:
        return months * rates.rate_for(RateTier.MONTHLY)

    years, remainder = divmod(months, RateTier.YEARLY.value)
    cost = years * rates.rate_for(RateTier.YEARLY)
    if remainder > 0:
        # 1 to 11 leftover months cost the same flat half-year block.
        cost += rates.rate_for(RateTier.HALF_YEARLY)
    return cost


__all__ = ["months_in_storage", "storage_cost_per_bag"]
