"""Read-side capacity ledger for storage areas.

Usage is never stored. The ledger aggregates the allocations of every live
inflow in a single pass, so two reads over the same inputs always agree and
there is no counter that can drift from the inflow records.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .constants import ErrorKind
from .errors import LedgerError, MissingReferenceError
from .models import AreaAllocation, Inflow, StorageArea, StorageLocation


@dataclass(frozen=True)
class AreaUsage:
    area_id: str
    area_name: str
    location_id: str
    capacity: int
    used: int

    @property
    def available(self) -> int:
        return self.capacity - self.used

    @property
    def percentage(self) -> float:
        return (self.used / self.capacity) * 100 if self.capacity > 0 else 0.0


@dataclass(frozen=True)
class LocationUsage:
    location_id: str
    location_name: str
    capacity: int
    area_capacity: int
    used: int

    @property
    def percentage(self) -> float:
        return (self.used / self.capacity) * 100 if self.capacity > 0 else 0.0


class CapacityLedger:
    """Aggregate view of area capacity versus allocated bags."""

    def __init__(self, areas: Iterable[StorageArea], inflows: Iterable[Inflow]) -> None:
        self._areas: Dict[str, StorageArea] = {area.area_id: area for area in areas}
        self._used: Dict[str, int] = defaultdict(int)
        for inflow in inflows:
            for allocation in inflow.allocations:
                self._used[allocation.area_id] += allocation.quantity

    @property
    def areas(self) -> Mapping[str, StorageArea]:
        return dict(self._areas)

    def area(self, area_id: str) -> StorageArea:
        try:
            return self._areas[area_id]
        except KeyError as exc:
            raise MissingReferenceError("storage area", area_id) from exc

    def used(self, area_id: str) -> int:
        self.area(area_id)
        return self._used.get(area_id, 0)

    def available(self, area_id: str) -> int:
        return self.area(area_id).capacity - self.used(area_id)

    def total_used(self) -> int:
        return sum(self._used.get(area_id, 0) for area_id in self._areas)

    def validate_allocation(self, area_id: str, quantity: int) -> Optional[LedgerError]:
        """Return a ``CapacityExceeded`` error when ``quantity`` does not fit."""
        available = self.available(area_id)
        if quantity > available:
            return LedgerError(
                kind=ErrorKind.CAPACITY_EXCEEDED,
                message=(
                    f"Area '{area_id}' has {available} bags available, "
                    f"{quantity} requested"
                ),
                entity_id=area_id,
                detail={"requested": quantity, "available": available},
            )
        return None

    def with_allocations(self, allocations: Sequence[AreaAllocation]) -> "CapacityLedger":
        """Return a copy of the ledger with ``allocations`` counted as used."""
        ledger = CapacityLedger(self._areas.values(), ())
        ledger._used = defaultdict(int, self._used)
        for allocation in allocations:
            ledger._used[allocation.area_id] += allocation.quantity
        return ledger

    def area_usage(self, location_id: Optional[str] = None) -> List[AreaUsage]:
        rows = []
        for area in self._areas.values():
            if location_id is not None and area.location_id != location_id:
                continue
            rows.append(
                AreaUsage(
                    area_id=area.area_id,
                    area_name=area.area_name,
                    location_id=area.location_id,
                    capacity=area.capacity,
                    used=self._used.get(area.area_id, 0),
                )
            )
        return sorted(rows, key=lambda row: row.area_name)

    def location_usage(self, locations: Iterable[StorageLocation]) -> List[LocationUsage]:
        area_capacity: Dict[str, int] = defaultdict(int)
        used: Dict[str, int] = defaultdict(int)
        for area in self._areas.values():
            area_capacity[area.location_id] += area.capacity
            used[area.location_id] += self._used.get(area.area_id, 0)
        return [
            LocationUsage(
                location_id=location.location_id,
                location_name=location.location_name,
                capacity=location.capacity,
                area_capacity=area_capacity.get(location.location_id, 0),
                used=used.get(location.location_id, 0),
            )
            for location in locations
        ]


__all__ = ["AreaUsage", "LocationUsage", "CapacityLedger"]
