"""Greedy bin allocation.

The engine only does arithmetic: it never touches the database. Callers
load a stock item's locations, ask for a plan, then hand the picked
quantities to the stock ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable


@dataclass(frozen=True)
class LocationQuantity:
    bin_id: int
    row: int
    quantity: int
    bin_label: str | None = None

    @property
    def slot(self) -> tuple[int, int]:
        return self.bin_id, self.row


@dataclass(frozen=True)
class AllocationPlan:
    picked: tuple[LocationQuantity, ...]
    remaining: tuple[LocationQuantity, ...]
    unfilled: int

    @property
    def fulfilled(self) -> int:
        return sum(location.quantity for location in self.picked)


def _largest_first(location: LocationQuantity) -> tuple[int, int, int]:
    return -location.quantity, location.bin_id, location.row


def allocate_from_locations(
    locations: Iterable[LocationQuantity], requested: int
) -> AllocationPlan:
    """Pick ``requested`` units, draining the fullest locations first.

    Ties on quantity fall back to ``(bin_id, row)`` so the same input always
    yields the same plan. Empty or negative locations are passed through to
    ``remaining`` untouched.
    """

    if requested < 0:
        raise ValueError("Requested quantity cannot be negative.")

    to_fill = requested
    picked: list[LocationQuantity] = []
    remaining: list[LocationQuantity] = []

    for location in sorted(locations, key=_largest_first):
        if to_fill <= 0 or location.quantity <= 0:
            remaining.append(location)
            continue

        if location.quantity <= to_fill:
            picked.append(location)
            to_fill -= location.quantity
            continue

        picked.append(replace(location, quantity=to_fill))
        remaining.append(replace(location, quantity=location.quantity - to_fill))
        to_fill = 0

    return AllocationPlan(picked=tuple(picked), remaining=tuple(remaining), unfilled=to_fill)
