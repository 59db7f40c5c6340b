"""Per-item stock quantities and their physical bin/row locations.

``reserve`` and ``restore`` only stage changes in the session so they can
share a transaction with the allocation ledger. The intake and maintenance
helpers commit on their own.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.exc import IntegrityError

from binapp.extensions import db
from binapp.models import Bin, StockItem, StockLocation
from binapp.services.allocation_engine import LocationQuantity
from binapp.services.change_log import record_change


logger = logging.getLogger(__name__)

STOCK_METADATA_FIELDS = (
    "blueprint_id",
    "game",
    "set_code",
    "name",
    "image_url",
    "condition",
    "is_foil",
    "price",
    "notes",
)


class StockLedgerError(RuntimeError):
    """Raised when a stock mutation cannot be applied."""


class NegativeStockError(StockLedgerError):
    """Raised when a reservation would drive a quantity below zero."""


class StockItemNotFoundError(StockLedgerError):
    pass


class BinNotFoundError(StockLedgerError):
    pass


@dataclass(frozen=True)
class BulkAssignEntry:
    external_id: int
    quantity: int
    name: str | None = None
    set_code: str | None = None


def find_stock_item(external_id: int) -> StockItem | None:
    return StockItem.query.filter_by(external_id=external_id).first()


def location_quantities(item: StockItem) -> list[LocationQuantity]:
    return [
        LocationQuantity(
            bin_id=location.bin_id,
            row=location.bin_row,
            quantity=location.quantity,
            bin_label=location.bin.name if location.bin is not None else None,
        )
        for location in item.locations
    ]


def _require_bin(bin_id: int, row: int) -> Bin:
    bin_record = db.session.get(Bin, bin_id)
    if bin_record is None:
        raise BinNotFoundError(f"Bin {bin_id} does not exist.")
    if row < 1 or row > bin_record.row_count:
        raise ValueError(f"Row must be between 1 and {bin_record.row_count} for bin {bin_record.name}.")
    return bin_record


def _find_location(item: StockItem, bin_id: int, row: int) -> StockLocation | None:
    for location in item.locations:
        if location.bin_id == bin_id and location.bin_row == row:
            return location
    return None


def _append_location(item: StockItem, bin_id: int, row: int, quantity: int) -> StockLocation:
    next_position = max((location.position for location in item.locations), default=-1) + 1
    location = StockLocation(bin_id=bin_id, bin_row=row, quantity=quantity, position=next_position)
    item.locations.append(location)
    return location


def _prune_empty_locations(item: StockItem) -> None:
    for location in [location for location in item.locations if location.quantity <= 0]:
        item.locations.remove(location)


def _sum_deltas(deltas: Iterable[LocationQuantity]) -> "OrderedDict[tuple[int, int], int]":
    totals: OrderedDict[tuple[int, int], int] = OrderedDict()
    for delta in deltas:
        if delta.quantity < 0:
            raise ValueError("Stock deltas must be non-negative.")
        totals[delta.slot] = totals.get(delta.slot, 0) + delta.quantity
    return totals


def add_stock(
    external_id: int,
    bin_id: int,
    row: int,
    quantity: int,
    *,
    source: str = "manual",
    **metadata,
) -> StockItem:
    """Receive ``quantity`` units of a product into a bin row."""

    if quantity is None or quantity <= 0:
        raise ValueError("Quantity must be greater than zero.")
    unknown = set(metadata) - set(STOCK_METADATA_FIELDS)
    if unknown:
        raise ValueError(f"Unknown stock fields: {', '.join(sorted(unknown))}")

    bin_record = _require_bin(bin_id, row)

    item = find_stock_item(external_id)
    created = item is None
    if created:
        item = StockItem(external_id=external_id, total_quantity=0)
        db.session.add(item)
    for field, value in metadata.items():
        if value is not None:
            setattr(item, field, value)

    location = _find_location(item, bin_id, row)
    if location is None:
        _append_location(item, bin_id, row, quantity)
    else:
        location.quantity += quantity
    item.total_quantity = (item.total_quantity or 0) + quantity
    item.touch()

    record_change(
        "inventory-adjust",
        f"Added {quantity} of {item.name or external_id} to {bin_record.name} row {row}",
        source=source,
        external_id=external_id,
        delta_quantity=quantity,
        bin_id=bin_id,
        details={"row": row, "created": created},
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise
    return item


def remove_location(external_id: int, bin_id: int, row: int, *, source: str = "manual") -> StockItem:
    """Drop one location; the total becomes the sum of what is left."""

    item = find_stock_item(external_id)
    if item is None:
        raise StockItemNotFoundError(f"No stock item for product {external_id}.")
    location = _find_location(item, bin_id, row)
    if location is None:
        raise StockLedgerError(f"Product {external_id} has no stock in bin {bin_id} row {row}.")

    removed = location.quantity
    item.locations.remove(location)
    previous_total = item.total_quantity
    item.total_quantity = item.assigned_quantity
    item.touch()

    record_change(
        "bin-change",
        f"Removed bin {bin_id} row {row} from {item.name or external_id}",
        source=source,
        external_id=external_id,
        delta_quantity=item.total_quantity - previous_total,
        bin_id=bin_id,
        details={"row": row, "removed": removed},
    )
    db.session.commit()
    return item


def reserve(item: StockItem, deltas: Iterable[LocationQuantity]) -> int:
    """Take the given quantities out of ``item``. Nothing changes on failure."""

    totals = _sum_deltas(deltas)
    requested = sum(totals.values())

    for (bin_id, row), quantity in totals.items():
        location = _find_location(item, bin_id, row)
        available = location.quantity if location is not None else 0
        if quantity > available:
            raise NegativeStockError(
                f"Product {item.external_id} has {available} in bin {bin_id} row {row}, "
                f"cannot reserve {quantity}."
            )
    if requested > item.total_quantity:
        raise NegativeStockError(
            f"Product {item.external_id} total is {item.total_quantity}, cannot reserve {requested}."
        )

    for (bin_id, row), quantity in totals.items():
        _find_location(item, bin_id, row).quantity -= quantity
    item.total_quantity -= requested
    _prune_empty_locations(item)
    item.touch()
    return requested


def restore(item: StockItem, deltas: Iterable[LocationQuantity]) -> int:
    """Put quantities back, recreating any location that was pruned."""

    totals = _sum_deltas(deltas)
    for (bin_id, row), quantity in totals.items():
        if quantity == 0:
            continue
        location = _find_location(item, bin_id, row)
        if location is None:
            _append_location(item, bin_id, row, quantity)
        else:
            location.quantity += quantity
    restored = sum(totals.values())
    item.total_quantity = (item.total_quantity or 0) + restored
    item.touch()
    return restored


def assign_unassigned(set_code: str, bin_id: int, row: int, *, source: str = "manual") -> dict:
    """Place every item's unplaced units from one set into a single bin row."""

    if not set_code:
        raise ValueError("A set code is required.")
    bin_record = _require_bin(bin_id, row)

    items = StockItem.query.filter(StockItem.set_code == set_code).order_by(StockItem.id).all()
    assigned_items = 0
    assigned_units = 0
    for item in items:
        unassigned = item.total_quantity - item.assigned_quantity
        if unassigned <= 0:
            continue
        location = _find_location(item, bin_id, row)
        if location is None:
            _append_location(item, bin_id, row, unassigned)
        else:
            location.quantity += unassigned
        item.touch()
        assigned_items += 1
        assigned_units += unassigned

    if assigned_items:
        record_change(
            "bin-change",
            f"Assigned {assigned_units} unplaced units of set {set_code} to {bin_record.name} row {row}",
            source=source,
            bin_id=bin_id,
            details={"set_code": set_code, "row": row, "items": assigned_items},
        )
    db.session.commit()
    return {
        "set_code": set_code,
        "scanned": len(items),
        "assigned_items": assigned_items,
        "assigned_units": assigned_units,
    }


def bulk_assign(bin_id: int, row: int, entries: Iterable[BulkAssignEntry]) -> dict:
    _require_bin(bin_id, row)

    assigned = 0
    failures: list[dict] = []
    for entry in entries:
        try:
            add_stock(
                entry.external_id,
                bin_id,
                row,
                entry.quantity,
                name=entry.name,
                set_code=entry.set_code,
            )
        except (StockLedgerError, ValueError) as exc:
            db.session.rollback()
            failures.append({"externalId": entry.external_id, "error": str(exc)})
            continue
        assigned += 1

    return {"assigned": assigned, "failed": failures}


def recalc_totals_from_locations() -> dict:
    """Set each item's total to what its locations hold."""

    scanned = updated = skipped = 0
    for item in StockItem.query.order_by(StockItem.id).all():
        scanned += 1
        if not item.locations:
            skipped += 1
            continue
        assigned = item.assigned_quantity
        if assigned == item.total_quantity:
            continue
        record_change(
            "reconcile",
            f"Total for {item.name or item.external_id} set to located quantity",
            external_id=item.external_id,
            delta_quantity=assigned - item.total_quantity,
            details={"previous_total": item.total_quantity, "new_total": assigned},
        )
        item.total_quantity = assigned
        item.touch()
        updated += 1

    db.session.commit()
    logger.info(
        "Recalculated stock totals: scanned=%s updated=%s skipped=%s", scanned, updated, skipped
    )
    return {"scanned": scanned, "updated": updated, "skipped": skipped}


def reconcile_assigned_to_total(*, apply: bool = False) -> dict:
    """Trim over-assigned items back to their totals, newest location first."""

    over_assigned: list[dict] = []
    for item in StockItem.query.order_by(StockItem.id).all():
        assigned = item.assigned_quantity
        excess = assigned - item.total_quantity
        if excess <= 0:
            continue

        trims = []
        for location in reversed(list(item.locations)):
            if excess <= 0:
                break
            take = min(location.quantity, excess)
            if take <= 0:
                continue
            trims.append({"binId": location.bin_id, "row": location.bin_row, "quantity": take})
            excess -= take
            if apply:
                location.quantity -= take

        if apply:
            _prune_empty_locations(item)
            item.touch()
            record_change(
                "reconcile",
                f"Trimmed over-assigned locations for {item.name or item.external_id}",
                external_id=item.external_id,
                delta_quantity=-sum(trim["quantity"] for trim in trims),
                details={"trims": trims},
            )
        over_assigned.append(
            {
                "externalId": item.external_id,
                "total": item.total_quantity,
                "assigned": assigned,
                "trims": trims,
            }
        )

    if apply:
        db.session.commit()
    else:
        db.session.rollback()
    logger.info(
        "Reconcile assigned-to-total (%s): %s over-assigned items",
        "apply" if apply else "dry run",
        len(over_assigned),
    )
    return {"applied": apply, "items": over_assigned}
