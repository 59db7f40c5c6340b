"""Durable, idempotent allocation records for order lines.

Each ``(order_id, product)`` pair gets exactly one record. The record insert
and the matching stock reservation are committed together, so either both
land or neither does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from binapp.extensions import db
from binapp.models import AllocationPick, AllocationRecord
from binapp.services.allocation_engine import allocate_from_locations
from binapp.services.change_log import record_change
from binapp.services.order_locks import order_guard
from binapp.services.stock_ledger import find_stock_item, location_quantities, reserve
from binapp.utils.cache import invalidate_order_list


logger = logging.getLogger(__name__)


class AllocationError(RuntimeError):
    """Base class for allocation ledger failures."""


class AllocationNotFoundError(AllocationError):
    pass


class AllocationConflictError(AllocationError):
    """Raised when concurrent stock writers keep winning the race."""


@dataclass
class OrderAllocation:
    order_id: str
    records: list[AllocationRecord] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)

    @property
    def fulfilled(self) -> int:
        return sum(record.fulfilled_quantity for record in self.records)

    @property
    def unfilled(self) -> int:
        return sum(record.unfilled_quantity for record in self.records)


def find_allocation(order_id, external_id: int) -> AllocationRecord | None:
    return AllocationRecord.query.filter_by(
        order_id=str(order_id), stock_item_external_id=external_id
    ).first()


def allocations_for_order(order_id) -> list[AllocationRecord]:
    return (
        AllocationRecord.query.filter_by(order_id=str(order_id))
        .order_by(AllocationRecord.id)
        .all()
    )


def order_has_allocations(order_id) -> bool:
    return (
        db.session.query(AllocationRecord.id)
        .filter(AllocationRecord.order_id == str(order_id))
        .first()
        is not None
    )


def allocated_order_ids(order_ids: Iterable) -> set[str]:
    keys = {str(order_id) for order_id in order_ids}
    if not keys:
        return set()
    rows = (
        db.session.query(AllocationRecord.order_id)
        .filter(AllocationRecord.order_id.in_(keys))
        .distinct()
        .all()
    )
    return {row[0] for row in rows}


def allocated_lines_by_order(order_ids: Iterable) -> dict[str, set[int]]:
    """Map each order id that has records to the product ids already allocated."""

    keys = {str(order_id) for order_id in order_ids}
    if not keys:
        return {}
    rows = (
        db.session.query(AllocationRecord.order_id, AllocationRecord.stock_item_external_id)
        .filter(AllocationRecord.order_id.in_(keys))
        .all()
    )
    allocated: dict[str, set[int]] = {}
    for order_id, external_id in rows:
        allocated.setdefault(order_id, set()).add(external_id)
    return allocated


def _stage_allocation(
    order_id: str,
    external_id: int,
    requested: int,
    order_code: str | None,
    name: str | None,
) -> AllocationRecord:
    item = find_stock_item(external_id)
    record = AllocationRecord(
        order_id=order_id,
        order_code=order_code,
        stock_item_external_id=external_id,
        item_name=name or (item.name if item is not None else None),
        requested_quantity=requested,
    )

    if item is None:
        record.fulfilled_quantity = 0
        record.unfilled_quantity = requested
        db.session.add(record)
        logger.warning(
            "No stock item for product %s on order %s; recording %s unfilled",
            external_id,
            order_id,
            requested,
        )
        record_change(
            "inventory-missing",
            f"Order {order_code or order_id} requested product {external_id} with no stock record",
            order_id=order_id,
            external_id=external_id,
            delta_quantity=0,
            details={"requested": requested},
        )
        return record

    plan = allocate_from_locations(location_quantities(item), requested)
    record.fulfilled_quantity = plan.fulfilled
    record.unfilled_quantity = plan.unfilled
    for position, pick in enumerate(plan.picked):
        record.picked_locations.append(
            AllocationPick(
                bin_id=pick.bin_id,
                bin_label=pick.bin_label,
                bin_row=pick.row,
                quantity=pick.quantity,
                position=position,
            )
        )
    db.session.add(record)
    reserve(item, plan.picked)

    record_change(
        "order-allocated",
        f"Allocated {plan.fulfilled}/{requested} of {record.item_name or external_id} "
        f"for order {order_code or order_id}",
        order_id=order_id,
        external_id=external_id,
        delta_quantity=-plan.fulfilled,
        details={
            "picked": [
                {"binId": pick.bin_id, "row": pick.row, "quantity": pick.quantity}
                for pick in plan.picked
            ],
            "unfilled": plan.unfilled,
        },
    )
    if plan.unfilled:
        logger.info(
            "Order %s product %s short by %s", order_id, external_id, plan.unfilled
        )
    return record


def allocate_order_line(
    order_id,
    external_id: int,
    requested: int,
    *,
    order_code: str | None = None,
    name: str | None = None,
) -> AllocationRecord:
    """Return the allocation for an order line, creating it at most once."""

    if requested is None or requested < 0:
        raise ValueError("Requested quantity cannot be negative.")
    order_key = str(order_id)
    max_attempts = max(1, int(current_app.config.get("ALLOCATION_MAX_ATTEMPTS", 3)))

    for attempt in range(max_attempts):
        existing = find_allocation(order_key, external_id)
        if existing is not None:
            return existing

        try:
            record = _stage_allocation(order_key, external_id, requested, order_code, name)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = find_allocation(order_key, external_id)
            if existing is not None:
                return existing
            raise
        except StaleDataError:
            db.session.rollback()
            logger.warning(
                "Stock for product %s changed during allocation of order %s (attempt %s/%s)",
                external_id,
                order_key,
                attempt + 1,
                max_attempts,
            )
            continue
        except Exception:
            db.session.rollback()
            raise
        invalidate_order_list()
        return record

    raise AllocationConflictError(
        f"Could not allocate product {external_id} for order {order_key} "
        f"after {max_attempts} attempts."
    )


def allocate_order(order_id, lines: Iterable, *, order_code: str | None = None) -> OrderAllocation:
    """Allocate every usable line of an order.

    ``lines`` are objects with ``external_id``, ``quantity`` and ``name``.
    Lines without a product id or with a non-positive quantity are reported
    in ``skipped``.
    """

    result = OrderAllocation(order_id=str(order_id))
    with order_guard(order_id):
        for line in lines:
            external_id = getattr(line, "external_id", None)
            quantity = getattr(line, "quantity", None)
            if external_id is None or quantity is None or quantity <= 0:
                result.skipped.append(
                    {"externalId": external_id, "quantity": quantity, "reason": "invalid line"}
                )
                continue
            result.records.append(
                allocate_order_line(
                    order_id,
                    external_id,
                    quantity,
                    order_code=order_code,
                    name=getattr(line, "name", None),
                )
            )
    return result


def set_picked(order_id, external_id: int, picked_by: str | None = None) -> AllocationRecord:
    record = find_allocation(order_id, external_id)
    if record is None:
        raise AllocationNotFoundError(
            f"No allocation for product {external_id} on order {order_id}."
        )
    record.picked = True
    record.picked_at = datetime.utcnow()
    record.picked_by = picked_by
    db.session.commit()
    return record


def clear_picked(order_id, external_id: int) -> AllocationRecord:
    record = find_allocation(order_id, external_id)
    if record is None:
        raise AllocationNotFoundError(
            f"No allocation for product {external_id} on order {order_id}."
        )
    record.picked = False
    record.picked_at = None
    record.picked_by = None
    db.session.commit()
    return record


def mark_picked_through(
    order_id,
    external_ids: list[int],
    through_external_id: int,
    picked_by: str | None = None,
) -> list[AllocationRecord]:
    """Mark every line up to and including ``through_external_id`` as picked.

    Each line is committed on its own; a failure part way leaves the earlier
    lines picked. Lines without an allocation are passed over.
    """

    if through_external_id not in external_ids:
        raise ValueError(f"Product {through_external_id} is not part of the pick list.")

    updated: list[AllocationRecord] = []
    for external_id in external_ids:
        try:
            updated.append(set_picked(order_id, external_id, picked_by))
        except AllocationNotFoundError:
            logger.info("Skipping unallocated product %s on order %s", external_id, order_id)
        if external_id == through_external_id:
            break
    return updated
