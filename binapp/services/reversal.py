from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from binapp.extensions import db
from binapp.models import AllocationRecord
from binapp.services.allocation_engine import LocationQuantity
from binapp.services.allocation_ledger import AllocationConflictError
from binapp.services.change_log import record_change
from binapp.services.order_locks import order_guard
from binapp.services.stock_ledger import find_stock_item, restore
from binapp.utils.cache import invalidate_order_list


logger = logging.getLogger(__name__)


@dataclass
class ReversalResult:
    order_id: str | None = None
    order_code: str | None = None
    records_removed: int = 0
    units_restored: int = 0
    items_touched: int = 0
    skipped_missing_items: int = 0

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "orderCode": self.order_code,
            "recordsRemoved": self.records_removed,
            "unitsRestored": self.units_restored,
            "itemsTouched": self.items_touched,
            "skippedMissingItems": self.skipped_missing_items,
        }


def revert_allocations(records: list[AllocationRecord], result: ReversalResult) -> ReversalResult:
    """Give each record's picks back to stock and delete the records.

    Stages everything in the session and commits once. A record whose stock
    item has since been deleted is removed without restoring anything.
    """

    touched: set[int] = set()
    try:
        for record in records:
            item = find_stock_item(record.stock_item_external_id)
            picks = [
                LocationQuantity(bin_id=pick.bin_id, row=pick.bin_row, quantity=pick.quantity)
                for pick in record.picked_locations
            ]
            if item is None:
                if record.fulfilled_quantity:
                    logger.warning(
                        "Stock item %s is gone; dropping allocation on order %s without restoring %s units",
                        record.stock_item_external_id,
                        record.order_id,
                        record.fulfilled_quantity,
                    )
                result.skipped_missing_items += 1
            elif picks:
                result.units_restored += restore(item, picks)
                touched.add(item.id)
                record_change(
                    "order-reverted",
                    f"Restored {record.fulfilled_quantity} of {record.item_name or item.external_id} "
                    f"from order {record.order_code or record.order_id}",
                    order_id=record.order_id,
                    external_id=record.stock_item_external_id,
                    delta_quantity=record.fulfilled_quantity,
                    details={
                        "restored": [
                            {"binId": pick.bin_id, "row": pick.row, "quantity": pick.quantity}
                            for pick in picks
                        ]
                    },
                )
            db.session.delete(record)
            result.records_removed += 1
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    result.items_touched = len(touched)
    if result.records_removed:
        invalidate_order_list()
        logger.info(
            "Reverted order %s: %s records, %s units restored",
            result.order_code or result.order_id,
            result.records_removed,
            result.units_restored,
        )
    return result


def _revert_with_retry(load_records, make_result, label: str) -> ReversalResult:
    max_attempts = max(1, int(current_app.config.get("ALLOCATION_MAX_ATTEMPTS", 3)))
    for attempt in range(max_attempts):
        try:
            return revert_allocations(load_records(), make_result())
        except StaleDataError:
            logger.warning(
                "Stock changed while reverting %s (attempt %s/%s)", label, attempt + 1, max_attempts
            )
    raise AllocationConflictError(f"Could not revert {label} after {max_attempts} attempts.")


def revert_order(order_id) -> ReversalResult:
    """Undo every allocation of an order. Reverting nothing is not an error."""

    order_key = str(order_id)

    def load_records():
        return (
            AllocationRecord.query.filter_by(order_id=order_key)
            .order_by(AllocationRecord.id)
            .all()
        )

    with order_guard(order_key):
        return _revert_with_retry(
            load_records, lambda: ReversalResult(order_id=order_key), f"order {order_key}"
        )


def revert_order_by_code(order_code: str) -> ReversalResult:
    if not order_code:
        raise ValueError("An order code is required.")
    order_ids = {
        row[0]
        for row in db.session.query(AllocationRecord.order_id)
        .filter(AllocationRecord.order_code == order_code)
        .distinct()
        .all()
    }
    single_order = next(iter(order_ids)) if len(order_ids) == 1 else None

    def load_records():
        return (
            AllocationRecord.query.filter_by(order_code=order_code)
            .order_by(AllocationRecord.id)
            .all()
        )

    with order_guard(single_order or order_code):
        return _revert_with_retry(
            load_records,
            lambda: ReversalResult(order_id=single_order, order_code=order_code),
            f"order code {order_code}",
        )


def release_empty_allocations() -> list[str]:
    """Delete records that reserved nothing so the next pass can retry them.

    Each order is handled under its own lock and re-queried there, so a
    concurrent allocation for the same order is never interleaved.
    """

    order_ids = sorted(
        row[0]
        for row in db.session.query(AllocationRecord.order_id)
        .filter(AllocationRecord.fulfilled_quantity == 0)
        .distinct()
        .all()
    )
    released: list[str] = []
    removed = 0
    for order_id in order_ids:
        with order_guard(order_id):
            records = AllocationRecord.query.filter(
                AllocationRecord.order_id == order_id,
                AllocationRecord.fulfilled_quantity == 0,
            ).all()
            if not records:
                continue
            for record in records:
                db.session.delete(record)
            db.session.commit()
        removed += len(records)
        released.append(order_id)
    if removed:
        invalidate_order_list()
        logger.info("Released %s empty allocations across %s orders", removed, len(released))
    return released
