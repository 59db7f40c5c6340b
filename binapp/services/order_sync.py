"""Bring the allocation ledger in line with the marketplace's order states."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable

from binapp.extensions import db
from binapp.marketplace import (
    MarketplaceClient,
    MarketplaceError,
    MarketplaceOrder,
    OrderLine,
    OrderNotFoundError,
    filter_eligible,
)
from binapp.models import AllocationRecord
from binapp.services.allocation_ledger import (
    AllocationError,
    allocate_order,
    allocated_lines_by_order,
    allocated_order_ids,
)
from binapp.services.reversal import revert_order
from binapp.services.stock_ledger import StockLedgerError
from binapp.utils.cache import invalidate_order_list, order_list_cache


logger = logging.getLogger(__name__)

ORDER_LIST_KEY = "orders"


@dataclass
class SyncSummary:
    fetched: int = 0
    eligible: int = 0
    processed: int = 0
    triggered: int = 0
    skipped_already_allocated: int = 0
    failed: int = 0
    failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "fetchedOrders": self.fetched,
            "eligibleOrders": self.eligible,
            "processedThisRun": self.processed,
            "triggered": self.triggered,
            "skippedAlreadyAllocated": self.skipped_already_allocated,
            "failed": self.failed,
            "failures": list(self.failures),
        }


@dataclass
class CleanupSummary:
    checked: int = 0
    reverted_orders: int = 0
    removed_records: int = 0
    units_restored: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checkedOrders": self.checked,
            "revertedOrders": self.reverted_orders,
            "removedAllocations": self.removed_records,
            "unitsRestored": self.units_restored,
            "errorsCount": len(self.errors),
            "errors": list(self.errors),
        }


def _usable_line_ids(lines: Iterable[OrderLine]) -> set[int]:
    return {
        line.external_id
        for line in lines
        if line.external_id is not None and line.quantity is not None and line.quantity > 0
    }


def _pending_orders(
    marketplace: MarketplaceClient,
    eligible: list[MarketplaceOrder],
    summary: SyncSummary,
) -> list[MarketplaceOrder]:
    """Eligible orders with at least one usable line that has no record yet."""

    recorded = allocated_lines_by_order(order.order_id for order in eligible)
    pending: list[MarketplaceOrder] = []
    for order in eligible:
        done = recorded.get(order.order_id)
        if done is None:
            pending.append(order)
            continue
        if not order.lines:
            try:
                order = replace(
                    order, lines=tuple(marketplace.fetch_order_lines(order.order_id))
                )
            except MarketplaceError as exc:
                summary.failed += 1
                summary.failures.append({"orderId": order.order_id, "error": str(exc)})
                logger.warning("Could not load lines for order %s: %s", order.order_id, exc)
                continue
        if _usable_line_ids(order.lines) - done:
            pending.append(order)
        else:
            summary.skipped_already_allocated += 1
    return pending


def sync_eligible_orders(
    marketplace: MarketplaceClient,
    *,
    eligible_states: Iterable[str],
    zero_only: bool = True,
    max_per_run: int = 10,
) -> SyncSummary:
    """Allocate bins for eligible orders that still have unallocated lines.

    Orders that are already fully allocated are set aside before the per-run
    cap is applied. One failing order is logged and counted; the rest of the
    batch still runs, and lines it left unallocated are picked up next run.
    """

    summary = SyncSummary()
    orders = marketplace.fetch_orders()
    summary.fetched = len(orders)

    eligible = filter_eligible(orders, eligible_states, zero_only)
    summary.eligible = len(eligible)
    batch = _pending_orders(marketplace, eligible, summary)[: max(0, max_per_run)]
    summary.processed = len(batch)

    for order in batch:
        try:
            lines = order.lines or tuple(marketplace.fetch_order_lines(order.order_id))
            allocate_order(order.order_id, lines, order_code=order.code)
        except (AllocationError, StockLedgerError, MarketplaceError, ValueError) as exc:
            db.session.rollback()
            summary.failed += 1
            summary.failures.append({"orderId": order.order_id, "error": str(exc)})
            logger.exception("Order sync failed for order %s", order.order_id)
            continue
        summary.triggered += 1

    invalidate_order_list()
    logger.info(
        "Order sync: fetched=%s eligible=%s triggered=%s skipped=%s failed=%s",
        summary.fetched,
        summary.eligible,
        summary.triggered,
        summary.skipped_already_allocated,
        summary.failed,
    )
    return summary


def cleanup_stale_allocations(
    marketplace: MarketplaceClient, *, stale_states: Iterable[str]
) -> CleanupSummary:
    """Revert allocations for orders that vanished or were cancelled."""

    stale = {state.lower() for state in stale_states}
    summary = CleanupSummary()
    order_ids = [
        row[0]
        for row in db.session.query(AllocationRecord.order_id)
        .distinct()
        .order_by(AllocationRecord.order_id)
        .all()
    ]

    for order_id in order_ids:
        summary.checked += 1
        try:
            order = marketplace.fetch_order(order_id)
        except OrderNotFoundError:
            order = None
        except MarketplaceError as exc:
            summary.errors.append({"orderId": order_id, "status": exc.status, "error": str(exc)})
            logger.warning("Could not check order %s: %s", order_id, exc)
            continue

        if order is not None and order.state not in stale:
            continue

        try:
            result = revert_order(order_id)
        except (AllocationError, StockLedgerError) as exc:
            summary.errors.append({"orderId": order_id, "status": None, "error": str(exc)})
            logger.exception("Could not revert stale order %s", order_id)
            continue
        summary.reverted_orders += 1
        summary.removed_records += result.records_removed
        summary.units_restored += result.units_restored

    logger.info(
        "Stale allocation cleanup: checked=%s reverted=%s errors=%s",
        summary.checked,
        summary.reverted_orders,
        len(summary.errors),
    )
    return summary


def list_orders(marketplace: MarketplaceClient) -> list[dict]:
    """Marketplace orders with an ``allocated`` flag, served from the listing cache."""

    cache = order_list_cache()
    if cache is not None:
        cached = cache.get(ORDER_LIST_KEY)
        if cached is not None:
            return cached

    orders = marketplace.fetch_orders()
    allocated = allocated_order_ids(order.order_id for order in orders)
    listing = []
    for order in orders:
        row = order.to_dict()
        row["allocated"] = order.order_id in allocated
        listing.append(row)

    if cache is not None:
        cache.set(ORDER_LIST_KEY, listing)
    return listing
