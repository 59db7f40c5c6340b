from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from binapp.marketplace import get_marketplace
from binapp.services.allocation_ledger import (
    allocate_order,
    allocations_for_order,
    clear_picked,
    mark_picked_through,
    set_picked,
)
from binapp.services.order_sync import cleanup_stale_allocations
from binapp.services.reversal import revert_order, revert_order_by_code
from binapp.utils.payload import json_body, optional_str, require_int


bp = Blueprint("allocations", __name__, url_prefix="/api/order-allocations")


def _line_view(line, record) -> dict:
    view = {
        "externalId": line.external_id,
        "name": line.name,
        "expansion": line.expansion,
        "quantity": line.quantity,
        "binLocations": [],
        "fulfilled": 0,
        "unfilled": line.quantity,
        "picked": False,
        "pickedAt": None,
        "pickedBy": None,
    }
    if record is not None:
        details = record.to_dict()
        view.update(
            {
                "binLocations": details["binLocations"],
                "fulfilled": details["fulfilledQuantity"],
                "unfilled": details["unfilledQuantity"],
                "picked": details["picked"],
                "pickedAt": details["pickedAt"],
                "pickedBy": details["pickedBy"],
            }
        )
    return view


@bp.get("/order/<order_id>")
def order_pick_list(order_id):
    """Fetch an order's lines, allocating any line seen for the first time."""

    order = get_marketplace().fetch_order(order_id)
    outcome = allocate_order(order.order_id, order.lines, order_code=order.code)
    records = {record.stock_item_external_id: record for record in outcome.records}

    lines = [
        _line_view(line, records.get(line.external_id))
        for line in order.lines
        if line.external_id is not None and line.quantity > 0
    ]
    return jsonify(
        {
            "orderId": order.order_id,
            "code": order.code,
            "state": order.state,
            "date": order.order_date,
            "lines": lines,
            "skipped": outcome.skipped,
        }
    )


@bp.get("/by-order/<order_id>")
def allocations_by_order(order_id):
    records = allocations_for_order(order_id)
    return jsonify({"orderId": str(order_id), "allocations": [record.to_dict() for record in records]})


@bp.patch("/pick")
def pick_line():
    try:
        payload = json_body()
        order_id = optional_str(payload, "orderId")
        if order_id is None:
            raise ValueError("orderId is required.")
        external_id = require_int(payload, "externalId")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    record = set_picked(order_id, external_id, optional_str(payload, "pickedBy"))
    return jsonify(record.to_dict())


@bp.patch("/unpick")
def unpick_line():
    try:
        payload = json_body()
        order_id = optional_str(payload, "orderId")
        if order_id is None:
            raise ValueError("orderId is required.")
        external_id = require_int(payload, "externalId")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    record = clear_picked(order_id, external_id)
    return jsonify(record.to_dict())


@bp.patch("/pick-through")
def pick_through():
    try:
        payload = json_body()
        order_id = optional_str(payload, "orderId")
        if order_id is None:
            raise ValueError("orderId is required.")
        raw_ids = payload.get("externalIds")
        if not isinstance(raw_ids, list) or not raw_ids:
            raise ValueError("externalIds must be a non-empty list.")
        external_ids = [require_int({"externalId": value}, "externalId") for value in raw_ids]
        through = require_int(payload, "throughExternalId")
        records = mark_picked_through(
            order_id, external_ids, through, optional_str(payload, "pickedBy")
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    return jsonify({"orderId": order_id, "picked": [record.to_dict() for record in records]})


@bp.post("/revert/<order_id>")
def revert(order_id):
    result = revert_order(order_id)
    return jsonify(result.to_dict())


@bp.post("/revert-by-code/<order_code>")
def revert_by_code(order_code):
    result = revert_order_by_code(order_code)
    return jsonify(result.to_dict())


@bp.post("/cleanup-stale")
def cleanup_stale():
    summary = cleanup_stale_allocations(
        get_marketplace(), stale_states=current_app.config["STALE_ORDER_STATES"]
    )
    return jsonify(summary.to_dict())
