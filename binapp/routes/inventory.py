from __future__ import annotations

from flask import Blueprint, jsonify

from binapp.models import StockItem
from binapp.services.stock_ledger import (
    BulkAssignEntry,
    StockItemNotFoundError,
    add_stock,
    assign_unassigned,
    bulk_assign,
    find_stock_item,
    remove_location,
)
from binapp.utils.payload import json_body, optional_str, require_int


bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _item_dict(item: StockItem) -> dict:
    return {
        "externalId": item.external_id,
        "blueprintId": item.blueprint_id,
        "game": item.game,
        "setCode": item.set_code,
        "name": item.name,
        "condition": item.condition,
        "isFoil": item.is_foil,
        "price": float(item.price) if item.price is not None else None,
        "totalQuantity": item.total_quantity,
        "assignedQuantity": item.assigned_quantity,
        "locations": [
            {
                "binId": location.bin_id,
                "bin": location.bin.name if location.bin is not None else None,
                "row": location.bin_row,
                "quantity": location.quantity,
            }
            for location in item.locations
        ],
    }


@bp.get("/<int:external_id>")
def get_item(external_id):
    item = find_stock_item(external_id)
    if item is None:
        raise StockItemNotFoundError(f"No stock item for product {external_id}.")
    return jsonify(_item_dict(item))


@bp.post("/stock")
def receive_stock():
    try:
        payload = json_body()
        item = add_stock(
            require_int(payload, "externalId"),
            require_int(payload, "binId"),
            require_int(payload, "row", minimum=1),
            require_int(payload, "quantity", minimum=1),
            name=optional_str(payload, "name"),
            set_code=optional_str(payload, "setCode"),
            game=optional_str(payload, "game"),
            condition=optional_str(payload, "condition"),
            is_foil=payload.get("isFoil") if isinstance(payload.get("isFoil"), bool) else None,
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(_item_dict(item)), 201


@bp.post("/bulk-assign")
def bulk_assign_items():
    try:
        payload = json_body()
        bin_id = require_int(payload, "binId")
        row = require_int(payload, "row", minimum=1)
        raw_items = payload.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValueError("items must be a non-empty list.")
        entries = [
            BulkAssignEntry(
                external_id=require_int(entry, "externalId"),
                quantity=require_int(entry, "quantity", minimum=1),
                name=optional_str(entry, "name"),
                set_code=optional_str(entry, "setCode"),
            )
            for entry in raw_items
            if isinstance(entry, dict)
        ]
        result = bulk_assign(bin_id, row, entries)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(result)


@bp.post("/assign-unassigned-set-to-bin")
def assign_unassigned_set():
    try:
        payload = json_body()
        set_code = optional_str(payload, "setCode")
        if set_code is None:
            raise ValueError("setCode is required.")
        result = assign_unassigned(
            set_code,
            require_int(payload, "binId"),
            require_int(payload, "row", minimum=1),
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(result)


@bp.post("/remove-location")
def remove_item_location():
    try:
        payload = json_body()
        item = remove_location(
            require_int(payload, "externalId"),
            require_int(payload, "binId"),
            require_int(payload, "row", minimum=1),
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(_item_dict(item))
