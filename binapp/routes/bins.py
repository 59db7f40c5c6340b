from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from binapp.extensions import db
from binapp.models import AllocationPick, Bin, StockItem, StockLocation
from binapp.services.change_log import record_change
from binapp.services.stock_ledger import BinNotFoundError
from binapp.utils.payload import json_body, optional_str, require_int


bp = Blueprint("bins", __name__, url_prefix="/api/bins")


def _bin_dict(bin_record: Bin, units: int = 0) -> dict:
    return {
        "id": bin_record.id,
        "name": bin_record.name,
        "rows": bin_record.row_count,
        "description": bin_record.description,
        "units": int(units or 0),
    }


def _get_bin(bin_id: int) -> Bin:
    bin_record = db.session.get(Bin, bin_id)
    if bin_record is None:
        raise BinNotFoundError(f"Bin {bin_id} does not exist.")
    return bin_record


@bp.get("")
def list_bins():
    units = dict(
        db.session.query(StockLocation.bin_id, func.sum(StockLocation.quantity))
        .group_by(StockLocation.bin_id)
        .all()
    )
    bins = Bin.query.order_by(Bin.name).all()
    return jsonify([_bin_dict(bin_record, units.get(bin_record.id)) for bin_record in bins])


@bp.post("")
def create_bin():
    max_rows = current_app.config.get("MAX_BIN_ROWS", 5)
    try:
        payload = json_body()
        name = optional_str(payload, "name")
        if name is None:
            raise ValueError("name is required.")
        rows = require_int({"rows": payload.get("rows", max_rows)}, "rows", minimum=1)
        if rows > max_rows:
            raise ValueError(f"rows must be at most {max_rows}.")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    bin_record = Bin(name=name, row_count=rows, description=optional_str(payload, "description"))
    db.session.add(bin_record)
    try:
        db.session.flush()
        record_change("bin-change", f"Created bin {name}", source="manual", bin_id=bin_record.id)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": f"Bin {name} already exists."}), 409
    return jsonify(_bin_dict(bin_record)), 201


@bp.get("/<int:bin_id>/items")
def bin_items(bin_id):
    bin_record = _get_bin(bin_id)
    rows = (
        db.session.query(StockLocation, StockItem)
        .join(StockItem, StockItem.id == StockLocation.stock_item_id)
        .filter(StockLocation.bin_id == bin_id, StockLocation.quantity > 0)
        .order_by(StockLocation.bin_row, StockItem.name)
        .all()
    )
    return jsonify(
        {
            "bin": _bin_dict(bin_record, sum(location.quantity for location, _ in rows)),
            "items": [
                {
                    "externalId": item.external_id,
                    "name": item.name,
                    "setCode": item.set_code,
                    "condition": item.condition,
                    "isFoil": item.is_foil,
                    "row": location.bin_row,
                    "quantity": location.quantity,
                }
                for location, item in rows
            ],
        }
    )


@bp.delete("/<int:bin_id>")
def delete_bin(bin_id):
    bin_record = _get_bin(bin_id)
    in_stock = StockLocation.query.filter_by(bin_id=bin_id).first() is not None
    in_allocations = AllocationPick.query.filter_by(bin_id=bin_id).first() is not None
    if in_stock or in_allocations:
        return jsonify({"error": f"Bin {bin_record.name} is still referenced by stock or allocations."}), 409

    record_change("bin-change", f"Deleted bin {bin_record.name}", source="manual", bin_id=bin_id)
    db.session.delete(bin_record)
    db.session.commit()
    return jsonify({"deleted": bin_id})
