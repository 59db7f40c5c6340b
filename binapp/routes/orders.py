from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from binapp.marketplace import get_marketplace
from binapp.services.order_sync import list_orders, sync_eligible_orders


bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@bp.get("")
def orders_index():
    return jsonify(list_orders(get_marketplace()))


@bp.post("/sync")
def sync_orders():
    config = current_app.config
    summary = sync_eligible_orders(
        get_marketplace(),
        eligible_states=config["ELIGIBLE_ORDER_STATES"],
        zero_only=config["ORDER_SYNC_ZERO_ONLY"],
        max_per_run=config["ORDER_SYNC_MAX_PER_RUN"],
    )
    return jsonify({"ok": True, **summary.to_dict()})


@bp.get("/sync/status")
def sync_status():
    scheduler = current_app.extensions.get("binapp.scheduler")
    if scheduler is None:
        return jsonify({"enabled": False})
    return jsonify(
        {
            "enabled": True,
            "intervalSeconds": scheduler.interval_seconds,
            **scheduler.state.get(),
        }
    )
