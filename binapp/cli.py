from __future__ import annotations

import json

import click
from flask import current_app

from binapp.marketplace import get_marketplace
from binapp.services.order_sync import cleanup_stale_allocations, sync_eligible_orders
from binapp.services.reversal import (
    release_empty_allocations,
    revert_order,
    revert_order_by_code,
)
from binapp.services.stock_ledger import recalc_totals_from_locations, reconcile_assigned_to_total


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def register_cli(app):
    @app.cli.command("sync-orders")
    @click.option("--max", "max_per_run", type=int, default=None, help="Override the per-run cap.")
    def sync_orders_command(max_per_run):
        """Allocate bins for eligible marketplace orders."""

        config = current_app.config
        summary = sync_eligible_orders(
            get_marketplace(),
            eligible_states=config["ELIGIBLE_ORDER_STATES"],
            zero_only=config["ORDER_SYNC_ZERO_ONLY"],
            max_per_run=max_per_run if max_per_run is not None else config["ORDER_SYNC_MAX_PER_RUN"],
        )
        _echo_json(summary.to_dict())

    @app.cli.command("cleanup-stale-allocations")
    def cleanup_stale_command():
        """Revert allocations for cancelled or missing orders."""

        summary = cleanup_stale_allocations(
            get_marketplace(), stale_states=current_app.config["STALE_ORDER_STATES"]
        )
        _echo_json(summary.to_dict())

    @app.cli.command("revert-order")
    @click.argument("order_id")
    def revert_order_command(order_id):
        """Restore an order's reserved stock and delete its allocations."""

        _echo_json(revert_order(order_id).to_dict())

    @app.cli.command("revert-order-code")
    @click.argument("order_code")
    def revert_order_code_command(order_code):
        """Revert allocations selected by marketplace order code."""

        _echo_json(revert_order_by_code(order_code).to_dict())

    @app.cli.command("recalc-totals")
    def recalc_totals_command():
        """Set every item's total to the sum of its bin locations."""

        _echo_json(recalc_totals_from_locations())

    @app.cli.command("reconcile-assigned")
    @click.option("--apply", "apply_changes", is_flag=True, help="Write the trims instead of a dry run.")
    def reconcile_assigned_command(apply_changes):
        """Trim locations that hold more than an item's total."""

        result = reconcile_assigned_to_total(apply=apply_changes)
        if not apply_changes:
            click.echo("Dry run; re-run with --apply to write changes.")
        _echo_json(result)

    @app.cli.command("release-empty-allocations")
    def release_empty_command():
        """Delete zero-fill allocations so the next sync retries them."""

        order_ids = release_empty_allocations()
        _echo_json({"releasedOrders": order_ids})
