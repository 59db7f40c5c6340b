import json
import os
import sys

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from binapp import create_app
from binapp.extensions import db
from binapp.marketplace import InMemoryMarketplace, MarketplaceOrder, OrderLine
from binapp.models import AllocationRecord, Bin
from binapp.services.allocation_ledger import allocate_order_line
from binapp.services.stock_ledger import add_stock, find_stock_item


@pytest.fixture
def marketplace():
    market = InMemoryMarketplace()
    market.add_order(
        MarketplaceOrder(
            order_id="8001",
            code="20240520aa",
            state="paid",
            via_zero=True,
            lines=(OrderLine(external_id=1001, quantity=2, name="Opt"),),
        )
    )
    return market


@pytest.fixture
def app(marketplace):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "MARKETPLACE_CLIENT": marketplace,
        }
    )
    with app.app_context():
        db.create_all()
        bin_a = Bin(name="A", row_count=5)
        db.session.add(bin_a)
        db.session.commit()
        add_stock(1001, bin_a.id, 1, 6, name="Opt")
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def _output_json(result):
    assert result.exit_code == 0, result.output
    start = result.output.index("{")
    return json.loads(result.output[start:])


def test_sync_orders_command(runner):
    payload = _output_json(runner.invoke(args=["sync-orders"]))

    assert payload["triggered"] == 1
    assert AllocationRecord.query.count() == 1


def test_revert_order_command(runner):
    allocate_order_line("8001", 1001, 2)

    payload = _output_json(runner.invoke(args=["revert-order", "8001"]))

    assert payload["recordsRemoved"] == 1
    assert find_stock_item(1001).total_quantity == 6


def test_revert_order_code_command(runner):
    allocate_order_line("8001", 1001, 2, order_code="20240520aa")

    payload = _output_json(runner.invoke(args=["revert-order-code", "20240520aa"]))

    assert payload["orderId"] == "8001"
    assert payload["unitsRestored"] == 2


def test_cleanup_stale_allocations_command(runner, marketplace):
    allocate_order_line("8001", 1001, 2)
    marketplace.remove_order("8001")

    payload = _output_json(runner.invoke(args=["cleanup-stale-allocations"]))

    assert payload["revertedOrders"] == 1


def test_recalc_and_reconcile_commands(runner):
    item = find_stock_item(1001)
    item.total_quantity = 4
    item.touch()
    db.session.commit()

    dry_run = runner.invoke(args=["reconcile-assigned"])
    assert "Dry run" in dry_run.output
    assert find_stock_item(1001).assigned_quantity == 6

    payload = _output_json(runner.invoke(args=["reconcile-assigned", "--apply"]))
    assert payload["applied"] is True
    assert find_stock_item(1001).assigned_quantity == 4

    payload = _output_json(runner.invoke(args=["recalc-totals"]))
    assert payload["updated"] == 0


def test_release_empty_allocations_command(runner):
    allocate_order_line("8002", 4040, 1)

    payload = _output_json(runner.invoke(args=["release-empty-allocations"]))

    assert payload == {"releasedOrders": ["8002"]}
