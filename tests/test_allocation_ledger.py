import os
import sys

import pytest
from sqlalchemy import text

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from binapp import create_app
from binapp.extensions import db
from binapp.marketplace import InMemoryMarketplace, OrderLine
from binapp.models import AllocationRecord, Bin, ChangeLog
from binapp.services import allocation_ledger
from binapp.services.allocation_ledger import (
    AllocationConflictError,
    AllocationNotFoundError,
    allocate_order,
    allocate_order_line,
    allocated_order_ids,
    allocations_for_order,
    clear_picked,
    mark_picked_through,
    order_has_allocations,
    set_picked,
)
from binapp.services.order_locks import active_order_locks
from binapp.services.stock_ledger import add_stock, find_stock_item


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "MARKETPLACE_CLIENT": InMemoryMarketplace(),
            "ALLOCATION_MAX_ATTEMPTS": 2,
        }
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def stocked(app):
    bin_a = Bin(name="A", row_count=5)
    bin_b = Bin(name="B", row_count=5)
    db.session.add_all([bin_a, bin_b])
    db.session.commit()
    add_stock(1001, bin_a.id, 1, 5, name="Counterspell")
    add_stock(1001, bin_b.id, 2, 3)
    return bin_a, bin_b


def _stock(external_id):
    item = find_stock_item(external_id)
    return item.total_quantity, [
        (location.bin_id, location.bin_row, location.quantity) for location in item.locations
    ]


def test_allocation_reserves_largest_locations_first(stocked):
    bin_a, bin_b = stocked

    record = allocate_order_line("5001", 1001, 6, order_code="20240101abcd")

    assert record.fulfilled_quantity == 6
    assert record.unfilled_quantity == 0
    assert [(pick.bin_label, pick.bin_row, pick.quantity) for pick in record.picked_locations] == [
        ("A", 1, 5),
        ("B", 2, 1),
    ]
    assert record.item_name == "Counterspell"
    assert _stock(1001) == (2, [(bin_b.id, 2, 2)])


def test_allocating_twice_returns_the_same_record(stocked):
    first = allocate_order_line("5001", 1001, 6)
    second = allocate_order_line("5001", 1001, 6)

    assert second.id == first.id
    assert AllocationRecord.query.count() == 1
    assert _stock(1001)[0] == 2
    assert ChangeLog.query.filter_by(change_type="order-allocated").count() == 1


def test_short_stock_is_recorded_as_unfilled(stocked):
    record = allocate_order_line("5001", 1001, 10)

    assert record.fulfilled_quantity == 8
    assert record.unfilled_quantity == 2
    assert _stock(1001) == (0, [])


def test_missing_stock_item_records_everything_unfilled(stocked):
    record = allocate_order_line("5001", 9999, 3, name="Unknown card")

    assert record.fulfilled_quantity == 0
    assert record.unfilled_quantity == 3
    assert record.picked_locations == []
    assert ChangeLog.query.filter_by(change_type="inventory-missing").count() == 1


def test_negative_request_is_rejected(stocked):
    with pytest.raises(ValueError):
        allocate_order_line("5001", 1001, -1)


def test_losing_the_insert_race_returns_the_winner(stocked, monkeypatch):
    winner = allocate_order_line("5001", 1001, 2)
    real_find = allocation_ledger.find_allocation
    calls = {"count": 0}

    def stale_lookup(order_id, external_id):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real_find(order_id, external_id)

    monkeypatch.setattr(allocation_ledger, "find_allocation", stale_lookup)

    record = allocate_order_line("5001", 1001, 2)

    assert record.id == winner.id
    assert AllocationRecord.query.count() == 1
    assert _stock(1001)[0] == 6


def test_concurrent_stock_change_is_retried(stocked, monkeypatch):
    real_reserve = allocation_ledger.reserve
    calls = {"count": 0}

    def contended_reserve(item, deltas):
        calls["count"] += 1
        if calls["count"] == 1:
            db.session.execute(
                text("UPDATE stock_item SET version_id = version_id + 1 WHERE id = :id"),
                {"id": item.id},
            )
        return real_reserve(item, deltas)

    monkeypatch.setattr(allocation_ledger, "reserve", contended_reserve)

    record = allocate_order_line("5001", 1001, 4)

    assert calls["count"] == 2
    assert record.fulfilled_quantity == 4
    assert AllocationRecord.query.count() == 1
    assert _stock(1001)[0] == 4


def test_retries_are_bounded(stocked, monkeypatch):
    real_reserve = allocation_ledger.reserve

    def always_contended(item, deltas):
        db.session.execute(
            text("UPDATE stock_item SET version_id = version_id + 1 WHERE id = :id"),
            {"id": item.id},
        )
        return real_reserve(item, deltas)

    monkeypatch.setattr(allocation_ledger, "reserve", always_contended)

    with pytest.raises(AllocationConflictError):
        allocate_order_line("5001", 1001, 4)

    assert AllocationRecord.query.count() == 0
    assert _stock(1001)[0] == 8


def test_allocate_order_skips_unusable_lines(stocked):
    result = allocate_order(
        "5001",
        [
            OrderLine(external_id=1001, quantity=2, name="Counterspell"),
            OrderLine(external_id=None, quantity=1),
            OrderLine(external_id=2002, quantity=0),
        ],
        order_code="CODE-1",
    )

    assert [record.stock_item_external_id for record in result.records] == [1001]
    assert len(result.skipped) == 2
    assert result.fulfilled == 2
    assert order_has_allocations("5001")
    assert not order_has_allocations("5002")
    assert allocated_order_ids(["5001", "5002"]) == {"5001"}
    assert allocations_for_order(5001)[0].order_code == "CODE-1"


def test_pick_and_unpick(stocked):
    allocate_order_line("5001", 1001, 1)

    record = set_picked("5001", 1001, picked_by="sam")
    assert record.picked is True
    assert record.picked_at is not None
    assert record.picked_by == "sam"

    record = clear_picked("5001", 1001)
    assert record.picked is False
    assert record.picked_at is None
    assert record.picked_by is None


def test_pick_unknown_line_raises(stocked):
    with pytest.raises(AllocationNotFoundError):
        set_picked("5001", 1001)
    with pytest.raises(AllocationNotFoundError):
        clear_picked("5001", 1001)


def test_pick_through_marks_lines_in_order(stocked):
    bin_a, _ = stocked
    add_stock(2002, bin_a.id, 3, 2)
    add_stock(3003, bin_a.id, 4, 2)
    for external_id in (1001, 2002, 3003):
        allocate_order_line("5001", external_id, 1)

    updated = mark_picked_through("5001", [1001, 2002, 3003], 2002, picked_by="lee")

    assert [record.stock_item_external_id for record in updated] == [1001, 2002]
    picked = {record.stock_item_external_id: record.picked for record in allocations_for_order("5001")}
    assert picked == {1001: True, 2002: True, 3003: False}


def test_pick_through_requires_target_in_list(stocked):
    with pytest.raises(ValueError):
        mark_picked_through("5001", [1001], 2002)


def test_order_locks_are_released_after_allocation(stocked):
    allocate_order("5001", [OrderLine(external_id=1001, quantity=1)])

    assert active_order_locks() == 0
