import os
import sys

import pytest
from hypothesis import given, strategies as st

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from binapp.services.allocation_engine import LocationQuantity, allocate_from_locations


BIN_A = 1
BIN_B = 2


def _slots(locations):
    return [(location.bin_id, location.row, location.quantity) for location in locations]


def test_partial_take_splits_second_location():
    plan = allocate_from_locations(
        [LocationQuantity(BIN_A, 1, 5), LocationQuantity(BIN_B, 2, 3)], 6
    )

    assert _slots(plan.picked) == [(BIN_A, 1, 5), (BIN_B, 2, 1)]
    assert _slots(plan.remaining) == [(BIN_B, 2, 2)]
    assert plan.unfilled == 0
    assert plan.fulfilled == 6


def test_short_stock_reports_unfilled():
    plan = allocate_from_locations(
        [LocationQuantity(BIN_A, 1, 5), LocationQuantity(BIN_B, 2, 3)], 10
    )

    assert _slots(plan.picked) == [(BIN_A, 1, 5), (BIN_B, 2, 3)]
    assert plan.remaining == ()
    assert plan.unfilled == 2


def test_largest_location_is_drained_first():
    plan = allocate_from_locations(
        [LocationQuantity(BIN_A, 1, 2), LocationQuantity(BIN_B, 1, 9)], 4
    )

    assert _slots(plan.picked) == [(BIN_B, 1, 4)]
    assert _slots(plan.remaining) == [(BIN_B, 1, 5), (BIN_A, 1, 2)]


def test_equal_quantities_break_ties_by_bin_then_row():
    plan = allocate_from_locations(
        [
            LocationQuantity(BIN_B, 1, 3),
            LocationQuantity(BIN_A, 4, 3),
            LocationQuantity(BIN_A, 2, 3),
        ],
        4,
    )

    assert _slots(plan.picked) == [(BIN_A, 2, 3), (BIN_A, 4, 1)]


def test_empty_locations_pass_through_untouched():
    plan = allocate_from_locations(
        [LocationQuantity(BIN_A, 1, 0), LocationQuantity(BIN_B, 1, 2)], 5
    )

    assert _slots(plan.picked) == [(BIN_B, 1, 2)]
    assert _slots(plan.remaining) == [(BIN_A, 1, 0)]
    assert plan.unfilled == 3


def test_zero_requested_picks_nothing():
    plan = allocate_from_locations([LocationQuantity(BIN_A, 1, 5)], 0)

    assert plan.picked == ()
    assert _slots(plan.remaining) == [(BIN_A, 1, 5)]
    assert plan.unfilled == 0


def test_no_locations_leaves_everything_unfilled():
    plan = allocate_from_locations([], 3)

    assert plan.picked == ()
    assert plan.unfilled == 3


def test_negative_request_is_rejected():
    with pytest.raises(ValueError):
        allocate_from_locations([LocationQuantity(BIN_A, 1, 5)], -1)


def test_bin_labels_are_carried_into_picks():
    plan = allocate_from_locations([LocationQuantity(BIN_A, 3, 4, bin_label="Binder 7")], 2)

    assert plan.picked[0].bin_label == "Binder 7"
    assert plan.remaining[0].bin_label == "Binder 7"


location_lists = st.lists(
    st.builds(
        LocationQuantity,
        bin_id=st.integers(min_value=1, max_value=6),
        row=st.integers(min_value=1, max_value=5),
        quantity=st.integers(min_value=-2, max_value=40),
    ),
    max_size=12,
)


@given(locations=location_lists, requested=st.integers(min_value=0, max_value=200))
def test_plan_accounts_for_every_unit(locations, requested):
    plan = allocate_from_locations(locations, requested)

    picked = sum(location.quantity for location in plan.picked)
    remaining = sum(location.quantity for location in plan.remaining)
    assert picked + plan.unfilled == requested
    assert picked + remaining == sum(location.quantity for location in locations)
    assert all(location.quantity > 0 for location in plan.picked)
    assert plan.unfilled >= 0


@given(data=st.data(), locations=location_lists, requested=st.integers(min_value=0, max_value=200))
def test_plan_ignores_input_order(data, locations, requested):
    shuffled = data.draw(st.permutations(locations))

    assert allocate_from_locations(shuffled, requested) == allocate_from_locations(
        locations, requested
    )
