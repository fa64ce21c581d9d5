"""Pure rules of the order state machine and the allocation planner."""

import pytest

from fulfillment.core.exceptions import InvalidStateTransitionError
from fulfillment.models.order import OrderItemStatus, OrderStatus
from fulfillment.schemas.inventory import StockLocation
from fulfillment.services.allocation_service import plan_allocation
from fulfillment.services.order_state_machine import (
    ORDER_TRANSITIONS,
    can_cancel,
    can_transition,
    compute_progress,
    derive_item_status,
    get_allowed_transitions,
    get_transition_action,
    is_terminal,
    validate_transition,
)


def loc(bin_code, available):
    return StockLocation(bin_code=bin_code, available=available)


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(ORDER_TRANSITIONS) == {s.value for s in OrderStatus}

    @pytest.mark.parametrize(
        "current,target",
        [
            ("PENDING", "PICKING"),
            ("PENDING", "BACKORDER"),
            ("PICKING", "PICKED"),
            ("PICKING", "PENDING"),
            ("PICKED", "PACKING"),
            ("PACKING", "PACKED"),
            ("PACKING", "PICKED"),
            ("PACKED", "SHIPPED"),
            ("BACKORDER", "PENDING"),
        ],
    )
    def test_forward_transitions_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            ("PENDING", "SHIPPED"),
            ("PENDING", "PICKED"),
            ("PICKING", "PACKING"),
            ("PICKED", "PICKING"),
            ("PACKED", "PACKING"),
            ("BACKORDER", "PICKING"),
            ("SHIPPED", "CANCELLED"),
            ("CANCELLED", "PENDING"),
        ],
    )
    def test_illegal_transitions_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_transition(current, target)
        assert exc_info.value.current_status == current
        assert exc_info.value.target_status == target

    def test_self_transition_is_not_a_transition(self):
        with pytest.raises(InvalidStateTransitionError):
            validate_transition("PICKING", "PICKING")

    def test_accepts_enum_members(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.PICKING)
        validate_transition(OrderStatus.PACKED, OrderStatus.SHIPPED)

    def test_cancel_reachable_from_every_non_terminal_state(self):
        for status in OrderStatus:
            if is_terminal(status):
                assert not can_cancel(status)
                assert get_allowed_transitions(status) == []
            else:
                assert can_cancel(status)
                assert can_transition(status, OrderStatus.CANCELLED)

    def test_terminal_states(self):
        assert is_terminal("SHIPPED")
        assert is_terminal("CANCELLED")
        assert not is_terminal("BACKORDER")

    def test_terminal_error_message(self):
        with pytest.raises(InvalidStateTransitionError, match="terminal state"):
            validate_transition("SHIPPED", "PENDING")

    def test_transition_action_names(self):
        assert get_transition_action("PENDING", "PICKING") == "Claim for Picking"
        assert get_transition_action("PACKED", "CANCELLED") == "Cancel"


class TestDeriveItemStatus:
    def test_nothing_picked(self):
        assert derive_item_status(0, 5) == OrderItemStatus.PENDING.value

    def test_partially_picked(self):
        assert derive_item_status(2, 5) == OrderItemStatus.PARTIAL_PICKED.value

    def test_fully_picked(self):
        assert derive_item_status(5, 5) == OrderItemStatus.FULLY_PICKED.value


class TestComputeProgress:
    def test_no_items(self):
        assert compute_progress([]) == 0

    def test_two_items_one_full_one_half(self):
        assert compute_progress([(3, 3), (2, 4)]) == 75

    def test_average_is_unweighted(self):
        # One small line done, one large line untouched
        assert compute_progress([(1, 1), (0, 100)]) == 50

    def test_rounds_half_up(self):
        assert compute_progress([(1, 8)]) == 13
        assert compute_progress([(3, 8)]) == 38

    def test_rounds_to_nearest(self):
        assert compute_progress([(1, 3)]) == 33
        assert compute_progress([(2, 3)]) == 67

    def test_complete(self):
        assert compute_progress([(5, 5), (1, 1)]) == 100


class TestPlanAllocation:
    def test_single_bin_when_it_covers_the_quantity(self):
        plan = plan_allocation(5, [loc("A-01-01", 10), loc("B-02-01", 6)])
        assert plan == [("A-01-01", 5)]

    def test_largest_bin_first(self):
        plan = plan_allocation(5, [loc("A-01-01", 6), loc("B-02-01", 10)])
        assert plan == [("B-02-01", 5)]

    def test_tie_broken_by_bin_code(self):
        plan = plan_allocation(4, [loc("B-02-01", 5), loc("A-01-01", 5)])
        assert plan == [("A-01-01", 4)]

    def test_splits_only_when_no_single_bin_covers(self):
        plan = plan_allocation(8, [loc("A-01-01", 5), loc("B-02-01", 5), loc("C-03-01", 1)])
        assert plan == [("A-01-01", 5), ("B-02-01", 3)]

    def test_returns_none_when_total_is_short(self):
        assert plan_allocation(11, [loc("A-01-01", 5), loc("B-02-01", 5)]) is None

    def test_ignores_empty_bins(self):
        plan = plan_allocation(2, [loc("A-01-01", 0), loc("B-02-01", 2)])
        assert plan == [("B-02-01", 2)]

    def test_no_candidates(self):
        assert plan_allocation(1, []) is None
