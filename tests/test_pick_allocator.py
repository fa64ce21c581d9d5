"""Pick Task Allocator: claims, task execution, backorders and picking metrics."""

import pytest

from fulfillment.core.exceptions import (
    AlreadyClaimedError,
    CapacityExceededError,
    InsufficientAvailabilityError,
    InvalidRequestError,
    InvalidStateTransitionError,
    NotFoundError,
    OrderBackorderedError,
    OverPickError,
)
from fulfillment.services.notification_service import EventType


class TestClaimOrder:
    async def test_single_bin_claim_then_full_pick(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 10))
        order = await new_order(("W", 5))
        assert order.status == "PENDING"

        tasks = await engine.claim_order(order.id, "P1")
        assert len(tasks) == 1
        assert tasks[0].quantity == 5
        assert tasks[0].bin_code == "A-01-01"
        assert tasks[0].status == "PENDING"
        assert tasks[0].picker_id == "P1"

        claimed = await engine.get_order(order.id)
        assert claimed.status == "PICKING"
        assert claimed.picker_id == "P1"
        assert claimed.claimed_at is not None
        assert claimed.items[0].target_bin == "A-01-01"

        unit = await engine.get_unit("W", "A-01-01")
        assert unit.reserved == 5

        await engine.complete_task(tasks[0].id, 5, picker_id="P1")
        done = await engine.get_order(order.id)
        assert done.items[0].status == "FULLY_PICKED"
        assert done.items[0].picked_quantity == 5
        assert done.progress == 100
        assert done.status == "PICKED"
        assert done.picked_at is not None

        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved) == (5, 0)

    async def test_splits_across_bins_largest_first(self, engine, stock, new_order):
        await stock(("W", "B-02-01", 5), ("W", "A-01-01", 5))
        order = await new_order(("W", 8))

        tasks = await engine.claim_order(order.id, "P1")
        assert [(t.bin_code, t.quantity, t.sequence) for t in tasks] == [
            ("A-01-01", 5, 1),
            ("B-02-01", 3, 2),
        ]
        assert (await engine.get_unit("W", "A-01-01")).reserved == 5
        assert (await engine.get_unit("W", "B-02-01")).reserved == 3

    async def test_items_sharing_a_sku_share_availability(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 6), ("W", "B-02-01", 4))
        order = await new_order(("W", 5), ("W", 5))

        tasks = await engine.claim_order(order.id, "P1")
        assert sum(t.quantity for t in tasks) == 10
        assert (await engine.get_unit("W", "A-01-01")).available == 0
        assert (await engine.get_unit("W", "B-02-01")).available == 0

    async def test_inactive_bin_not_allocated(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 10), ("W", "B-02-01", 3))
        await engine.set_bin_active("A-01-01", False)
        order = await new_order(("W", 3))

        tasks = await engine.claim_order(order.id, "P1")
        assert [t.bin_code for t in tasks] == ["B-02-01"]

    async def test_claim_claimed_order(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 10))
        order = await new_order(("W", 1))
        await engine.claim_order(order.id, "P1")

        with pytest.raises(AlreadyClaimedError):
            await engine.claim_order(order.id, "P2")

    async def test_claim_unknown_order(self, engine):
        with pytest.raises(NotFoundError):
            await engine.claim_order("ORD-MISSING", "P1")

    async def test_capacity_exceeded_leaves_order_untouched(self, make_engine, engine, stock, new_order):
        limited = make_engine(MAX_ORDERS_PER_PICKER=1)
        await stock(("W", "A-01-01", 10))
        first = await new_order(("W", 1))
        second = await new_order(("W", 1))
        await limited.claim_order(first.id, "P1")

        with pytest.raises(CapacityExceededError):
            await limited.claim_order(second.id, "P1")

        untouched = await engine.get_order(second.id)
        assert untouched.status == "PENDING"
        assert untouched.picker_id is None
        assert await engine.get_order_tasks(second.id) == []
        assert (await engine.get_unit("W", "A-01-01")).reserved == 1

        # Another picker still can
        await limited.claim_order(second.id, "P2")

    async def test_blank_picker(self, engine, new_order):
        order = await new_order(("W", 1))
        with pytest.raises(InvalidRequestError):
            await engine.claim_order(order.id, " ")


class TestBackorder:
    async def test_short_stock_moves_order_to_backorder(self, engine, stock, new_order, recorder):
        await stock(("W", "A-01-01", 6), ("X", "A-01-02", 10))
        order = await new_order(("X", 2), ("W", 10))

        with pytest.raises(OrderBackorderedError) as exc_info:
            await engine.claim_order(order.id, "P1")
        assert exc_info.value.shortages == {"W": 4}
        assert exc_info.value.order_id == order.id

        status = await engine.get_order_status(order.id)
        assert status.status == "BACKORDER"
        assert [h.to_status for h in status.history] == ["BACKORDER"]

        # Nothing from the rolled-back claim survives
        assert await engine.get_order_tasks(order.id) == []
        assert (await engine.get_unit("X", "A-01-02")).reserved == 0

        events = recorder.of_type(EventType.ORDER_BACKORDERED)
        assert len(events) == 1
        assert events[0].order_id == order.id

    async def test_release_backorder_after_receipt(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 2))
        order = await new_order(("W", 5))
        with pytest.raises(OrderBackorderedError):
            await engine.claim_order(order.id, "P1")

        with pytest.raises(InsufficientAvailabilityError):
            await engine.release_backorder(order.id, actor="supervisor")

        await engine.receive("W", "B-02-01", 3)
        released = await engine.release_backorder(order.id, actor="supervisor")
        assert released.status == "PENDING"

        tasks = await engine.claim_order(order.id, "P1")
        assert sum(t.quantity for t in tasks) == 5

    async def test_backordered_order_cannot_be_claimed(self, engine, new_order):
        order = await new_order(("W", 1))
        with pytest.raises(OrderBackorderedError):
            await engine.claim_order(order.id, "P1")
        with pytest.raises(InvalidStateTransitionError):
            await engine.claim_order(order.id, "P1")


class TestCompleteTask:
    async def _claimed(self, engine, stock, new_order, qty=5):
        await stock(("W", "A-01-01", 10))
        order = await new_order(("W", qty))
        tasks = await engine.claim_order(order.id, "P1")
        return order, tasks[0]

    async def test_over_pick_rejected_without_side_effects(self, engine, stock, new_order):
        order, task = await self._claimed(engine, stock, new_order)

        with pytest.raises(OverPickError):
            await engine.complete_task(task.id, 6, picker_id="P1")

        unchanged = await engine.get_order_tasks(order.id)
        assert unchanged[0].status == "PENDING"
        assert unchanged[0].picked_quantity == 0
        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved) == (10, 5)

    async def test_negative_pick_rejected(self, engine, stock, new_order):
        _, task = await self._claimed(engine, stock, new_order)
        with pytest.raises(InvalidRequestError):
            await engine.complete_task(task.id, -1)

    async def test_other_picker_rejected(self, engine, stock, new_order):
        _, task = await self._claimed(engine, stock, new_order)
        with pytest.raises(AlreadyClaimedError):
            await engine.complete_task(task.id, 5, picker_id="P2")

    async def test_completed_task_is_immutable(self, engine, stock, new_order):
        _, task = await self._claimed(engine, stock, new_order, qty=2)
        await engine.complete_task(task.id, 2, picker_id="P1")
        with pytest.raises(InvalidStateTransitionError):
            await engine.complete_task(task.id, 0, picker_id="P1")

    async def test_short_pick_releases_remainder(self, engine, stock, new_order, recorder):
        order, task = await self._claimed(engine, stock, new_order)

        completed = await engine.complete_task(task.id, 3, picker_id="P1")
        assert completed.status == "COMPLETED"
        assert completed.picked_quantity == 3

        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved) == (7, 0)

        current = await engine.get_order(order.id)
        assert current.status == "PICKING"
        assert current.progress == 60
        assert current.items[0].status == "PARTIAL_PICKED"

        exceptions = recorder.of_type(EventType.PICK_EXCEPTION)
        assert len(exceptions) == 1
        assert exceptions[0].payload["kind"] == "SHORT_PICK"

    async def test_reallocate_after_short_pick(self, engine, stock, new_order):
        order, task = await self._claimed(engine, stock, new_order)
        await engine.complete_task(task.id, 3, picker_id="P1")

        new_tasks = await engine.reallocate_remaining(order.id, "P1")
        assert [(t.quantity, t.sequence) for t in new_tasks] == [(2, 2)]
        assert (await engine.get_unit("W", "A-01-01")).reserved == 2

        await engine.complete_task(new_tasks[0].id, 2, picker_id="P1")
        assert (await engine.get_order(order.id)).status == "PICKED"

    async def test_reallocate_with_open_tasks_adds_nothing(self, engine, stock, new_order):
        order, _ = await self._claimed(engine, stock, new_order)
        assert await engine.reallocate_remaining(order.id, "P1") == []

    async def test_start_task(self, engine, stock, new_order):
        _, task = await self._claimed(engine, stock, new_order)
        started = await engine.start_task(task.id, "P1")
        assert started.status == "IN_PROGRESS"
        assert started.started_at is not None

        with pytest.raises(InvalidStateTransitionError):
            await engine.start_task(task.id, "P1")

        done = await engine.complete_task(task.id, 5, picker_id="P1")
        assert done.status == "COMPLETED"


class TestSkipTask:
    async def test_skip_releases_reservation_and_notifies(self, engine, stock, new_order, recorder):
        await stock(("W", "A-01-01", 10))
        order = await new_order(("W", 4))
        tasks = await engine.claim_order(order.id, "P1")

        skipped = await engine.skip_task(tasks[0].id, "Bin empty", picker_id="P1")
        assert skipped.status == "SKIPPED"
        assert skipped.skip_reason == "Bin empty"
        assert skipped.skipped_at is not None

        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved) == (10, 0)

        events = recorder.of_type(EventType.PICK_EXCEPTION)
        assert len(events) == 1
        assert events[0].payload["reason"] == "Bin empty"
        assert events[0].payload["kind"] == "SKIPPED"

    async def test_skip_requires_reason(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 10))
        order = await new_order(("W", 4))
        tasks = await engine.claim_order(order.id, "P1")
        with pytest.raises(InvalidRequestError):
            await engine.skip_task(tasks[0].id, "  ")

    async def test_skip_unknown_task(self, engine):
        with pytest.raises(NotFoundError):
            await engine.skip_task("PT-MISSING", "Gone")


class TestTaskQueries:
    async def test_next_task_and_progress(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 5), ("X", "B-02-01", 5))
        order = await new_order(("W", 2), ("X", 2))
        tasks = await engine.claim_order(order.id, "P1")

        nxt = await engine.get_next_task(order.id)
        assert nxt.id == tasks[0].id

        await engine.complete_task(tasks[0].id, 2, picker_id="P1")
        nxt = await engine.get_next_task(order.id)
        assert nxt.id == tasks[1].id

        progress = await engine.get_picking_progress(order.id)
        assert (progress.total, progress.completed, progress.pending) == (2, 1, 1)
        assert progress.percentage == 50

        await engine.skip_task(tasks[1].id, "Damaged", picker_id="P1")
        assert await engine.get_next_task(order.id) is None
        progress = await engine.get_picking_progress(order.id)
        assert progress.skipped == 1

    async def test_picker_active_tasks(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 10))
        first = await new_order(("W", 1))
        second = await new_order(("W", 1))
        first_tasks = await engine.claim_order(first.id, "P1")
        await engine.claim_order(second.id, "P1")
        await engine.complete_task(first_tasks[0].id, 1, picker_id="P1")

        active = await engine.get_picker_active_tasks("P1")
        assert [t.order_id for t in active] == [second.id]
        assert await engine.get_picker_active_tasks("P2") == []

        orders = await engine.get_picker_active_orders("P1")
        assert [o.id for o in orders] == [second.id]

    async def test_picker_performance(self, engine, stock, new_order):
        await stock(("W", "A-01-01", 10))
        order = await new_order(("W", 3), ("W", 2))
        tasks = await engine.claim_order(order.id, "P1")
        await engine.start_task(tasks[0].id, "P1")
        await engine.complete_task(tasks[0].id, 3, picker_id="P1")

        perf = await engine.get_picker_performance("P1")
        assert perf.picker_id == "P1"
        assert perf.tasks_total == 2
        assert perf.tasks_completed == 1
        assert perf.total_units_picked == 3
        assert perf.average_seconds_per_task >= 0

    async def test_progress_of_unknown_order(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_picking_progress("ORD-MISSING")
