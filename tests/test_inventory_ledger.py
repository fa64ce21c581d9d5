"""Inventory Ledger: reserve/deduct/release/adjust, read path and reconciliation."""

import pytest

from fulfillment.core.exceptions import (
    InsufficientAvailabilityError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from fulfillment.services.inventory_service import InventoryLedger
from fulfillment.services.notification_service import EventType


class TestReceiveAndAdjust:
    async def test_receive_creates_unit(self, engine):
        unit = await engine.receive("W", "A-01-01", 10)
        assert unit.quantity == 10
        assert unit.reserved == 0
        assert unit.available == 10

    async def test_receive_accumulates(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        unit = await engine.receive("W", "A-01-01", 5)
        assert unit.quantity == 15

    async def test_unit_inserted_concurrently_is_reused(self, engine, database, stock):
        await stock(("W", "A-01-01", 4))

        # The unit row already exists when this transaction tries to create it
        async with database.transaction() as session:
            ledger = InventoryLedger(session)
            unit = await ledger._create_unit("W", "A-01-01")
            assert unit.quantity == 4
            await ledger.receive("W", "A-01-01", 2)

        unit = await engine.get_unit("W", "A-01-01")
        assert unit.quantity == 6
        assert len(await engine.get_units("W")) == 1
        assert (await engine.reconcile("W")).balanced

    async def test_receive_rejects_non_positive(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.receive("W", "A-01-01", 0)

    async def test_receive_unknown_sku(self, engine):
        with pytest.raises(NotFoundError):
            await engine.receive("NOPE", "A-01-01", 3)

    async def test_adjust_down(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        unit = await engine.adjust("W", "A-01-01", -4, reason="Cycle count")
        assert unit.quantity == 6

    async def test_adjust_cannot_go_below_reserved(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 7)
        with pytest.raises(InsufficientAvailabilityError):
            await engine.adjust("W", "A-01-01", -4, reason="Damaged")
        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved) == (10, 7)

    async def test_adjust_cannot_go_negative(self, engine, stock):
        await stock(("W", "A-01-01", 3))
        with pytest.raises(InsufficientAvailabilityError):
            await engine.adjust("W", "A-01-01", -4, reason="Lost")

    async def test_adjust_rejects_zero_and_blank_reason(self, engine, stock):
        await stock(("W", "A-01-01", 3))
        with pytest.raises(InvalidRequestError):
            await engine.adjust("W", "A-01-01", 0, reason="Nothing")
        with pytest.raises(InvalidRequestError):
            await engine.adjust("W", "A-01-01", 1, reason="  ")

    async def test_negative_adjust_on_missing_unit(self, engine):
        with pytest.raises(NotFoundError):
            await engine.adjust("W", "A-01-01", -1, reason="Cycle count")


class TestReserve:
    async def test_reserve_increments_reserved(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        unit = await engine.reserve("W", "A-01-01", 4, order_id="ORD-1")
        assert unit.quantity == 10
        assert unit.reserved == 4
        assert unit.available == 6

    async def test_reserve_more_than_available_changes_nothing(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 5, order_id="ORD-1")
        before, before_total = await engine.get_inventory_transactions(sku="W")

        with pytest.raises(InsufficientAvailabilityError):
            await engine.reserve("W", "A-01-01", 8, order_id="ORD-2")

        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved, unit.available) == (10, 5, 5)
        _, after_total = await engine.get_inventory_transactions(sku="W")
        assert after_total == before_total

    async def test_reserve_unknown_unit(self, engine):
        with pytest.raises(NotFoundError):
            await engine.reserve("W", "C-03-01", 1)


class TestDeductAndRelease:
    async def test_reserve_then_deduct_conserves_stock(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 6, order_id="ORD-1")
        unit = await engine.deduct("W", "A-01-01", 6, order_id="ORD-1")
        assert unit.quantity == 4
        assert unit.reserved == 0

    async def test_deduct_without_reservation(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 2)
        with pytest.raises(InvalidStateError):
            await engine.deduct("W", "A-01-01", 3)
        unit = await engine.get_unit("W", "A-01-01")
        assert (unit.quantity, unit.reserved) == (10, 2)

    async def test_deduct_emits_accounting_event(self, engine, stock, recorder):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 3, order_id="ORD-9")
        await engine.deduct("W", "A-01-01", 3, order_id="ORD-9")

        events = recorder.of_type(EventType.INVENTORY_DEDUCTED)
        assert len(events) == 1
        assert events[0].order_id == "ORD-9"
        assert events[0].payload["quantity"] == 3
        assert events[0].payload["sku"] == "W"

    async def test_failed_deduct_emits_nothing(self, engine, stock, recorder):
        await stock(("W", "A-01-01", 10))
        with pytest.raises(InvalidStateError):
            await engine.deduct("W", "A-01-01", 1)
        assert recorder.of_type(EventType.INVENTORY_DEDUCTED) == []

    async def test_release_keeps_stock_on_hand(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 6)
        unit = await engine.release("W", "A-01-01", 4, reason="Cancelled")
        assert unit.quantity == 10
        assert unit.reserved == 2

    async def test_release_more_than_reserved(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 1)
        with pytest.raises(InvalidStateError):
            await engine.release("W", "A-01-01", 2)


class TestTransactionTrail:
    async def test_each_mutation_appends_one_signed_record(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 4, order_id="ORD-1")
        await engine.deduct("W", "A-01-01", 3, order_id="ORD-1")
        await engine.release("W", "A-01-01", 1, order_id="ORD-1")
        await engine.adjust("W", "A-01-01", -2, reason="Damaged")

        rows, total = await engine.get_inventory_transactions(sku="W")
        assert total == 5
        assert [(r.transaction_type, r.quantity_delta, r.reserved_delta) for r in rows] == [
            ("RECEIPT", 10, 0),
            ("RESERVATION", 0, 4),
            ("DEDUCTION", -3, -3),
            ("CANCELLATION", 0, -1),
            ("ADJUSTMENT", -2, 0),
        ]

    async def test_filter_by_order_and_type(self, engine, stock):
        await stock(("W", "A-01-01", 10))
        await engine.reserve("W", "A-01-01", 2, order_id="ORD-1")
        await engine.reserve("W", "A-01-01", 3, order_id="ORD-2")

        rows, total = await engine.get_inventory_transactions(order_id="ORD-2")
        assert total == 1
        assert rows[0].reserved_delta == 3

        rows, total = await engine.get_inventory_transactions(transaction_type="RESERVATION")
        assert total == 2

    async def test_reconcile_balanced(self, engine, stock):
        await stock(("W", "A-01-01", 10), ("W", "B-02-01", 5))
        await engine.reserve("W", "A-01-01", 4)
        await engine.deduct("W", "A-01-01", 2)
        await engine.release("W", "A-01-01", 1)
        await engine.adjust("W", "B-02-01", 3, reason="Found")

        report = await engine.reconcile("W")
        assert report.balanced
        assert report.actual_quantity == 16
        assert report.actual_reserved == 1
        assert report.ledger_quantity == report.actual_quantity
        assert report.ledger_reserved == report.actual_reserved
        assert report.transaction_count == 6

    async def test_reconcile_unknown_sku_is_empty_and_balanced(self, engine):
        report = await engine.reconcile("Z")
        assert report.balanced
        assert report.transaction_count == 0


class TestReadPath:
    async def test_locate_stock_orders_by_available_then_bin(self, engine, stock):
        await stock(("W", "B-02-01", 5), ("W", "A-01-01", 5), ("W", "C-03-01", 9))
        await engine.reserve("W", "C-03-01", 9)

        locations = await engine.locate_stock("W")
        assert [(l.bin_code, l.available) for l in locations] == [
            ("A-01-01", 5),
            ("B-02-01", 5),
        ]

    async def test_inactive_bins_are_hidden(self, engine, stock):
        await stock(("W", "A-01-01", 5), ("W", "B-02-01", 7))
        await engine.set_bin_active("B-02-01", False)

        assert [l.bin_code for l in await engine.locate_stock("W")] == ["A-01-01"]
        assert await engine.total_available("W") == 5

    async def test_total_available(self, engine, stock):
        await stock(("W", "A-01-01", 5), ("W", "B-02-01", 7))
        await engine.reserve("W", "B-02-01", 2)
        assert await engine.total_available("W") == 10
        assert await engine.total_available("X") == 0

    async def test_low_stock(self, engine, stock):
        await stock(("W", "A-01-01", 50), ("X", "A-01-02", 4))
        report = await engine.low_stock()
        assert report.threshold == 10
        assert [(e.sku, e.bin_code) for e in report.entries] == [("X", "A-01-02")]

        report = await engine.low_stock(threshold=100)
        assert len(report.entries) == 2

    async def test_get_unit_missing(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_unit("W", "A-01-01")
