"""
Pick Task Allocation Service.

Turns a claimed order into executable pick tasks and runs them:
1. Lock the order row, check status and picker capacity
2. Lock every candidate inventory row for the order's SKUs, by (bin, sku)
3. Plan each item greedily: largest available bin first, ties by bin code,
   splitting across bins only when no single bin covers the quantity
4. Create one PickTask per (item, bin) and reserve its stock
5. Move the order to PICKING

If any item cannot be covered from all active bins combined, nothing is
written and AllocationShortfall is raised for the caller to backorder.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from fractions import Fraction
from math import floor
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import Settings, get_settings
from fulfillment.core.exceptions import (
    AlreadyClaimedError,
    CapacityExceededError,
    InsufficientAvailabilityError,
    InvalidRequestError,
    InvalidStateTransitionError,
    NotFoundError,
    OverPickError,
)
from fulfillment.core.identifiers import new_id, PICK_TASK_PREFIX
from fulfillment.models.order import Order, OrderItem, OrderStatus
from fulfillment.models.pick_task import PickTask, TaskStatus, OPEN_TASK_STATUSES
from fulfillment.schemas.inventory import StockLocation
from fulfillment.schemas.pick_task import PickerPerformance, PickingProgress
from fulfillment.services.audit_service import AuditService
from fulfillment.services.inventory_service import InventoryLedger
from fulfillment.services.notification_service import EventOutbox, EventType
from fulfillment.services.order_service import OrderService


logger = logging.getLogger(__name__)


class AllocationShortfall(InsufficientAvailabilityError):
    """At least one item cannot be covered by the stock of all active bins."""

    def __init__(self, order_id: str, shortages: Dict[str, int]):
        self.order_id = order_id
        self.shortages = shortages
        super().__init__(
            f"Insufficient inventory to allocate order {order_id}",
            {"order_id": order_id, "shortages": shortages},
        )


def plan_allocation(
    quantity: int,
    candidates: Sequence[StockLocation],
) -> Optional[List[Tuple[str, int]]]:
    """
    Choose bins for one item.

    Largest available bin first with ties broken by bin code. The first bin
    alone is used when it covers the quantity; otherwise each bin is drained
    in turn until the quantity is met.

    Returns:
        [(bin_code, quantity), ...] or None when total availability is short

    Examples:
        >>> plan_allocation(8, [StockLocation(bin_code="A-01-01", available=5),
        ...                     StockLocation(bin_code="B-02-01", available=5)])
        [('A-01-01', 5), ('B-02-01', 3)]
    """
    if quantity <= 0:
        return []
    usable = sorted(
        (c for c in candidates if c.available > 0),
        key=lambda c: (-c.available, c.bin_code),
    )
    if sum(c.available for c in usable) < quantity:
        return None

    plan = []
    remaining = quantity
    for candidate in usable:
        take = min(candidate.available, remaining)
        plan.append((candidate.bin_code, take))
        remaining -= take
        if remaining == 0:
            break
    return plan


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PickTaskAllocator:
    """Claims orders for picking and drives their pick tasks to completion."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        orders: Optional[OrderService] = None,
        outbox: Optional[EventOutbox] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.outbox = outbox if outbox is not None else EventOutbox()
        self.orders = orders or OrderService(db, self.settings, outbox=self.outbox)
        self.audit: AuditService = self.orders.audit
        self.ledger: InventoryLedger = self.orders.ledger
        self.state_machine = self.orders.state_machine

    # ==================== CLAIM ====================

    async def claim_order(self, order_id: str, picker_id: str) -> Tuple[Order, List[PickTask]]:
        """
        Claim a PENDING order for a picker and generate its pick tasks.

        Raises:
            AlreadyClaimedError: another picker got there first
            CapacityExceededError: picker already holds MAX_ORDERS_PER_PICKER orders
            AllocationShortfall: stock cannot cover some item; nothing written
        """
        if not (picker_id or "").strip():
            raise InvalidRequestError("picker_id is required")

        order = await self.orders.lock_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            if order.status == OrderStatus.PICKING.value or order.picker_id:
                logger.warning(
                    "Claim rejected for %s by %s: already claimed by %s",
                    order_id, picker_id, order.picker_id,
                )
                raise AlreadyClaimedError(
                    f"Order {order_id} has already been claimed",
                    {"order_id": order_id, "picker_id": order.picker_id},
                )
            raise InvalidStateTransitionError(
                f"Order {order_id} cannot be claimed in status {order.status}",
                current_status=order.status,
                target_status=OrderStatus.PICKING.value,
            )

        active = await self.orders.count_active_orders(picker_id=picker_id)
        if active >= self.settings.MAX_ORDERS_PER_PICKER:
            logger.warning("Picker %s at capacity (%d)", picker_id, active)
            raise CapacityExceededError(
                f"Picker {picker_id} already has {active} active orders",
                {"picker_id": picker_id, "active": active,
                 "limit": self.settings.MAX_ORDERS_PER_PICKER},
            )

        plans = await self._plan_items(order, list(order.items))
        tasks = await self._create_tasks(order, plans, picker_id)

        order.picker_id = picker_id
        await self.state_machine.transition(
            order, OrderStatus.PICKING, actor=picker_id, reason="Claimed for picking"
        )
        await self.db.flush()
        logger.info("Order %s claimed by %s: %d pick tasks", order_id, picker_id, len(tasks))
        return order, tasks

    async def _plan_items(
        self,
        order: Order,
        items: List[OrderItem],
        quantities: Optional[Dict[str, int]] = None,
    ) -> List[Tuple[OrderItem, List[Tuple[str, int]]]]:
        """Lock candidate stock and plan every item, or raise AllocationShortfall."""
        quantities = quantities or {item.id: item.quantity for item in items}
        units = await self.ledger.lock_units_for_skus(item.sku_code for item in items)

        # Availability still unplanned, shared by items of the same SKU
        remaining: Dict[str, Dict[str, int]] = defaultdict(dict)
        for unit in units:
            if unit.available > 0:
                remaining[unit.sku_code][unit.bin_code] = unit.available

        plans = []
        short = False
        for item in items:
            wanted = quantities.get(item.id, 0)
            if wanted <= 0:
                continue
            stock = remaining[item.sku_code]
            plan = plan_allocation(
                wanted,
                [StockLocation(bin_code=b, available=a) for b, a in stock.items()],
            )
            if plan is None:
                short = True
                continue
            for bin_code, qty in plan:
                stock[bin_code] -= qty
            plans.append((item, plan))

        if short:
            demand: Dict[str, int] = defaultdict(int)
            for item in items:
                demand[item.sku_code] += quantities.get(item.id, 0)
            shortages = {}
            for sku, needed in sorted(demand.items()):
                on_hand = sum(u.available for u in units if u.sku_code == sku and u.available > 0)
                if needed > on_hand:
                    shortages[sku] = needed - on_hand
            logger.warning("Allocation short for order %s: %s", order.id, shortages)
            raise AllocationShortfall(order.id, shortages)
        return plans

    async def _create_tasks(
        self,
        order: Order,
        plans: List[Tuple[OrderItem, List[Tuple[str, int]]]],
        picker_id: str,
    ) -> List[PickTask]:
        existing = await self.orders.get_tasks(order.id)
        sequence = max((t.sequence for t in existing), default=0)

        tasks = []
        for item, plan in plans:
            if item.target_bin is None:
                item.target_bin = plan[0][0]
            for bin_code, qty in plan:
                sequence += 1
                task = PickTask(
                    id=new_id(PICK_TASK_PREFIX),
                    sequence=sequence,
                    order_id=order.id,
                    order_item_id=item.id,
                    sku_code=item.sku_code,
                    bin_code=bin_code,
                    quantity=qty,
                    picked_quantity=0,
                    status=TaskStatus.PENDING.value,
                    picker_id=picker_id,
                )
                self.db.add(task)
                tasks.append(task)

        for task in sorted(tasks, key=lambda t: (t.bin_code, t.sku_code, t.sequence)):
            await self.ledger.reserve(
                task.sku_code, task.bin_code, task.quantity,
                order_id=order.id, actor=picker_id,
            )
        await self.db.flush()
        return tasks

    async def reallocate_remaining(self, order_id: str, picker_id: str) -> List[PickTask]:
        """
        New tasks for units left unpicked by short picks or skips.

        Only quantity not already covered by an open task is planned.
        """
        order = await self._lock_for_picker(order_id, picker_id)
        tasks = await self.orders.get_tasks(order_id)

        covered: Dict[str, int] = defaultdict(int)
        for task in tasks:
            covered[task.order_item_id] += task.outstanding_reservation
        quantities = {
            item.id: item.remaining_quantity - covered[item.id]
            for item in order.items
        }
        items = [item for item in order.items if quantities[item.id] > 0]
        if not items:
            return []

        plans = await self._plan_items(order, items, quantities)
        new_tasks = await self._create_tasks(order, plans, picker_id)
        logger.info("Reallocated %d tasks for order %s", len(new_tasks), order_id)
        return new_tasks

    # ==================== TASK EXECUTION ====================

    async def _lock_for_picker(
        self,
        order_id: str,
        picker_id: Optional[str],
    ) -> Order:
        order = await self.orders.lock_order(order_id)
        if order.status != OrderStatus.PICKING.value:
            raise InvalidStateTransitionError(
                f"Order {order_id} is not being picked, current status: {order.status}",
                current_status=order.status,
            )
        if picker_id is not None and order.picker_id != picker_id:
            logger.warning(
                "Picker %s rejected on order %s owned by %s", picker_id, order_id, order.picker_id
            )
            raise AlreadyClaimedError(
                f"Order {order_id} is claimed by another picker",
                {"order_id": order_id, "picker_id": order.picker_id},
            )
        return order

    async def _lock_task(self, task_id: str, picker_id: Optional[str]) -> Tuple[Order, PickTask]:
        """Lock the task's order, then reload the task under that lock."""
        task = await self.db.get(PickTask, task_id)
        if task is None:
            raise NotFoundError("PickTask", task_id)

        order = await self._lock_for_picker(task.order_id, picker_id)
        result = await self.db.execute(
            select(PickTask)
            .where(PickTask.id == task_id)
            .execution_options(populate_existing=True)
        )
        task = result.scalar_one()
        if not task.is_open:
            raise InvalidStateTransitionError(
                f"Pick task {task_id} is already {task.status}",
                current_status=task.status,
            )
        return order, task

    async def start_task(self, task_id: str, picker_id: str) -> PickTask:
        """Picker arrived at the bin."""
        _, task = await self._lock_task(task_id, picker_id)
        if task.status != TaskStatus.PENDING.value:
            raise InvalidStateTransitionError(
                f"Pick task {task_id} is already {task.status}",
                current_status=task.status,
                target_status=TaskStatus.IN_PROGRESS.value,
            )
        task.status = TaskStatus.IN_PROGRESS.value
        task.started_at = datetime.now(timezone.utc)
        await self.db.flush()
        return task

    async def complete_task(
        self,
        task_id: str,
        picked_quantity: int,
        picker_id: Optional[str] = None,
    ) -> Tuple[Order, PickTask]:
        """
        Record a pick and deduct the picked units.

        A pick below the task quantity is a short pick: the unpicked
        remainder of the reservation is released and a PICK_EXCEPTION is
        raised for supervisor review.

        Raises:
            OverPickError: picked_quantity exceeds what the task still needs
        """
        if picked_quantity is None or picked_quantity < 0:
            raise InvalidRequestError(
                "Picked quantity cannot be negative", {"picked_quantity": picked_quantity}
            )

        order, task = await self._lock_task(task_id, picker_id)
        outstanding = task.quantity - task.picked_quantity
        if picked_quantity > outstanding:
            logger.warning(
                "Over-pick on task %s: picked=%d outstanding=%d", task_id, picked_quantity, outstanding
            )
            raise OverPickError(
                f"Picked {picked_quantity} but task {task_id} only needs {outstanding}",
                {"task_id": task_id, "picked_quantity": picked_quantity, "outstanding": outstanding},
            )

        actor = picker_id or order.picker_id
        if picked_quantity > 0:
            await self.ledger.deduct(
                task.sku_code, task.bin_code, picked_quantity,
                order_id=order.id, actor=actor,
            )
        shortfall = outstanding - picked_quantity
        if shortfall > 0:
            await self.ledger.release(
                task.sku_code, task.bin_code, shortfall,
                order_id=order.id, actor=actor, reason="Short pick",
            )
            self.outbox.emit(
                EventType.PICK_EXCEPTION,
                order_id=order.id,
                task_id=task.id,
                sku=task.sku_code,
                bin_code=task.bin_code,
                kind="SHORT_PICK",
                expected=outstanding,
                picked=picked_quantity,
            )

        now = datetime.now(timezone.utc)
        task.picked_quantity += picked_quantity
        task.status = TaskStatus.COMPLETED.value
        task.completed_at = now
        if task.started_at is None:
            task.started_at = now

        item = next(i for i in order.items if i.id == task.order_item_id)
        item.picked_quantity += picked_quantity

        self.state_machine.recompute(order)
        await self.state_machine.advance_if_picked(order, actor=actor)
        await self.db.flush()
        logger.info(
            "Task %s completed: %d/%d of %s at %s (order %s progress %d%%)",
            task.id, task.picked_quantity, task.quantity, task.sku_code, task.bin_code,
            order.id, order.progress,
        )
        return order, task

    async def skip_task(
        self,
        task_id: str,
        reason: str,
        picker_id: Optional[str] = None,
    ) -> Tuple[Order, PickTask]:
        """Give up on a task; its reservation is released and a supervisor is notified."""
        if not (reason or "").strip():
            raise InvalidRequestError("A reason is required to skip a pick task")

        order, task = await self._lock_task(task_id, picker_id)
        outstanding = task.outstanding_reservation
        if outstanding > 0:
            await self.ledger.release(
                task.sku_code, task.bin_code, outstanding,
                order_id=order.id, actor=picker_id or order.picker_id, reason=reason.strip(),
            )

        task.status = TaskStatus.SKIPPED.value
        task.skipped_at = datetime.now(timezone.utc)
        task.skip_reason = reason.strip()
        await self.db.flush()

        self.outbox.emit(
            EventType.PICK_EXCEPTION,
            order_id=order.id,
            task_id=task.id,
            sku=task.sku_code,
            bin_code=task.bin_code,
            kind="SKIPPED",
            reason=task.skip_reason,
        )
        logger.warning("Task %s skipped on order %s: %s", task.id, order.id, task.skip_reason)
        return order, task

    # ==================== QUERIES ====================

    async def get_order_tasks(self, order_id: str) -> List[PickTask]:
        await self.orders.get_order(order_id)
        return await self.orders.get_tasks(order_id)

    async def get_next_task(self, order_id: str) -> Optional[PickTask]:
        """First PENDING task in creation order."""
        result = await self.db.execute(
            select(PickTask)
            .where(
                and_(
                    PickTask.order_id == order_id,
                    PickTask.status == TaskStatus.PENDING.value,
                )
            )
            .order_by(PickTask.sequence)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_picker_active_tasks(self, picker_id: str) -> List[PickTask]:
        result = await self.db.execute(
            select(PickTask)
            .where(
                and_(
                    PickTask.picker_id == picker_id,
                    PickTask.status.in_(OPEN_TASK_STATUSES),
                )
            )
            .order_by(PickTask.created_at, PickTask.sequence)
        )
        return list(result.scalars().all())

    async def get_picking_progress(self, order_id: str) -> PickingProgress:
        tasks = await self.get_order_tasks(order_id)
        counts = defaultdict(int)
        for task in tasks:
            counts[task.status] += 1

        total = len(tasks)
        completed = counts[TaskStatus.COMPLETED.value]
        percentage = floor(Fraction(completed * 100, total) + Fraction(1, 2)) if total else 0
        return PickingProgress(
            total=total,
            completed=completed,
            skipped=counts[TaskStatus.SKIPPED.value],
            in_progress=counts[TaskStatus.IN_PROGRESS.value],
            pending=counts[TaskStatus.PENDING.value],
            percentage=percentage,
        )

    async def get_picker_performance(
        self,
        picker_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PickerPerformance:
        """Throughput of one picker over tasks created in [start, end]."""
        conditions = [PickTask.picker_id == picker_id]
        if start:
            conditions.append(PickTask.created_at >= start)
        if end:
            conditions.append(PickTask.created_at <= end)

        result = await self.db.execute(select(PickTask).where(and_(*conditions)))
        tasks = list(result.scalars().all())
        completed = [t for t in tasks if t.status == TaskStatus.COMPLETED.value]

        durations = [
            (_as_utc(t.completed_at) - _as_utc(t.started_at)).total_seconds()
            for t in completed
            if t.started_at and t.completed_at
        ]
        average = sum(durations) / len(durations) if durations else 0.0

        return PickerPerformance(
            picker_id=picker_id,
            tasks_completed=len(completed),
            tasks_total=len(tasks),
            average_seconds_per_task=round(average, 2),
            total_units_picked=sum(t.picked_quantity for t in completed),
        )
