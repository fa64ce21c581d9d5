from typing import Dict, List, Optional, Tuple
from datetime import datetime, timezone
from fractions import Fraction
from collections import defaultdict
import logging

from sqlalchemy import select, func, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import Settings, get_settings
from fulfillment.core.enum_utils import get_enum_value
from fulfillment.core.exceptions import (
    AlreadyClaimedError,
    CapacityExceededError,
    InsufficientAvailabilityError,
    InvalidRequestError,
    InvalidStateTransitionError,
    NotFoundError,
    OverPickError,
)
from fulfillment.core.identifiers import new_id, ORDER_PREFIX, ORDER_ITEM_PREFIX
from fulfillment.models.catalog import Sku
from fulfillment.models.order import (
    Order, OrderItem, OrderStateChange, OrderStatus, OrderItemStatus, PRIORITY_RANK,
)
from fulfillment.models.pick_task import PickTask, TaskStatus, OPEN_TASK_STATUSES
from fulfillment.schemas.order import OrderCreate, OrderQueueFilter
from fulfillment.services.audit_service import AuditService
from fulfillment.services.inventory_service import InventoryLedger
from fulfillment.services.notification_service import EventOutbox, EventType
from fulfillment.services.order_state_machine import OrderStateMachine, can_cancel

logger = logging.getLogger(__name__)


class OrderService:
    """Order headers, line items and every order-level lifecycle operation."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditService] = None,
        ledger: Optional[InventoryLedger] = None,
        outbox: Optional[EventOutbox] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditService(db)
        self.outbox = outbox if outbox is not None else EventOutbox()
        self.ledger = ledger or InventoryLedger(db, self.audit, self.outbox)
        self.state_machine = OrderStateMachine(self.audit)

    # ==================== LOOKUP ====================

    async def get_order(self, order_id: str) -> Order:
        """Get order with its items."""
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def lock_order(self, order_id: str) -> Order:
        """
        SELECT ... FOR UPDATE on the order row.

        Always the first lock taken by an order-level operation; inventory
        rows are locked after it.
        """
        await self.db.flush()
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order_status(self, order_id: str) -> Tuple[Order, List[OrderStateChange]]:
        """Current status and progress with the full transition history."""
        order = await self.get_order(order_id)
        history = await self.audit.get_order_history(order_id)
        return order, history

    async def get_order_queue(self, filters: OrderQueueFilter) -> Tuple[List[Order], int]:
        """
        Operator queue: highest priority first, then oldest first.

        A PENDING queue without a picker filter only lists unassigned orders.
        """
        conditions = []
        if filters.status:
            conditions.append(Order.status == get_enum_value(filters.status))
        if filters.priority:
            conditions.append(Order.priority == get_enum_value(filters.priority))
        if filters.picker_id:
            conditions.append(Order.picker_id == filters.picker_id)
        elif get_enum_value(filters.status) == OrderStatus.PENDING.value:
            conditions.append(Order.picker_id.is_(None))

        query = select(Order)
        if conditions:
            query = query.where(and_(*conditions))

        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query)

        priority_rank = case(PRIORITY_RANK, value=Order.priority, else_=0)
        query = (
            query.order_by(priority_rank.desc(), Order.created_at, Order.id)
            .offset(filters.offset)
            .limit(filters.limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total or 0

    async def get_picker_active_orders(self, picker_id: str) -> List[Order]:
        """Orders the picker currently holds in PICKING."""
        result = await self.db.execute(
            select(Order)
            .where(
                and_(
                    Order.picker_id == picker_id,
                    Order.status == OrderStatus.PICKING.value,
                )
            )
            .order_by(Order.claimed_at, Order.id)
        )
        return list(result.scalars().all())

    async def count_active_orders(
        self,
        picker_id: Optional[str] = None,
        packer_id: Optional[str] = None,
    ) -> int:
        """In-flight orders held by a picker (PICKING) or a packer (PACKING)."""
        if picker_id is not None:
            condition = and_(Order.picker_id == picker_id, Order.status == OrderStatus.PICKING.value)
        elif packer_id is not None:
            condition = and_(Order.packer_id == packer_id, Order.status == OrderStatus.PACKING.value)
        else:
            raise InvalidRequestError("picker_id or packer_id is required")
        return await self.db.scalar(select(func.count(Order.id)).where(condition)) or 0

    async def get_tasks(self, order_id: str) -> List[PickTask]:
        result = await self.db.execute(
            select(PickTask)
            .where(PickTask.order_id == order_id)
            .order_by(PickTask.sequence)
        )
        return list(result.scalars().all())

    # ==================== CREATION ====================

    async def create_order(self, data: OrderCreate, actor: Optional[str] = None) -> Order:
        """
        Persist a new PENDING order.

        Every SKU must exist in the catalog and be active.
        """
        sku_codes = {item.sku for item in data.items}
        result = await self.db.execute(select(Sku).where(Sku.code.in_(sku_codes)))
        known = {sku.code: sku for sku in result.scalars().all()}

        missing = sorted(sku_codes - set(known))
        if missing:
            raise NotFoundError("SKU", ", ".join(missing))
        inactive = sorted(code for code, sku in known.items() if not sku.is_active)
        if inactive:
            raise InvalidRequestError(
                f"Inactive SKU(s) cannot be ordered: {', '.join(inactive)}",
                {"inactive_skus": inactive},
            )

        order = Order(
            id=new_id(ORDER_PREFIX),
            customer_id=data.customer_id,
            priority=get_enum_value(data.priority),
            status=OrderStatus.PENDING.value,
            progress=0,
            items=[
                OrderItem(
                    id=new_id(ORDER_ITEM_PREFIX),
                    line_number=line_number,
                    sku_code=item.sku,
                    quantity=item.quantity,
                    picked_quantity=0,
                    verified_quantity=0,
                    status=OrderItemStatus.PENDING.value,
                )
                for line_number, item in enumerate(data.items, start=1)
            ],
        )
        self.db.add(order)
        await self.db.flush()

        logger.info(
            "Created order %s for customer %s (%d items, %s) by %s",
            order.id, order.customer_id, len(order.items), order.priority, actor or "system",
        )
        return order

    # ==================== PICKING HANDBACK ====================

    async def unclaim_order(
        self,
        order_id: str,
        picker_id: str,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Hand a PICKING order back to the queue.

        Only the owning picker may unclaim, and only before any task has
        been completed (deducted stock is never silently returned).
        """
        order = await self.lock_order(order_id)
        if order.status == OrderStatus.PICKING.value and order.picker_id != picker_id:
            raise AlreadyClaimedError(
                f"Order {order_id} is claimed by another picker",
                {"order_id": order_id, "picker_id": order.picker_id},
            )

        tasks = await self.get_tasks(order_id)
        if any(task.status == TaskStatus.COMPLETED.value for task in tasks):
            raise InvalidStateTransitionError(
                f"Order {order_id} has completed pick tasks and cannot be unclaimed",
                current_status=order.status,
                target_status=OrderStatus.PENDING.value,
            )

        await self.state_machine.transition(
            order, OrderStatus.PENDING, actor=picker_id, reason=reason or "Unclaimed"
        )
        await self._close_open_tasks(order, tasks, reason or "Order unclaimed", picker_id)
        order.picker_id = None
        order.claimed_at = None
        for item in order.items:
            item.target_bin = None
        self.state_machine.recompute(order)
        await self.db.flush()
        return order

    # ==================== PACKING ====================

    async def claim_for_packing(self, order_id: str, packer_id: str) -> Order:
        """Assign a PICKED order to a packer, within the packer's capacity."""
        order = await self.lock_order(order_id)

        if order.status == OrderStatus.PACKING.value:
            if order.packer_id == packer_id:
                return order
            raise AlreadyClaimedError(
                f"Order {order_id} is already being packed by another packer",
                {"order_id": order_id, "packer_id": order.packer_id},
            )
        if order.status != OrderStatus.PICKED.value:
            raise InvalidStateTransitionError(
                f"Order {order_id} must be PICKED to start packing, current status: {order.status}",
                current_status=order.status,
                target_status=OrderStatus.PACKING.value,
            )

        active = await self.count_active_orders(packer_id=packer_id)
        if active >= self.settings.MAX_ORDERS_PER_PACKER:
            logger.warning("Packer %s at capacity (%d)", packer_id, active)
            raise CapacityExceededError(
                f"Packer {packer_id} already has {active} orders in packing",
                {"packer_id": packer_id, "active": active,
                 "limit": self.settings.MAX_ORDERS_PER_PACKER},
            )

        await self.state_machine.transition(
            order, OrderStatus.PACKING, actor=packer_id, reason="Claimed for packing"
        )
        order.packer_id = packer_id
        await self.db.flush()
        return order

    async def verify_item(
        self,
        order_id: str,
        order_item_id: str,
        quantity: int,
        packer_id: str,
    ) -> Order:
        """
        Confirm picked units at the packing station.

        The order becomes PACKED once every item is fully verified.
        """
        if quantity is None or quantity <= 0:
            raise InvalidRequestError("Verified quantity must be positive", {"quantity": quantity})

        order = await self.lock_order(order_id)
        if order.status != OrderStatus.PACKING.value:
            raise InvalidStateTransitionError(
                f"Order {order_id} is not being packed, current status: {order.status}",
                current_status=order.status,
                target_status=OrderStatus.PACKED.value,
            )
        if order.packer_id != packer_id:
            raise AlreadyClaimedError(
                f"Order {order_id} is being packed by another packer",
                {"order_id": order_id, "packer_id": order.packer_id},
            )

        item = next((i for i in order.items if i.id == order_item_id), None)
        if item is None:
            raise NotFoundError("OrderItem", order_item_id)

        if item.verified_quantity + quantity > item.picked_quantity:
            raise OverPickError(
                f"Cannot verify {quantity} of {item.sku_code}: "
                f"{item.picked_quantity - item.verified_quantity} left to verify",
                {"order_item_id": item.id, "requested": quantity,
                 "picked": item.picked_quantity, "verified": item.verified_quantity},
            )

        item.verified_quantity += quantity
        await self.state_machine.advance_if_packed(order, actor=packer_id)
        await self.db.flush()
        return order

    async def undo_verification(
        self,
        order_id: str,
        order_item_id: str,
        quantity: int,
        packer_id: str,
        reason: Optional[str] = None,
    ) -> Order:
        """Take back units verified by mistake on a PACKING order."""
        if quantity is None or quantity <= 0:
            raise InvalidRequestError("Quantity to undo must be positive", {"quantity": quantity})

        order = await self._lock_packing_order(order_id, packer_id, OrderStatus.PACKING)
        item = next((i for i in order.items if i.id == order_item_id), None)
        if item is None:
            raise NotFoundError("OrderItem", order_item_id)

        if quantity > item.verified_quantity:
            raise InvalidRequestError(
                f"Cannot undo {quantity} of {item.sku_code}: only {item.verified_quantity} verified",
                {"order_item_id": item.id, "requested": quantity,
                 "verified": item.verified_quantity},
            )

        item.verified_quantity -= quantity
        await self.db.flush()
        logger.info(
            "Undid verification of %d x %s on order %s by %s (%s)",
            quantity, item.sku_code, order_id, packer_id, reason or "no reason given",
        )
        return order

    async def unclaim_packing_order(
        self,
        order_id: str,
        packer_id: str,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Hand a PACKING order back to the packing queue.

        Verification starts over: every item's verified quantity is reset.
        """
        order = await self._lock_packing_order(order_id, packer_id, OrderStatus.PICKED)

        await self.state_machine.transition(
            order, OrderStatus.PICKED, actor=packer_id, reason=reason or "Unclaimed from packing"
        )
        for item in order.items:
            item.verified_quantity = 0
        order.packer_id = None
        await self.db.flush()
        return order

    async def get_packing_queue(self, filters: OrderQueueFilter) -> Tuple[List[Order], int]:
        """PICKED orders waiting for a packer, in queue order."""
        return await self.get_order_queue(filters.model_copy(update={"status": OrderStatus.PICKED}))

    async def _lock_packing_order(
        self, order_id: str, packer_id: str, target: OrderStatus,
    ) -> Order:
        order = await self.lock_order(order_id)
        if order.status != OrderStatus.PACKING.value:
            raise InvalidStateTransitionError(
                f"Order {order_id} is not being packed, current status: {order.status}",
                current_status=order.status,
                target_status=target.value,
            )
        if order.packer_id != packer_id:
            raise AlreadyClaimedError(
                f"Order {order_id} is being packed by another packer",
                {"order_id": order_id, "packer_id": order.packer_id},
            )
        return order

    # ==================== SHIPPING ====================

    async def ship_order(self, order_id: str, actor: str, carrier_reference: str) -> Order:
        """Record the carrier handoff of a PACKED order."""
        if not (carrier_reference or "").strip():
            raise InvalidRequestError("A carrier reference is required to ship an order")

        order = await self.lock_order(order_id)
        await self.state_machine.transition(
            order, OrderStatus.SHIPPED, actor=actor,
            reason=f"Handed to carrier ({carrier_reference.strip()})",
        )
        order.carrier_reference = carrier_reference.strip()
        await self.db.flush()

        self.outbox.emit(
            EventType.ORDER_SHIPPED,
            order_id=order.id,
            customer_id=order.customer_id,
            carrier_reference=order.carrier_reference,
        )
        return order

    # ==================== CANCELLATION ====================

    async def cancel_order(
        self,
        order_id: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel a non-terminal order.

        Open pick tasks are SKIPPED and their reservations released.
        Completed tasks keep their deductions; reversing them takes an
        explicit inventory adjustment.
        """
        order = await self.lock_order(order_id)
        if not can_cancel(order.status):
            raise InvalidStateTransitionError(
                f"Order in '{order.status}' status cannot be cancelled. This is a terminal state.",
                current_status=order.status,
                target_status=OrderStatus.CANCELLED.value,
            )

        picked = sum(item.picked_quantity for item in order.items)
        requested = sum(item.quantity for item in order.items)
        limit = Fraction(str(self.settings.CANCEL_MAX_PICKED_RATIO))
        if requested and Fraction(picked, requested) > limit:
            logger.warning(
                "Cancel rejected for %s: %d of %d units already picked", order_id, picked, requested
            )
            raise InvalidStateTransitionError(
                f"Order {order_id} has {picked} of {requested} units picked, "
                f"above the cancellation limit",
                current_status=order.status,
                target_status=OrderStatus.CANCELLED.value,
            )

        tasks = await self.get_tasks(order_id)
        await self._close_open_tasks(order, tasks, "Order cancelled", actor)

        await self.state_machine.transition(
            order, OrderStatus.CANCELLED, actor=actor, reason=reason or "Cancelled"
        )
        order.cancellation_reason = reason
        await self.db.flush()
        return order

    async def _close_open_tasks(
        self,
        order: Order,
        tasks: List[PickTask],
        reason: str,
        actor: Optional[str],
    ) -> None:
        """Release outstanding reservations and SKIP every open task, in lock order."""
        now = datetime.now(timezone.utc)
        open_tasks = sorted(
            (task for task in tasks if task.status in OPEN_TASK_STATUSES),
            key=lambda task: (task.bin_code, task.sku_code, task.sequence),
        )
        for task in open_tasks:
            outstanding = task.outstanding_reservation
            if outstanding > 0:
                await self.ledger.release(
                    task.sku_code,
                    task.bin_code,
                    outstanding,
                    order_id=order.id,
                    actor=actor,
                    reason=reason,
                )
            task.status = TaskStatus.SKIPPED.value
            task.skipped_at = now
            task.skip_reason = reason

    # ==================== BACKORDER ====================

    def demand_by_sku(self, order: Order) -> Dict[str, int]:
        """Outstanding units per SKU across the order's items."""
        demand: Dict[str, int] = defaultdict(int)
        for item in order.items:
            if item.remaining_quantity > 0:
                demand[item.sku_code] += item.remaining_quantity
        return dict(demand)

    async def find_shortages(self, order: Order) -> Dict[str, int]:
        """Units per SKU the warehouse cannot currently supply for this order."""
        shortages = {}
        for sku, needed in sorted(self.demand_by_sku(order).items()):
            available = await self.ledger.total_available(sku)
            if available < needed:
                shortages[sku] = needed - available
        return shortages

    async def backorder_order(
        self,
        order_id: str,
        actor: Optional[str] = None,
    ) -> Tuple[Order, Dict[str, int]]:
        """
        Move a PENDING order to BACKORDER if stock is still short.

        Returns the order and its shortages; an empty dict means the
        shortage cleared (or the order moved on) and nothing changed.
        """
        order = await self.lock_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            return order, {}

        shortages = await self.find_shortages(order)
        if not shortages:
            return order, {}

        await self.state_machine.transition(
            order, OrderStatus.BACKORDER, actor=actor,
            reason="Insufficient inventory: " + ", ".join(
                f"{sku} short {qty}" for sku, qty in shortages.items()
            ),
        )
        await self.db.flush()
        self.outbox.emit(
            EventType.ORDER_BACKORDERED,
            order_id=order.id,
            customer_id=order.customer_id,
            shortages=shortages,
        )
        return order, shortages

    async def release_backorder(self, order_id: str, actor: Optional[str] = None) -> Order:
        """Return a BACKORDER order to PENDING once stock covers its demand."""
        order = await self.lock_order(order_id)
        if order.status != OrderStatus.BACKORDER.value:
            raise InvalidStateTransitionError(
                f"Order {order_id} is not backordered, current status: {order.status}",
                current_status=order.status,
                target_status=OrderStatus.PENDING.value,
            )

        shortages = await self.find_shortages(order)
        if shortages:
            raise InsufficientAvailabilityError(
                f"Order {order_id} is still short of stock",
                {"order_id": order_id, "shortages": shortages},
            )

        await self.state_machine.transition(
            order, OrderStatus.PENDING, actor=actor, reason="Stock available"
        )
        await self.db.flush()
        return order
