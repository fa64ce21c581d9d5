"""
Fulfillment Engine facade.

Single entry point for the request-handling layer. Every public method runs
in exactly one database transaction, builds the services over that
session, returns pydantic response schemas, and dispatches collaborator
events only after the transaction has committed.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.config import Settings, get_settings
from fulfillment.core.exceptions import InvalidRequestError, OrderBackorderedError
from fulfillment.database import Database
from fulfillment.logging_setup import configure_logging
from fulfillment.models.inventory import InventoryTransactionType
from fulfillment.schemas.inventory import (
    BinLocationCreate,
    BinLocationResponse,
    InventoryTransactionResponse,
    InventoryUnitResponse,
    LowStockReport,
    ReconciliationReport,
    SkuCreate,
    SkuResponse,
    StockLocation,
)
from fulfillment.schemas.order import (
    OrderCreate,
    OrderQueueFilter,
    OrderQueueResponse,
    OrderResponse,
    OrderStateChangeResponse,
    OrderStatusResponse,
)
from fulfillment.schemas.pick_task import PickerPerformance, PickingProgress, PickTaskResponse
from fulfillment.services.allocation_service import AllocationShortfall, PickTaskAllocator
from fulfillment.services.audit_service import AuditService
from fulfillment.services.catalog_service import CatalogService
from fulfillment.services.inventory_service import InventoryLedger
from fulfillment.services.notification_service import EventDispatcher, EventOutbox
from fulfillment.services.order_service import OrderService


logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def _validate(schema: Type[SchemaT], **data: Any) -> SchemaT:
    """Build an input schema, surfacing pydantic errors as InvalidRequestError."""
    try:
        return schema(**data)
    except ValidationError as exc:
        raise InvalidRequestError(
            f"Invalid {schema.__name__}",
            {"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


class _UnitOfWork:
    """Services sharing one session and one event outbox."""

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.outbox = EventOutbox()
        self.audit = AuditService(session)
        self.ledger = InventoryLedger(session, self.audit, self.outbox)
        self.catalog = CatalogService(session)
        self.orders = OrderService(session, settings, self.audit, self.ledger, self.outbox)
        self.allocator = PickTaskAllocator(session, settings, self.orders, self.outbox)


class FulfillmentEngine:
    """Order fulfillment and inventory allocation engine."""

    def __init__(
        self,
        database: Database,
        settings: Optional[Settings] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ):
        self.database = database
        self.settings = settings or database.settings or get_settings()
        self.dispatcher = dispatcher or EventDispatcher()
        configure_logging(self.settings.LOG_LEVEL)

    @asynccontextmanager
    async def _work(self) -> AsyncIterator[_UnitOfWork]:
        async with self.database.transaction() as session:
            uow = _UnitOfWork(session, self.settings)
            yield uow
        # Reached only after commit
        await self.dispatcher.dispatch(uow.outbox.drain())

    # ==================== CATALOG ====================

    async def register_sku(
        self,
        code: str,
        name: str,
        category: Optional[str] = None,
        active: bool = True,
    ) -> SkuResponse:
        data = _validate(SkuCreate, code=code, name=name, category=category, is_active=active)
        async with self._work() as uow:
            sku = await uow.catalog.register_sku(data)
            return SkuResponse.model_validate(sku)

    async def register_bin(
        self,
        code: str,
        bin_type: str = "SHELF",
        active: bool = True,
    ) -> BinLocationResponse:
        data = _validate(BinLocationCreate, code=code, bin_type=bin_type, is_active=active)
        async with self._work() as uow:
            bin_location = await uow.catalog.register_bin(data)
            return BinLocationResponse.model_validate(bin_location)

    async def set_sku_active(self, code: str, active: bool) -> SkuResponse:
        async with self._work() as uow:
            return SkuResponse.model_validate(await uow.catalog.set_sku_active(code, active))

    async def set_bin_active(self, code: str, active: bool) -> BinLocationResponse:
        async with self._work() as uow:
            return BinLocationResponse.model_validate(await uow.catalog.set_bin_active(code, active))

    # ==================== INVENTORY LEDGER ====================

    async def reserve(
        self, sku: str, bin_code: str, quantity: int,
        order_id: Optional[str] = None, actor: Optional[str] = None,
    ) -> InventoryUnitResponse:
        async with self._work() as uow:
            unit = await uow.ledger.reserve(sku, bin_code, quantity, order_id=order_id, actor=actor)
            return InventoryUnitResponse.model_validate(unit)

    async def deduct(
        self, sku: str, bin_code: str, quantity: int,
        order_id: Optional[str] = None, actor: Optional[str] = None,
    ) -> InventoryUnitResponse:
        async with self._work() as uow:
            unit = await uow.ledger.deduct(sku, bin_code, quantity, order_id=order_id, actor=actor)
            return InventoryUnitResponse.model_validate(unit)

    async def release(
        self, sku: str, bin_code: str, quantity: int,
        order_id: Optional[str] = None, actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> InventoryUnitResponse:
        async with self._work() as uow:
            unit = await uow.ledger.release(
                sku, bin_code, quantity, order_id=order_id, actor=actor, reason=reason
            )
            return InventoryUnitResponse.model_validate(unit)

    async def adjust(
        self, sku: str, bin_code: str, delta: int, reason: str,
        actor: Optional[str] = None,
    ) -> InventoryUnitResponse:
        async with self._work() as uow:
            unit = await uow.ledger.adjust(sku, bin_code, delta, reason=reason, actor=actor)
            return InventoryUnitResponse.model_validate(unit)

    async def receive(
        self, sku: str, bin_code: str, quantity: int,
        reason: Optional[str] = None, actor: Optional[str] = None,
    ) -> InventoryUnitResponse:
        async with self._work() as uow:
            unit = await uow.ledger.receive(sku, bin_code, quantity, reason=reason, actor=actor)
            return InventoryUnitResponse.model_validate(unit)

    async def get_unit(self, sku: str, bin_code: str) -> InventoryUnitResponse:
        async with self._work() as uow:
            return InventoryUnitResponse.model_validate(await uow.ledger.get_unit(sku, bin_code))

    async def get_units(self, sku: str) -> List[InventoryUnitResponse]:
        async with self._work() as uow:
            units = await uow.ledger.get_units(sku)
            return [InventoryUnitResponse.model_validate(u) for u in units]

    async def locate_stock(self, sku: str) -> List[StockLocation]:
        async with self._work() as uow:
            return await uow.ledger.locate_stock(sku)

    async def total_available(self, sku: str) -> int:
        async with self._work() as uow:
            return await uow.ledger.total_available(sku)

    async def low_stock(self, threshold: Optional[int] = None) -> LowStockReport:
        if threshold is None:
            threshold = self.settings.LOW_STOCK_THRESHOLD
        async with self._work() as uow:
            return await uow.ledger.low_stock(threshold)

    async def reconcile(self, sku: str) -> ReconciliationReport:
        async with self._work() as uow:
            return await uow.ledger.reconcile(sku)

    # ==================== AUDIT TRAIL ====================

    async def get_inventory_transactions(
        self,
        sku: Optional[str] = None,
        order_id: Optional[str] = None,
        transaction_type: Optional[InventoryTransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[InventoryTransactionResponse], int]:
        async with self._work() as uow:
            rows, total = await uow.audit.get_inventory_transactions(
                sku=sku, order_id=order_id, transaction_type=transaction_type,
                start=start, end=end, skip=skip, limit=limit,
            )
            return [InventoryTransactionResponse.model_validate(r) for r in rows], total

    async def get_state_changes(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        to_status: Optional[str] = None,
    ) -> List[OrderStateChangeResponse]:
        async with self._work() as uow:
            rows = await uow.audit.get_state_changes(start=start, end=end, to_status=to_status)
            return [OrderStateChangeResponse.model_validate(r) for r in rows]

    # ==================== ORDERS ====================

    async def create_order(
        self,
        customer_id: str,
        items: Sequence[Dict[str, Any]],
        priority: str = "NORMAL",
        actor: Optional[str] = None,
    ) -> OrderResponse:
        data = _validate(OrderCreate, customer_id=customer_id, items=list(items), priority=priority)
        async with self._work() as uow:
            order = await uow.orders.create_order(data, actor=actor)
            return OrderResponse.model_validate(order)

    async def get_order(self, order_id: str) -> OrderResponse:
        async with self._work() as uow:
            return OrderResponse.model_validate(await uow.orders.get_order(order_id))

    async def get_order_status(self, order_id: str) -> OrderStatusResponse:
        async with self._work() as uow:
            order, history = await uow.orders.get_order_status(order_id)
            return OrderStatusResponse(
                order_id=order.id,
                status=order.status,
                progress=order.progress,
                history=[OrderStateChangeResponse.model_validate(h) for h in history],
            )

    async def get_order_queue(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        picker_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> OrderQueueResponse:
        filters = _validate(
            OrderQueueFilter,
            status=status, priority=priority, picker_id=picker_id, limit=limit, offset=offset,
        )
        async with self._work() as uow:
            orders, total = await uow.orders.get_order_queue(filters)
            return OrderQueueResponse(
                orders=[OrderResponse.model_validate(o) for o in orders],
                total=total,
            )

    async def get_picker_active_orders(self, picker_id: str) -> List[OrderResponse]:
        async with self._work() as uow:
            orders = await uow.orders.get_picker_active_orders(picker_id)
            return [OrderResponse.model_validate(o) for o in orders]

    # ==================== PICKING ====================

    async def claim_order(self, order_id: str, picker_id: str) -> List[PickTaskResponse]:
        """
        Claim a PENDING order and return its pick tasks.

        When stock cannot cover the order, the claim is rolled back and the
        order is moved to BACKORDER in a separate transaction before
        OrderBackorderedError is raised.
        """
        try:
            async with self._work() as uow:
                _, tasks = await uow.allocator.claim_order(order_id, picker_id)
                return [PickTaskResponse.model_validate(t) for t in tasks]
        except AllocationShortfall as shortfall:
            async with self._work() as uow:
                _, shortages = await uow.orders.backorder_order(order_id, actor=picker_id)
            if shortages:
                raise OrderBackorderedError(order_id, shortages) from shortfall
            raise

    async def start_task(self, task_id: str, picker_id: str) -> PickTaskResponse:
        async with self._work() as uow:
            return PickTaskResponse.model_validate(await uow.allocator.start_task(task_id, picker_id))

    async def complete_task(
        self,
        task_id: str,
        picked_quantity: int,
        picker_id: Optional[str] = None,
    ) -> PickTaskResponse:
        async with self._work() as uow:
            _, task = await uow.allocator.complete_task(task_id, picked_quantity, picker_id)
            return PickTaskResponse.model_validate(task)

    async def skip_task(
        self,
        task_id: str,
        reason: str,
        picker_id: Optional[str] = None,
    ) -> PickTaskResponse:
        async with self._work() as uow:
            _, task = await uow.allocator.skip_task(task_id, reason, picker_id)
            return PickTaskResponse.model_validate(task)

    async def reallocate_remaining(self, order_id: str, picker_id: str) -> List[PickTaskResponse]:
        async with self._work() as uow:
            tasks = await uow.allocator.reallocate_remaining(order_id, picker_id)
            return [PickTaskResponse.model_validate(t) for t in tasks]

    async def get_order_tasks(self, order_id: str) -> List[PickTaskResponse]:
        async with self._work() as uow:
            tasks = await uow.allocator.get_order_tasks(order_id)
            return [PickTaskResponse.model_validate(t) for t in tasks]

    async def get_next_task(self, order_id: str) -> Optional[PickTaskResponse]:
        async with self._work() as uow:
            task = await uow.allocator.get_next_task(order_id)
            return PickTaskResponse.model_validate(task) if task else None

    async def get_picker_active_tasks(self, picker_id: str) -> List[PickTaskResponse]:
        async with self._work() as uow:
            tasks = await uow.allocator.get_picker_active_tasks(picker_id)
            return [PickTaskResponse.model_validate(t) for t in tasks]

    async def get_picking_progress(self, order_id: str) -> PickingProgress:
        async with self._work() as uow:
            return await uow.allocator.get_picking_progress(order_id)

    async def get_picker_performance(
        self,
        picker_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> PickerPerformance:
        async with self._work() as uow:
            return await uow.allocator.get_picker_performance(picker_id, start, end)

    # ==================== LIFECYCLE ====================

    async def unclaim_order(
        self, order_id: str, picker_id: str, reason: Optional[str] = None,
    ) -> OrderResponse:
        async with self._work() as uow:
            order = await uow.orders.unclaim_order(order_id, picker_id, reason)
            return OrderResponse.model_validate(order)

    async def claim_for_packing(self, order_id: str, packer_id: str) -> OrderResponse:
        async with self._work() as uow:
            return OrderResponse.model_validate(await uow.orders.claim_for_packing(order_id, packer_id))

    async def verify_item(
        self, order_id: str, order_item_id: str, quantity: int, packer_id: str,
    ) -> OrderResponse:
        async with self._work() as uow:
            order = await uow.orders.verify_item(order_id, order_item_id, quantity, packer_id)
            return OrderResponse.model_validate(order)

    async def undo_verification(
        self,
        order_id: str,
        order_item_id: str,
        quantity: int,
        packer_id: str,
        reason: Optional[str] = None,
    ) -> OrderResponse:
        async with self._work() as uow:
            order = await uow.orders.undo_verification(
                order_id, order_item_id, quantity, packer_id, reason
            )
            return OrderResponse.model_validate(order)

    async def unclaim_packing_order(
        self, order_id: str, packer_id: str, reason: Optional[str] = None,
    ) -> OrderResponse:
        async with self._work() as uow:
            order = await uow.orders.unclaim_packing_order(order_id, packer_id, reason)
            return OrderResponse.model_validate(order)

    async def get_packing_queue(self, limit: int = 20, offset: int = 0) -> OrderQueueResponse:
        filters = _validate(OrderQueueFilter, limit=limit, offset=offset)
        async with self._work() as uow:
            orders, total = await uow.orders.get_packing_queue(filters)
            return OrderQueueResponse(
                orders=[OrderResponse.model_validate(o) for o in orders],
                total=total,
            )

    async def ship_order(self, order_id: str, actor: str, carrier_reference: str) -> OrderResponse:
        async with self._work() as uow:
            order = await uow.orders.ship_order(order_id, actor, carrier_reference)
            return OrderResponse.model_validate(order)

    async def cancel_order(
        self, order_id: str, actor: Optional[str] = None, reason: Optional[str] = None,
    ) -> OrderResponse:
        async with self._work() as uow:
            order = await uow.orders.cancel_order(order_id, actor, reason)
            return OrderResponse.model_validate(order)

    async def release_backorder(self, order_id: str, actor: Optional[str] = None) -> OrderResponse:
        async with self._work() as uow:
            return OrderResponse.model_validate(await uow.orders.release_backorder(order_id, actor))
