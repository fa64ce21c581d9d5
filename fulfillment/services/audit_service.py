import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.enum_utils import get_enum_value
from fulfillment.core.identifiers import new_id, STATE_CHANGE_PREFIX, TRANSACTION_PREFIX
from fulfillment.models.inventory import InventoryTransaction, InventoryTransactionType
from fulfillment.models.order import OrderStateChange


logger = logging.getLogger(__name__)


class AuditService:
    """
    Append-only trail of inventory movements and order status transitions.

    Records are written on the caller's session, so they commit or roll
    back together with the mutation they describe. A failed audit write
    fails the whole operation.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_inventory_transaction(
        self,
        transaction_type: InventoryTransactionType,
        sku_code: str,
        bin_code: str,
        quantity_delta: int,
        reserved_delta: int = 0,
        order_id: Optional[str] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> InventoryTransaction:
        """
        Append one inventory movement.

        Args:
            transaction_type: RESERVATION, DEDUCTION, CANCELLATION, ADJUSTMENT or RECEIPT
            quantity_delta: Signed change to on-hand quantity
            reserved_delta: Signed change to reserved quantity
            order_id: Originating order, if any
            actor: Operator or system component responsible
            reason: Free-text justification

        Returns:
            The created InventoryTransaction
        """
        txn = InventoryTransaction(
            transaction_id=new_id(TRANSACTION_PREFIX),
            transaction_type=get_enum_value(transaction_type),
            sku_code=sku_code,
            bin_code=bin_code,
            quantity_delta=quantity_delta,
            reserved_delta=reserved_delta,
            order_id=order_id,
            actor=actor,
            reason=reason,
        )
        self.db.add(txn)
        await self.db.flush()
        return txn

    async def record_state_change(
        self,
        order_id: str,
        from_status: str,
        to_status: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OrderStateChange:
        """Append one order status transition."""
        change = OrderStateChange(
            change_id=new_id(STATE_CHANGE_PREFIX),
            order_id=order_id,
            from_status=get_enum_value(from_status),
            to_status=get_enum_value(to_status),
            actor=actor,
            reason=reason,
        )
        self.db.add(change)
        await self.db.flush()
        return change

    # ==================== ORDERED RETRIEVAL ====================

    async def get_order_history(self, order_id: str) -> List[OrderStateChange]:
        """All status transitions of an order, oldest first."""
        result = await self.db.execute(
            select(OrderStateChange)
            .where(OrderStateChange.order_id == order_id)
            .order_by(OrderStateChange.id)
        )
        return list(result.scalars().all())

    async def get_state_changes(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        to_status: Optional[str] = None,
    ) -> List[OrderStateChange]:
        """Status transitions across orders within a time range, oldest first."""
        filters = []
        if start:
            filters.append(OrderStateChange.created_at >= start)
        if end:
            filters.append(OrderStateChange.created_at <= end)
        if to_status:
            filters.append(OrderStateChange.to_status == get_enum_value(to_status))

        stmt = select(OrderStateChange).order_by(OrderStateChange.id)
        if filters:
            stmt = stmt.where(and_(*filters))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_inventory_transactions(
        self,
        sku: Optional[str] = None,
        order_id: Optional[str] = None,
        transaction_type: Optional[InventoryTransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[InventoryTransaction], int]:
        """Filtered inventory movements, oldest first, with total count."""
        filters = []
        if sku:
            filters.append(InventoryTransaction.sku_code == sku)
        if order_id:
            filters.append(InventoryTransaction.order_id == order_id)
        if transaction_type:
            filters.append(InventoryTransaction.transaction_type == get_enum_value(transaction_type))
        if start:
            filters.append(InventoryTransaction.created_at >= start)
        if end:
            filters.append(InventoryTransaction.created_at <= end)

        count_stmt = select(func.count(InventoryTransaction.id))
        stmt = select(InventoryTransaction).order_by(InventoryTransaction.id)
        if filters:
            count_stmt = count_stmt.where(and_(*filters))
            stmt = stmt.where(and_(*filters))

        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def sum_inventory_deltas(self, sku: str) -> Tuple[int, int, int]:
        """(sum of quantity deltas, sum of reserved deltas, row count) for a SKU."""
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(InventoryTransaction.quantity_delta), 0),
                func.coalesce(func.sum(InventoryTransaction.reserved_delta), 0),
                func.count(InventoryTransaction.id),
            ).where(InventoryTransaction.sku_code == sku)
        )
        quantity_total, reserved_total, count = result.one()
        return int(quantity_total), int(reserved_total), int(count)
