"""
Inventory Ledger.

Every change to an InventoryUnit goes through this service. Each mutation
locks the unit row, re-reads quantity and reserved under that lock, applies
the change and appends exactly one InventoryTransaction on the same
session. available is never trusted from an earlier read.

    reserve : reserved += q                 (RESERVATION   0 / +q)
    deduct  : quantity -= q, reserved -= q  (DEDUCTION    -q / -q)
    release : reserved -= q                 (CANCELLATION  0 / -q)
    adjust  : quantity += d                 (ADJUSTMENT   +-d / 0)
    receive : quantity += q                 (RECEIPT      +q / 0)
"""
import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.enum_utils import get_enum_value
from fulfillment.core.exceptions import (
    InsufficientAvailabilityError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from fulfillment.core.identifiers import new_id, INVENTORY_UNIT_PREFIX
from fulfillment.models.catalog import BinLocation, Sku
from fulfillment.models.inventory import InventoryTransactionType, InventoryUnit
from fulfillment.schemas.inventory import (
    LowStockEntry,
    LowStockReport,
    ReconciliationReport,
    StockLocation,
)
from fulfillment.services.audit_service import AuditService
from fulfillment.services.notification_service import EventOutbox, EventType


logger = logging.getLogger(__name__)


class InventoryLedger:
    """Reserve/deduct/release/adjust against per-bin stock under row locks."""

    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditService] = None,
        outbox: Optional[EventOutbox] = None,
    ):
        self.db = db
        self.audit = audit or AuditService(db)
        self.outbox = outbox if outbox is not None else EventOutbox()

    # ==================== LOCKING ====================

    async def _lock_unit(self, sku: str, bin_code: str) -> Optional[InventoryUnit]:
        """SELECT ... FOR UPDATE on one unit, refreshing any cached copy."""
        await self.db.flush()
        result = await self.db.execute(
            select(InventoryUnit)
            .where(
                and_(
                    InventoryUnit.sku_code == sku,
                    InventoryUnit.bin_code == bin_code,
                )
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require_unit(self, sku: str, bin_code: str) -> InventoryUnit:
        unit = await self._lock_unit(sku, bin_code)
        if unit is None:
            raise NotFoundError("InventoryUnit", f"{sku}@{bin_code}")
        return unit

    async def lock_units_for_skus(
        self,
        skus: Iterable[str],
        active_bins_only: bool = True,
    ) -> List[InventoryUnit]:
        """
        Lock every unit holding any of the given SKUs.

        Rows are locked in (bin_code, sku_code) order so two claims touching
        overlapping bins always acquire locks in the same sequence.
        """
        sku_list = sorted(set(skus))
        if not sku_list:
            return []
        await self.db.flush()
        stmt = select(InventoryUnit).where(InventoryUnit.sku_code.in_(sku_list))
        if active_bins_only:
            stmt = stmt.join(BinLocation, BinLocation.code == InventoryUnit.bin_code).where(
                BinLocation.is_active == True  # noqa: E712
            )
        stmt = (
            stmt.order_by(InventoryUnit.bin_code, InventoryUnit.sku_code)
            .with_for_update(of=InventoryUnit)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _check_quantity(quantity: int) -> None:
        if quantity is None or quantity <= 0:
            raise InvalidRequestError(
                "Quantity must be a positive integer", {"quantity": quantity}
            )

    # ==================== MUTATIONS ====================

    async def reserve(
        self,
        sku: str,
        bin_code: str,
        quantity: int,
        order_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> InventoryUnit:
        """
        Commit available stock at one bin to an order.

        Raises:
            InsufficientAvailabilityError: available < quantity at this instant
        """
        self._check_quantity(quantity)
        unit = await self._require_unit(sku, bin_code)

        if unit.available < quantity:
            logger.warning(
                "Reserve rejected sku=%s bin=%s requested=%d available=%d order=%s",
                sku, bin_code, quantity, unit.available, order_id,
            )
            raise InsufficientAvailabilityError(
                f"Only {unit.available} of {sku} available at {bin_code}, requested {quantity}",
                {"sku": sku, "bin": bin_code, "requested": quantity, "available": unit.available},
            )

        unit.reserved += quantity
        await self.audit.record_inventory_transaction(
            InventoryTransactionType.RESERVATION,
            sku_code=sku,
            bin_code=bin_code,
            quantity_delta=0,
            reserved_delta=quantity,
            order_id=order_id,
            actor=actor,
        )
        logger.info("Reserved %d x %s at %s for %s", quantity, sku, bin_code, order_id)
        return unit

    async def deduct(
        self,
        sku: str,
        bin_code: str,
        quantity: int,
        order_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> InventoryUnit:
        """
        Remove picked stock and consume its reservation.

        Raises:
            InvalidStateError: reserved < quantity at this bin
        """
        self._check_quantity(quantity)
        unit = await self._require_unit(sku, bin_code)

        if unit.reserved < quantity:
            logger.warning(
                "Deduct rejected sku=%s bin=%s requested=%d reserved=%d order=%s",
                sku, bin_code, quantity, unit.reserved, order_id,
            )
            raise InvalidStateError(
                f"Cannot deduct {quantity} of {sku} at {bin_code}: only {unit.reserved} reserved",
                {"sku": sku, "bin": bin_code, "requested": quantity, "reserved": unit.reserved},
            )

        unit.quantity -= quantity
        unit.reserved -= quantity
        txn = await self.audit.record_inventory_transaction(
            InventoryTransactionType.DEDUCTION,
            sku_code=sku,
            bin_code=bin_code,
            quantity_delta=-quantity,
            reserved_delta=-quantity,
            order_id=order_id,
            actor=actor,
        )
        self.outbox.emit(
            EventType.INVENTORY_DEDUCTED,
            order_id=order_id,
            sku=sku,
            bin_code=bin_code,
            quantity=quantity,
            transaction_id=txn.transaction_id,
        )
        logger.info("Deducted %d x %s at %s for %s", quantity, sku, bin_code, order_id)
        return unit

    async def release(
        self,
        sku: str,
        bin_code: str,
        quantity: int,
        order_id: Optional[str] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> InventoryUnit:
        """
        Abandon a reservation; stock stays on hand.

        Raises:
            InvalidStateError: reserved < quantity at this bin
        """
        self._check_quantity(quantity)
        unit = await self._require_unit(sku, bin_code)

        if unit.reserved < quantity:
            raise InvalidStateError(
                f"Cannot release {quantity} of {sku} at {bin_code}: only {unit.reserved} reserved",
                {"sku": sku, "bin": bin_code, "requested": quantity, "reserved": unit.reserved},
            )

        unit.reserved -= quantity
        await self.audit.record_inventory_transaction(
            InventoryTransactionType.CANCELLATION,
            sku_code=sku,
            bin_code=bin_code,
            quantity_delta=0,
            reserved_delta=-quantity,
            order_id=order_id,
            actor=actor,
            reason=reason,
        )
        logger.info("Released %d x %s at %s for %s", quantity, sku, bin_code, order_id)
        return unit

    async def adjust(
        self,
        sku: str,
        bin_code: str,
        delta: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        transaction_type: InventoryTransactionType = InventoryTransactionType.ADJUSTMENT,
    ) -> InventoryUnit:
        """
        Administrative correction of on-hand quantity.

        A positive delta on a missing (SKU, bin) pair creates the unit.
        Stock committed to orders cannot be adjusted away.

        Raises:
            InvalidRequestError: zero delta or blank reason
            InsufficientAvailabilityError: quantity would drop below reserved
        """
        if not delta:
            raise InvalidRequestError("Adjustment delta must be non-zero", {"delta": delta})
        if transaction_type == InventoryTransactionType.ADJUSTMENT and not (reason or "").strip():
            raise InvalidRequestError("Adjustment requires a reason")

        unit = await self._lock_unit(sku, bin_code)
        if unit is None:
            if delta < 0:
                raise NotFoundError("InventoryUnit", f"{sku}@{bin_code}")
            unit = await self._create_unit(sku, bin_code)

        new_quantity = unit.quantity + delta
        if new_quantity < unit.reserved:
            logger.warning(
                "Adjust rejected sku=%s bin=%s delta=%d quantity=%d reserved=%d",
                sku, bin_code, delta, unit.quantity, unit.reserved,
            )
            raise InsufficientAvailabilityError(
                f"Adjusting {sku} at {bin_code} by {delta} would leave "
                f"{new_quantity} on hand against {unit.reserved} reserved",
                {"sku": sku, "bin": bin_code, "delta": delta,
                 "quantity": unit.quantity, "reserved": unit.reserved},
            )

        unit.quantity = new_quantity
        await self.audit.record_inventory_transaction(
            transaction_type,
            sku_code=sku,
            bin_code=bin_code,
            quantity_delta=delta,
            reserved_delta=0,
            actor=actor,
            reason=reason,
        )
        logger.info(
            "%s %+d x %s at %s (%s)", get_enum_value(transaction_type), delta, sku, bin_code, reason
        )
        return unit

    async def receive(
        self,
        sku: str,
        bin_code: str,
        quantity: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> InventoryUnit:
        """Inbound stock; creates the unit on first receipt."""
        self._check_quantity(quantity)
        return await self.adjust(
            sku,
            bin_code,
            quantity,
            reason=reason or "Receipt",
            actor=actor,
            transaction_type=InventoryTransactionType.RECEIPT,
        )

    async def _create_unit(self, sku: str, bin_code: str) -> InventoryUnit:
        """
        Insert an empty unit and return it locked.

        If a concurrent first receipt inserted the same pair, the savepoint
        is rolled back and the committed row is locked instead.
        """
        if await self.db.get(Sku, sku) is None:
            raise NotFoundError("SKU", sku)
        if await self.db.get(BinLocation, bin_code) is None:
            raise NotFoundError("BinLocation", bin_code)

        unit = InventoryUnit(
            id=new_id(INVENTORY_UNIT_PREFIX),
            sku_code=sku,
            bin_code=bin_code,
            quantity=0,
            reserved=0,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(unit)
        except IntegrityError:
            existing = await self._lock_unit(sku, bin_code)
            if existing is None:
                raise
            logger.info("Unit %s at %s already created by a concurrent receipt", sku, bin_code)
            return existing
        return unit

    # ==================== READ PATH ====================

    async def get_unit(self, sku: str, bin_code: str) -> InventoryUnit:
        result = await self.db.execute(
            select(InventoryUnit).where(
                and_(
                    InventoryUnit.sku_code == sku,
                    InventoryUnit.bin_code == bin_code,
                )
            )
        )
        unit = result.scalar_one_or_none()
        if unit is None:
            raise NotFoundError("InventoryUnit", f"{sku}@{bin_code}")
        return unit

    async def get_units(self, sku: str) -> List[InventoryUnit]:
        result = await self.db.execute(
            select(InventoryUnit)
            .where(InventoryUnit.sku_code == sku)
            .order_by(InventoryUnit.bin_code)
        )
        return list(result.scalars().all())

    async def locate_stock(self, sku: str) -> List[StockLocation]:
        """Active bins holding available stock, largest available first, then by bin code."""
        available = (InventoryUnit.quantity - InventoryUnit.reserved).label("available")
        result = await self.db.execute(
            select(InventoryUnit.bin_code, available)
            .join(BinLocation, BinLocation.code == InventoryUnit.bin_code)
            .where(
                and_(
                    InventoryUnit.sku_code == sku,
                    BinLocation.is_active == True,  # noqa: E712
                    InventoryUnit.quantity - InventoryUnit.reserved > 0,
                )
            )
            .order_by(available.desc(), InventoryUnit.bin_code)
        )
        return [StockLocation(bin_code=row.bin_code, available=row.available) for row in result]

    async def total_available(self, sku: str) -> int:
        """Available units of a SKU across all active bins."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(InventoryUnit.quantity - InventoryUnit.reserved), 0))
            .join(BinLocation, BinLocation.code == InventoryUnit.bin_code)
            .where(
                and_(
                    InventoryUnit.sku_code == sku,
                    BinLocation.is_active == True,  # noqa: E712
                )
            )
        )
        return int(result.scalar() or 0)

    async def low_stock(self, threshold: int) -> LowStockReport:
        """Units whose available quantity is at or below the threshold."""
        result = await self.db.execute(
            select(InventoryUnit)
            .where(InventoryUnit.quantity - InventoryUnit.reserved <= threshold)
            .order_by(InventoryUnit.sku_code, InventoryUnit.bin_code)
        )
        entries = [
            LowStockEntry(
                sku=unit.sku_code,
                bin_code=unit.bin_code,
                quantity=unit.quantity,
                available=unit.available,
            )
            for unit in result.scalars().all()
        ]
        return LowStockReport(threshold=threshold, entries=entries)

    async def reconcile(self, sku: str) -> ReconciliationReport:
        """Compare transaction sums for a SKU with its live quantity and reserved totals."""
        ledger_quantity, ledger_reserved, count = await self.audit.sum_inventory_deltas(sku)
        actual_quantity, actual_reserved = await self._sum_units(sku)
        balanced = ledger_quantity == actual_quantity and ledger_reserved == actual_reserved
        if not balanced:
            logger.error(
                "Ledger out of balance for %s: transactions %d/%d, units %d/%d",
                sku, ledger_quantity, ledger_reserved, actual_quantity, actual_reserved,
            )
        return ReconciliationReport(
            sku=sku,
            ledger_quantity=ledger_quantity,
            ledger_reserved=ledger_reserved,
            actual_quantity=actual_quantity,
            actual_reserved=actual_reserved,
            transaction_count=count,
            balanced=balanced,
        )

    async def _sum_units(self, sku: str) -> Tuple[int, int]:
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(InventoryUnit.quantity), 0),
                func.coalesce(func.sum(InventoryUnit.reserved), 0),
            ).where(InventoryUnit.sku_code == sku)
        )
        quantity, reserved = result.one()
        return int(quantity), int(reserved)
