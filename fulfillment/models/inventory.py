"""Inventory models: per-bin stock units and the append-only transaction log."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy import UniqueConstraint, CheckConstraint, Index
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment.core.enum_utils import enum_comment
from fulfillment.database import Base


class InventoryTransactionType(str, Enum):
    """Inventory movement types."""
    RESERVATION = "RESERVATION"     # Stock committed to an order
    DEDUCTION = "DEDUCTION"         # Stock physically picked, reservation consumed
    CANCELLATION = "CANCELLATION"   # Reservation abandoned
    ADJUSTMENT = "ADJUSTMENT"       # Cycle count / manual correction
    RECEIPT = "RECEIPT"             # Inbound stock


class InventoryUnit(Base):
    """
    Quantity of one SKU held at one bin.

    available = quantity - reserved is derived, never stored.
    """
    __tablename__ = "inventory_units"
    __table_args__ = (
        UniqueConstraint("sku_code", "bin_code", name="uq_inventory_sku_bin"),
        CheckConstraint("quantity >= 0", name="check_inventory_non_negative"),
        CheckConstraint("reserved >= 0", name="check_reserved_non_negative"),
        CheckConstraint("reserved <= quantity", name="check_reserved_not_exceed_quantity"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)

    sku_code: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("skus.code", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    bin_code: Mapped[str] = mapped_column(
        String(20),
        ForeignKey("bin_locations.code", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @hybrid_property
    def available(self) -> int:
        return self.quantity - self.reserved

    def __repr__(self) -> str:
        return (
            f"<InventoryUnit(sku='{self.sku_code}', bin='{self.bin_code}', "
            f"quantity={self.quantity}, reserved={self.reserved})>"
        )


class InventoryTransaction(Base):
    """
    Append-only record of one inventory movement.

    quantity_delta is the signed change to on-hand quantity and
    reserved_delta the signed change to reserved, so summing either column
    for a SKU reproduces its current totals.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        Index("ix_inventory_transactions_sku_created", "sku_code", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)

    transaction_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment=enum_comment(InventoryTransactionType)
    )
    sku_code: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("skus.code", ondelete="RESTRICT"),
        nullable=False
    )
    bin_code: Mapped[str] = mapped_column(
        String(20),
        ForeignKey("bin_locations.code", ondelete="RESTRICT"),
        nullable=False
    )
    quantity_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_delta: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    order_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, index=True)
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<InventoryTransaction(type='{self.transaction_type}', sku='{self.sku_code}', "
            f"quantity_delta={self.quantity_delta}, reserved_delta={self.reserved_delta})>"
        )
