"""Order models: order headers, line items and the status audit trail."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment.core.enum_utils import enum_comment
from fulfillment.database import Base


class OrderStatus(str, Enum):
    """Order fulfillment status."""
    PENDING = "PENDING"         # Waiting for a picker
    PICKING = "PICKING"         # Claimed, pick tasks in flight
    PICKED = "PICKED"           # Every item fully picked
    PACKING = "PACKING"         # Claimed by a packer
    PACKED = "PACKED"           # Every item verified
    SHIPPED = "SHIPPED"         # Handed to carrier (terminal)
    CANCELLED = "CANCELLED"     # Terminal
    BACKORDER = "BACKORDER"     # Demand exceeds warehouse stock


class OrderPriority(str, Enum):
    """Order priority."""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


# Queue ordering, higher is picked first
PRIORITY_RANK = {
    OrderPriority.LOW.value: 1,
    OrderPriority.NORMAL.value: 2,
    OrderPriority.HIGH.value: 3,
    OrderPriority.URGENT.value: 4,
}


class OrderItemStatus(str, Enum):
    """Line item pick status, derived from picked_quantity."""
    PENDING = "PENDING"
    PARTIAL_PICKED = "PARTIAL_PICKED"
    FULLY_PICKED = "FULLY_PICKED"


class Order(Base):
    """
    Customer fulfillment request.
    Retained indefinitely; progress is recomputed after every item mutation.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="check_progress_range"),
        Index("ix_orders_status_priority", "status", "priority"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    priority: Mapped[str] = mapped_column(
        String(30),
        default=OrderPriority.NORMAL.value,
        nullable=False,
        comment=enum_comment(OrderPriority)
    )
    status: Mapped[str] = mapped_column(
        String(30),
        default=OrderStatus.PENDING.value,
        nullable=False,
        index=True,
        comment=enum_comment(OrderStatus)
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Assignment
    picker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    packer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    carrier_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    packed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.line_number",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Order(id='{self.id}', status='{self.status}', progress={self.progress})>"


class OrderItem(Base):
    """One SKU/quantity line within an order."""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_item_positive_quantity"),
        CheckConstraint(
            "picked_quantity >= 0 AND picked_quantity <= quantity",
            name="check_item_picked_range"
        ),
        CheckConstraint(
            "verified_quantity >= 0 AND verified_quantity <= picked_quantity",
            name="check_item_verified_range"
        ),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    sku_code: Mapped[str] = mapped_column(
        String(50),
        ForeignKey("skus.code", ondelete="RESTRICT"),
        nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    picked_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    verified_quantity: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Units confirmed at the packing station"
    )

    # Largest-available bin chosen when the order was claimed
    target_bin: Mapped[Optional[str]] = mapped_column(
        String(20),
        ForeignKey("bin_locations.code", ondelete="RESTRICT"),
        nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(30),
        default=OrderItemStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(OrderItemStatus)
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    @property
    def remaining_quantity(self) -> int:
        return max(0, self.quantity - self.picked_quantity)

    def __repr__(self) -> str:
        return (
            f"<OrderItem(id='{self.id}', sku='{self.sku_code}', "
            f"picked={self.picked_quantity}/{self.quantity})>"
        )


class OrderStateChange(Base):
    """Append-only record of one order status transition."""
    __tablename__ = "order_state_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)

    order_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_status: Mapped[str] = mapped_column(String(30), nullable=False)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<OrderStateChange(order='{self.order_id}', {self.from_status} -> {self.to_status})>"
