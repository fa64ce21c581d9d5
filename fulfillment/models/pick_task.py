"""Pick task model: one single-bin unit of picking work for one order item."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment.core.enum_utils import enum_comment
from fulfillment.database import Base


class TaskStatus(str, Enum):
    """Pick task status enumeration."""
    PENDING = "PENDING"           # Generated by the claim, not started
    IN_PROGRESS = "IN_PROGRESS"   # Picker is at the bin
    COMPLETED = "COMPLETED"       # Picked and deducted (final)
    SKIPPED = "SKIPPED"           # Not picked, needs supervisor review (final)


OPEN_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)
FINAL_TASK_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.SKIPPED.value)


class PickTask(Base):
    """
    One unit of pickable work.
    Created when the order is claimed; immutable once COMPLETED or SKIPPED.
    """
    __tablename__ = "pick_tasks"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_task_positive_quantity"),
        CheckConstraint(
            "picked_quantity >= 0 AND picked_quantity <= quantity",
            name="check_task_picked_range"
        ),
        Index("ix_pick_tasks_picker_status", "picker_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Creation order within the claim"
    )

    order_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    order_item_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True
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

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    picked_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[str] = mapped_column(
        String(30),
        default=TaskStatus.PENDING.value,
        nullable=False,
        index=True,
        comment=enum_comment(TaskStatus)
    )
    picker_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    skipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    @property
    def outstanding_reservation(self) -> int:
        """Units still reserved for this task at its bin."""
        if self.is_open:
            return self.quantity - self.picked_quantity
        return 0

    def __repr__(self) -> str:
        return (
            f"<PickTask(id='{self.id}', bin='{self.bin_code}', "
            f"picked={self.picked_quantity}/{self.quantity}, status='{self.status}')>"
        )
