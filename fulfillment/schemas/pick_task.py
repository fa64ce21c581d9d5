"""Pydantic schemas for pick tasks and picking metrics."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from fulfillment.schemas.base import BaseResponseSchema


class PickTaskResponse(BaseResponseSchema):
    """Pick task response schema."""
    id: str
    sequence: int
    order_id: str
    order_item_id: str
    sku_code: str
    bin_code: str
    quantity: int
    picked_quantity: int
    status: str
    picker_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skipped_at: Optional[datetime] = None
    skip_reason: Optional[str] = None


class PickingProgress(BaseModel):
    """Task counts for one order."""
    total: int
    completed: int
    skipped: int
    in_progress: int
    pending: int
    percentage: int


class PickerPerformance(BaseModel):
    """Picker throughput over a time window."""
    picker_id: str
    tasks_completed: int
    tasks_total: int
    average_seconds_per_task: float
    total_units_picked: int
