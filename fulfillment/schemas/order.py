"""Pydantic schemas for orders, order items and status history."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from fulfillment.core.enum_utils import create_uppercase_validator, enum_values
from fulfillment.models.order import OrderPriority, OrderStatus
from fulfillment.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== ORDER ITEM SCHEMAS ====================

class OrderItemCreate(BaseCreateSchema):
    """One requested line."""
    sku: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(..., ge=1)


class OrderItemResponse(BaseResponseSchema):
    """Order item response schema."""
    id: str
    order_id: str
    line_number: int
    sku_code: str
    quantity: int
    picked_quantity: int
    verified_quantity: int
    target_bin: Optional[str] = None
    status: str


# ==================== ORDER SCHEMAS ====================

class OrderCreate(BaseCreateSchema):
    """Order creation request from the request-handling layer."""
    customer_id: str = Field(..., min_length=1, max_length=100)
    items: List[OrderItemCreate] = Field(..., min_length=1)
    priority: OrderPriority = OrderPriority.NORMAL

    normalize_priority = create_uppercase_validator('priority', enum_values(OrderPriority))


class OrderResponse(BaseResponseSchema):
    """Order response schema."""
    id: str
    customer_id: str
    priority: str
    status: str
    progress: int
    picker_id: Optional[str] = None
    packer_id: Optional[str] = None
    carrier_reference: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    claimed_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []


class OrderQueueFilter(BaseCreateSchema):
    """Filters for the operator order queue."""
    status: Optional[OrderStatus] = None
    priority: Optional[OrderPriority] = None
    picker_id: Optional[str] = None
    limit: int = Field(20, ge=1, le=500)
    offset: int = Field(0, ge=0)

    normalize_status = create_uppercase_validator('status', enum_values(OrderStatus))
    normalize_priority = create_uppercase_validator('priority', enum_values(OrderPriority))


class OrderQueueResponse(BaseModel):
    """Paginated order queue."""
    orders: List[OrderResponse]
    total: int


# ==================== STATUS HISTORY SCHEMAS ====================

class OrderStateChangeResponse(BaseResponseSchema):
    """One recorded status transition."""
    change_id: str
    order_id: str
    from_status: str
    to_status: str
    actor: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime


class OrderStatusResponse(BaseModel):
    """Current status, progress and full transition history."""
    order_id: str
    status: str
    progress: int
    history: List[OrderStateChangeResponse]
