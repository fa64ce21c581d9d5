"""Pydantic schemas for catalog, inventory units and ledger transactions."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from fulfillment.core.enum_utils import create_uppercase_validator, enum_values
from fulfillment.models.catalog import BIN_CODE_PATTERN, BinType
from fulfillment.schemas.base import BaseCreateSchema, BaseResponseSchema


# ==================== CATALOG SCHEMAS ====================

class SkuCreate(BaseCreateSchema):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(None, max_length=100)
    is_active: bool = True


class SkuResponse(BaseResponseSchema):
    code: str
    name: str
    category: Optional[str] = None
    is_active: bool


class BinLocationCreate(BaseCreateSchema):
    code: str
    bin_type: BinType = BinType.SHELF
    is_active: bool = True

    normalize_bin_type = create_uppercase_validator('bin_type', enum_values(BinType))

    @field_validator('code')
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.upper()
        if not BIN_CODE_PATTERN.match(v):
            raise ValueError("bin code must look like <Zone>-<Aisle>-<Shelf>, e.g. A-12-03")
        return v


class BinLocationResponse(BaseResponseSchema):
    code: str
    zone: str
    aisle: str
    shelf: str
    bin_type: str
    is_active: bool


# ==================== INVENTORY SCHEMAS ====================

class InventoryUnitResponse(BaseResponseSchema):
    """Inventory unit with derived availability."""
    id: str
    sku_code: str
    bin_code: str
    quantity: int
    reserved: int
    available: int
    updated_at: datetime


class StockLocation(BaseModel):
    """Read-path candidate for allocation."""
    bin_code: str
    available: int


class InventoryTransactionResponse(BaseResponseSchema):
    transaction_id: str
    transaction_type: str
    sku_code: str
    bin_code: str
    quantity_delta: int
    reserved_delta: int
    order_id: Optional[str] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime


class ReconciliationReport(BaseModel):
    """Ledger totals versus live inventory for one SKU."""
    sku: str
    ledger_quantity: int
    ledger_reserved: int
    actual_quantity: int
    actual_reserved: int
    transaction_count: int
    balanced: bool


class LowStockEntry(BaseModel):
    sku: str
    bin_code: str
    quantity: int
    available: int


class LowStockReport(BaseModel):
    threshold: int
    entries: List[LowStockEntry]
