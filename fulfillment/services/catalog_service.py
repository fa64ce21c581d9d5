"""Catalog Service for SKU and bin location seeding."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.enum_utils import get_enum_value
from fulfillment.core.exceptions import InvalidRequestError, NotFoundError
from fulfillment.models.catalog import BinLocation, Sku, parse_bin_code
from fulfillment.schemas.inventory import BinLocationCreate, SkuCreate


logger = logging.getLogger(__name__)


class CatalogService:
    """Admin operations on the SKU catalog and the bin map."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== SKU METHODS ====================

    async def register_sku(self, data: SkuCreate) -> Sku:
        """Create a SKU, or update name/category/active flag of an existing one."""
        sku = await self.db.get(Sku, data.code)
        if sku is None:
            sku = Sku(
                code=data.code,
                name=data.name,
                category=data.category,
                is_active=data.is_active,
            )
            self.db.add(sku)
            logger.info("Registered SKU %s", data.code)
        else:
            sku.name = data.name
            sku.category = data.category
            sku.is_active = data.is_active
        await self.db.flush()
        return sku

    async def get_sku(self, code: str) -> Sku:
        sku = await self.db.get(Sku, code)
        if sku is None:
            raise NotFoundError("SKU", code)
        return sku

    async def set_sku_active(self, code: str, active: bool) -> Sku:
        sku = await self.get_sku(code)
        sku.is_active = active
        await self.db.flush()
        logger.info("SKU %s active=%s", code, active)
        return sku

    # ==================== BIN METHODS ====================

    async def register_bin(self, data: BinLocationCreate) -> BinLocation:
        """Create a bin location, or update type/active flag of an existing one."""
        parts = parse_bin_code(data.code)
        if parts is None:
            raise InvalidRequestError(f"Malformed bin code '{data.code}'", {"code": data.code})
        zone, aisle, shelf = parts

        bin_location: Optional[BinLocation] = await self.db.get(BinLocation, data.code)
        if bin_location is None:
            bin_location = BinLocation(
                code=data.code,
                zone=zone,
                aisle=aisle,
                shelf=shelf,
                bin_type=get_enum_value(data.bin_type),
                is_active=data.is_active,
            )
            self.db.add(bin_location)
            logger.info("Registered bin %s", data.code)
        else:
            bin_location.bin_type = get_enum_value(data.bin_type)
            bin_location.is_active = data.is_active
        await self.db.flush()
        return bin_location

    async def get_bin(self, code: str) -> BinLocation:
        bin_location = await self.db.get(BinLocation, code)
        if bin_location is None:
            raise NotFoundError("BinLocation", code)
        return bin_location

    async def set_bin_active(self, code: str, active: bool) -> BinLocation:
        """Deactivated bins keep their stock but are never allocated from."""
        bin_location = await self.get_bin(code)
        bin_location.is_active = active
        await self.db.flush()
        logger.info("Bin %s active=%s", code, active)
        return bin_location
