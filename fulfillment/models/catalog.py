"""Catalog models: SKUs and physical bin locations."""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment.core.enum_utils import enum_comment
from fulfillment.database import Base


class BinType(str, Enum):
    """Bin/Storage location type enumeration."""
    SHELF = "SHELF"              # Standard shelf location
    FLOOR = "FLOOR"              # Floor storage
    RACK = "RACK"                # Pallet rack
    BIN = "BIN"                  # Small parts bin


# <Zone>-<Aisle>-<Shelf>, e.g. A-12-03
BIN_CODE_PATTERN = re.compile(r"^[A-Z]-[0-9]{1,3}-[0-9]{2}$")


def parse_bin_code(code: str) -> Optional[Tuple[str, str, str]]:
    """Split a bin code into (zone, aisle, shelf), or None if malformed."""
    if not code or not BIN_CODE_PATTERN.match(code):
        return None
    zone, aisle, shelf = code.split("-")
    return zone, aisle, shelf


class Sku(Base):
    """
    Catalog entry.
    The code is immutable; name and category may change. Rows are never
    deleted while inventory or order items reference them.
    """
    __tablename__ = "skus"

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Sku(code='{self.code}', active={self.is_active})>"


class BinLocation(Base):
    """Physical storage slot identified by zone/aisle/shelf."""
    __tablename__ = "bin_locations"

    code: Mapped[str] = mapped_column(
        String(20),
        primary_key=True,
        comment="Format Z-A-S e.g., A-12-03"
    )
    zone: Mapped[str] = mapped_column(String(5), nullable=False, index=True)
    aisle: Mapped[str] = mapped_column(String(5), nullable=False)
    shelf: Mapped[str] = mapped_column(String(5), nullable=False)

    bin_type: Mapped[str] = mapped_column(
        String(30),
        default=BinType.SHELF.value,
        nullable=False,
        comment=enum_comment(BinType)
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<BinLocation(code='{self.code}', type='{self.bin_type}')>"
