"""
Enum Utilities for VARCHAR-based Status Fields

Statuses, priorities and transaction types are stored as UPPERCASE
VARCHAR(30) columns, never as database ENUM types. The closed set of
legal values lives in the Python str-Enums next to each model, so adding
a value is a code change rather than a schema migration.

    SQLAlchemy:  status: Mapped[str] = mapped_column(String(30))
    Python:      OrderStatus.PENDING == "PENDING"
    Pydantic:    priority: OrderPriority (case-insensitive via validator)
"""

from enum import Enum
from typing import Any, Optional, Set, Type


def get_enum_value(value: Any) -> Optional[str]:
    """
    Safely get string value from an enum or string.

    Examples:
        >>> get_enum_value(OrderStatus.PENDING)
        'PENDING'
        >>> get_enum_value("PENDING")
        'PENDING'
    """
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def enum_values(enum_class: Type[Enum]) -> Set[str]:
    """All values of an enum class."""
    return {e.value for e in enum_class}


def enum_comment(enum_class: Type[Enum]) -> str:
    """
    Comma-separated list of valid values, for VARCHAR column comments.

    Examples:
        >>> enum_comment(TaskStatus)
        'PENDING, IN_PROGRESS, COMPLETED, SKIPPED'
    """
    return ", ".join(e.value for e in enum_class)


def normalize_to_uppercase(value: Any, valid_values: Set[str]) -> Any:
    """
    Normalize a string value to UPPERCASE if it's a valid enum value.

    Unknown values are returned as-is so Pydantic raises the validation error.
    """
    if value is None:
        return value
    if isinstance(value, str):
        upper_v = value.strip().upper()
        if upper_v in valid_values:
            return upper_v
    return value


def create_uppercase_validator(field_name: str, valid_values: Set[str]) -> classmethod:
    """
    Create a Pydantic field_validator that normalizes values to UPPERCASE.

    Usage:
        class OrderCreate(BaseModel):
            priority: OrderPriority

            normalize_priority = create_uppercase_validator('priority', enum_values(OrderPriority))
    """
    from pydantic import field_validator

    @field_validator(field_name, mode='before')
    @classmethod
    def validate(cls, v):
        return normalize_to_uppercase(v, valid_values)

    return validate
