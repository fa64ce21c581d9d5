"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM rows MUST inherit from BaseResponseSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class PickTaskResponse(BaseResponseSchema):
            id: str
            status: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Allow population by field name or alias
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored for forward compatibility; surrounding
    whitespace is stripped from strings.
    """
    model_config = ConfigDict(
        extra='ignore',
        str_strip_whitespace=True,
    )
