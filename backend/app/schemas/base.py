"""
Base schemas shared by request and response models.
"""

from pydantic import BaseModel, ConfigDict


class StandardizedModel(BaseModel):
    """Response base: enums serialise as their values, ORM objects are accepted."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, from_attributes=True)


class StrictRequestModel(BaseModel):
    """Request DTO base that always forbids unexpected fields."""

    model_config = ConfigDict(
        extra="forbid",
        validate_default=True,
        validate_assignment=True,
        str_strip_whitespace=True,
    )
