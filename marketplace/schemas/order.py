"""Pydantic v2 schemas for orders."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderCreate(BaseModel):
    professional_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=256)
    description: str | None = Field(None, max_length=8192)
    total_amount: int = Field(..., gt=0)


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: uuid.UUID
    client_user_id: uuid.UUID
    professional_id: uuid.UUID | None
    title: str
    description: str | None
    total_amount: int
    status: str
    payment_status: str
    created_at: datetime

    @field_validator("status", "payment_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
