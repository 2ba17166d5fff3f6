"""Pydantic v2 schemas for deposit payments."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator


class PaymentCreate(BaseModel):
    order_id: uuid.UUID
    gateway: Literal["midtrans", "xendit", "tripay"] | None = None
    method_code: str | None = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    order_id: uuid.UUID
    gateway: str
    gateway_reference: str
    amount: int
    status: str
    payment_url: str | None
    payment_method: str | None
    paid_at: datetime | None
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class PaymentMethodResponse(BaseModel):
    gateway: str
    code: str
    name: str
    type: str
    fee: int
    min_amount: int
    max_amount: int
    is_active: bool


class WebhookAck(BaseModel):
    received: bool = True
    payment_id: uuid.UUID
    status: str
