"""Pydantic v2 schemas for Escrow.

Request models only check shape. Business rules (percentages summing to 100,
non-empty documentation, release bounds) are enforced by EscrowService so that
they surface as the escrow error kinds rather than generic request errors.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class TermSpec(BaseModel):
    name: str = Field("", max_length=256)
    description: str = ""
    percentage: Decimal
    due_date: date | None = None
    approval_required: bool = True


class EscrowCreate(BaseModel):
    order_id: uuid.UUID
    total_amount: int
    terms: list[TermSpec]


class TermComplete(BaseModel):
    documentation: list[str]


class FundRelease(BaseModel):
    amount: int | None = None
    reason: str = Field(..., min_length=1, max_length=1024)
    documentation: list[str] | None = None


class DisputeCreate(BaseModel):
    term_id: uuid.UUID | None = None
    reason: str = Field(..., min_length=1, max_length=256)
    description: str = Field(..., min_length=1)
    evidence: list[str]


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class TermResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    term_id: uuid.UUID
    escrow_id: uuid.UUID
    term_number: int
    name: str
    description: str
    percentage: Decimal
    amount: int
    status: str
    due_date: date | None
    started_at: datetime | None
    completed_at: datetime | None
    approved_at: datetime | None
    released_at: datetime | None
    documentation: list[str]
    approval_required: bool

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)

    @field_serializer("percentage")
    def serialize_percentage(self, v: Decimal) -> str:
        return str(v.quantize(Decimal("0.01")))


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    order_id: uuid.UUID
    client_user_id: uuid.UUID
    professional_id: uuid.UUID | None
    professional_user_id: uuid.UUID | None
    total_amount: int
    held_amount: int
    released_amount: int
    status: str
    funded_at: datetime | None
    created_at: datetime
    updated_at: datetime
    terms: list[TermResponse]

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    transaction_id: uuid.UUID
    escrow_id: uuid.UUID
    type: str
    amount: int
    description: str
    term_id: uuid.UUID | None
    payment_id: uuid.UUID | None
    created_by: uuid.UUID | None
    created_at: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("type", mode="before")
    @classmethod
    def serialize_type(cls, v: object) -> str:
        return _enum_value(v)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    escrow_id: uuid.UUID
    term_id: uuid.UUID | None
    raised_by: uuid.UUID
    reason: str
    description: str
    evidence: list[str]
    status: str
    resolution: str | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class EscrowStatsResponse(BaseModel):
    total_escrows: int
    total_amount: int
    held_amount: int
    released_amount: int
    status_breakdown: dict[str, int]


class LedgerVerification(BaseModel):
    escrow_id: uuid.UUID
    consistent: bool
    stored: dict[str, int]
    replayed: dict[str, int]
