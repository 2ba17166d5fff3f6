"""Pydantic v2 schemas for users and professional profiles."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    display_name: str = Field(..., min_length=1, max_length=128)
    public_key: str = Field(..., max_length=128, description="Ed25519 public key (hex)")
    # Admins are provisioned out of band
    role: Literal["client", "professional"] = "client"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("email must look like name@example.com")
        return v.lower()


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    email: str
    display_name: str
    public_key: str
    role: str
    created_at: datetime

    @field_validator("role", mode="before")
    @classmethod
    def serialize_role(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class ProfessionalCreate(BaseModel):
    business_name: str = Field(..., min_length=1, max_length=256)
    description: str | None = Field(None, max_length=4096)


class ProfessionalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    professional_id: uuid.UUID
    user_id: uuid.UUID
    business_name: str
    description: str | None
    created_at: datetime


class BalanceResponse(BaseModel):
    professional_id: uuid.UUID
    balance: int
    currency: str
    formatted: str
