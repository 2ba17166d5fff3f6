"""User registration and professional profile endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, verify_request
from marketplace.database import get_db
from marketplace.schemas.user import (
    BalanceResponse,
    ProfessionalCreate,
    ProfessionalResponse,
    UserCreate,
    UserResponse,
)
from marketplace.services import user as user_service

router = APIRouter(tags=["users"])


@router.post("/users", response_model=UserResponse, status_code=201)
async def register_user(
    data: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    """Register a client or professional with their Ed25519 public key."""
    user = await user_service.register_user(db, data)
    return UserResponse.model_validate(user)


@router.get("/users/me", response_model=UserResponse)
async def get_me(auth: AuthenticatedUser = Depends(verify_request)) -> UserResponse:
    return UserResponse.model_validate(auth.user)


@router.post("/professionals", response_model=ProfessionalResponse, status_code=201)
async def create_professional(
    data: ProfessionalCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProfessionalResponse:
    professional = await user_service.create_professional(db, auth.user, data)
    return ProfessionalResponse.model_validate(professional)


@router.get("/professionals/{professional_id}", response_model=ProfessionalResponse)
async def get_professional(
    professional_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> ProfessionalResponse:
    professional = await user_service.get_professional(db, professional_id)
    return ProfessionalResponse.model_validate(professional)


@router.get("/professionals/{professional_id}/balance", response_model=BalanceResponse)
async def get_balance(
    professional_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """Payable balance accumulated from escrow releases."""
    return await user_service.get_balance(db, professional_id, auth.user)
