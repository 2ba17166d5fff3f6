"""User registration and professional profiles."""

import logging
import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import InvalidState, NotFound, Unauthorized, ValidationFailed
from marketplace.models.user import Professional, User, UserRole
from marketplace.schemas.user import BalanceResponse, ProfessionalCreate, UserCreate
from marketplace.utils.crypto import is_valid_public_key
from marketplace.utils.money import format_amount

logger = logging.getLogger(__name__)


async def register_user(db: AsyncSession, data: UserCreate) -> User:
    if not is_valid_public_key(data.public_key):
        raise ValidationFailed("public_key must be a hex-encoded Ed25519 key")

    result = await db.execute(
        select(User).where(or_(User.email == data.email, User.public_key == data.public_key))
    )
    if result.scalars().first() is not None:
        raise InvalidState("Email or public key already registered")

    user = User(
        user_id=uuid.uuid4(),
        email=data.email,
        display_name=data.display_name,
        public_key=data.public_key,
        role=UserRole(data.role),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("User %s registered as %s", user.user_id, user.role.value)
    return user


async def create_professional(
    db: AsyncSession, user: User, data: ProfessionalCreate
) -> Professional:
    """Attach a professional profile to a user with the professional role."""
    if user.role != UserRole.PROFESSIONAL:
        raise Unauthorized("Only professional accounts can create a professional profile")

    result = await db.execute(select(Professional).where(Professional.user_id == user.user_id))
    if result.scalar_one_or_none() is not None:
        raise InvalidState("Professional profile already exists")

    professional = Professional(
        professional_id=uuid.uuid4(),
        user_id=user.user_id,
        business_name=data.business_name,
        description=data.description,
        balance=0,
    )
    db.add(professional)
    await db.commit()
    await db.refresh(professional)
    return professional


async def get_professional(db: AsyncSession, professional_id: uuid.UUID) -> Professional:
    result = await db.execute(
        select(Professional).where(Professional.professional_id == professional_id)
    )
    professional = result.scalar_one_or_none()
    if professional is None:
        raise NotFound("Professional not found")
    return professional


async def get_balance(
    db: AsyncSession, professional_id: uuid.UUID, caller: User
) -> BalanceResponse:
    """Payable balance; visible to the professional and administrators."""
    professional = await get_professional(db, professional_id)
    if professional.user_id != caller.user_id and caller.role != UserRole.ADMIN:
        raise Unauthorized("Can only view own balance")
    return BalanceResponse(
        professional_id=professional.professional_id,
        balance=professional.balance,
        currency=settings.currency,
        formatted=format_amount(professional.balance, settings.currency),
    )
