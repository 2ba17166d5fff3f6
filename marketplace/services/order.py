"""Orders: the commercial agreement an escrow account is opened against."""

import logging
import uuid

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import NotFound, Unauthorized, ValidationFailed
from marketplace.models.order import Order, OrderStatus, PaymentStatus
from marketplace.models.user import Professional, User, UserRole
from marketplace.schemas.order import OrderCreate
from marketplace.services.user import get_professional

logger = logging.getLogger(__name__)


async def create_order(db: AsyncSession, client: User, data: OrderCreate) -> Order:
    if client.role != UserRole.CLIENT:
        raise Unauthorized("Only clients can place orders")
    professional = await get_professional(db, data.professional_id)
    if professional.user_id == client.user_id:
        raise ValidationFailed("Cannot order from yourself")

    order = Order(
        order_id=uuid.uuid4(),
        client_user_id=client.user_id,
        professional_id=professional.professional_id,
        title=data.title,
        description=data.description,
        total_amount=data.total_amount,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)
    logger.info(
        "Order %s placed by %s with professional %s for %d",
        order.order_id, client.user_id, professional.professional_id, order.total_amount,
    )
    return order


async def get_order(db: AsyncSession, order_id: uuid.UUID, user_id: uuid.UUID) -> Order:
    """Visible to the ordering client and the assigned professional."""
    result = await db.execute(select(Order).where(Order.order_id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found")
    professional = order.professional
    if order.client_user_id != user_id and (professional is None or professional.user_id != user_id):
        raise Unauthorized("Not a party to this order")
    return order


async def list_orders(db: AsyncSession, user_id: uuid.UUID) -> list[Order]:
    result = await db.execute(
        select(Order)
        .outerjoin(Professional, Order.professional_id == Professional.professional_id)
        .where(or_(Order.client_user_id == user_id, Professional.user_id == user_id))
        .order_by(Order.created_at.desc())
    )
    return list(result.scalars().all())
