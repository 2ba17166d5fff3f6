"""Order deposit payments through the gateway adapters."""

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import InvalidState, NotFound, Unauthorized
from marketplace.models.order import Order, OrderStatus, PaymentStatus
from marketplace.models.payment import Payment
from marketplace.models.user import User
from marketplace.payments.base import (
    PaymentGateway,
    PaymentRequest,
    PaymentResult,
    WebhookEvent,
    WebhookSignatureError,
)
from marketplace.payments.routing import best_gateway_for_amount, gateway_for_method, get_gateway
from marketplace.repositories.escrow import EscrowRepository
from marketplace.services.escrow import EscrowService

logger = logging.getLogger(__name__)


async def _get_owned_order(db: AsyncSession, order_id: uuid.UUID, user_id: uuid.UUID) -> Order:
    result = await db.execute(select(Order).where(Order.order_id == order_id))
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found")
    if order.client_user_id != user_id:
        raise Unauthorized("Only the order's client can manage its payments")
    return order


async def _get_owned_payment(db: AsyncSession, payment_id: uuid.UUID, user_id: uuid.UUID) -> Payment:
    result = await db.execute(select(Payment).where(Payment.payment_id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment not found")
    await _get_owned_order(db, payment.order_id, user_id)
    return payment


def choose_gateway(amount: int, gateway: str | None = None, method_code: str | None = None) -> str:
    """Explicit gateway wins, then the method's gateway, then the amount policy."""
    if gateway:
        return gateway
    if method_code:
        return gateway_for_method(method_code)
    return best_gateway_for_amount(amount)


async def create_payment(
    db: AsyncSession,
    order_id: uuid.UUID,
    user_id: uuid.UUID,
    gateway: str | None = None,
    method_code: str | None = None,
    adapter: PaymentGateway | None = None,
) -> tuple[Payment, PaymentResult]:
    """Open a gateway payment for the order's full total."""
    order = await _get_owned_order(db, order_id, user_id)
    if order.payment_status == PaymentStatus.PAID:
        raise InvalidState("Order is already paid")

    result = await db.execute(select(User).where(User.user_id == user_id))
    customer = result.scalar_one()

    name = choose_gateway(order.total_amount, gateway, method_code)
    adapter = adapter or get_gateway(name)
    created = await adapter.create_payment(PaymentRequest(
        order_id=str(order.order_id),
        amount=order.total_amount,
        customer_name=customer.display_name,
        customer_email=customer.email,
        description=order.title,
        currency=settings.currency,
        method_code=method_code,
        redirect_url=settings.payment_redirect_url,
        callback_url=f"{settings.payment_redirect_url.rstrip('/')}/webhook/{adapter.name}",
    ))

    payment = Payment(
        payment_id=uuid.uuid4(),
        order_id=order.order_id,
        gateway=adapter.name,
        gateway_reference=created.reference,
        amount=order.total_amount,
        status=PaymentStatus.PENDING,
        payment_url=created.payment_url,
        payment_method=method_code,
    )
    db.add(payment)
    order.payment_status = PaymentStatus.PENDING
    await db.commit()
    await db.refresh(payment)

    logger.info(
        "Payment %s opened on %s for order %s (ref %s)",
        payment.payment_id, adapter.name, order.order_id, created.reference,
    )
    return payment, created


async def refresh_payment_status(
    db: AsyncSession,
    payment_id: uuid.UUID,
    user_id: uuid.UUID,
    adapter: PaymentGateway | None = None,
) -> Payment:
    """Poll the gateway and apply the result as if it were a webhook."""
    payment = await _get_owned_payment(db, payment_id, user_id)
    adapter = adapter or get_gateway(payment.gateway)
    info = await adapter.get_status(payment.gateway_reference)
    event = WebhookEvent(
        gateway=info.gateway,
        order_id=str(payment.order_id),
        reference=info.reference,
        status=info.status,
        amount=info.amount,
        paid_amount=info.paid_amount,
        payment_method=info.payment_method,
    )
    return await apply_payment_event(db, event)


async def cancel_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    user_id: uuid.UUID,
    adapter: PaymentGateway | None = None,
) -> Payment:
    payment = await _get_owned_payment(db, payment_id, user_id)
    if payment.status != PaymentStatus.PENDING:
        raise InvalidState(f"Payment is {payment.status.value} and cannot be cancelled")
    adapter = adapter or get_gateway(payment.gateway)
    if not await adapter.cancel_payment(payment.gateway_reference):
        raise InvalidState(f"{payment.gateway} refused to cancel payment {payment.gateway_reference}")

    payment.status = PaymentStatus.CANCELLED
    result = await db.execute(select(Order).where(Order.order_id == payment.order_id))
    order = result.scalar_one()
    if order.payment_status == PaymentStatus.PENDING:
        order.payment_status = PaymentStatus.CANCELLED
    await db.commit()
    await db.refresh(payment)
    return payment


async def handle_webhook(
    db: AsyncSession,
    gateway: str,
    body: bytes,
    headers: Mapping[str, str],
    adapter: PaymentGateway | None = None,
) -> Payment:
    """Verify a gateway notification and apply it."""
    adapter = adapter or get_gateway(gateway)
    try:
        event = adapter.verify_webhook(body, headers)
    except WebhookSignatureError:
        logger.warning("Rejected %s webhook with bad signature", gateway)
        raise
    return await apply_payment_event(db, event)


async def apply_payment_event(db: AsyncSession, event: WebhookEvent) -> Payment:
    """Record a verified payment status; a settled deposit activates the escrow."""
    try:
        order_id = uuid.UUID(event.order_id)
    except ValueError:
        raise NotFound(f"Unknown order reference {event.order_id!r}")

    result = await db.execute(
        select(Payment).where(
            Payment.order_id == order_id,
            Payment.gateway == event.gateway,
        ).order_by(Payment.created_at.desc())
    )
    payment = result.scalars().first()
    if payment is None:
        raise NotFound("Payment not found for this notification")

    result = await db.execute(select(Order).where(Order.order_id == order_id))
    order = result.scalar_one()

    settled = event.status == PaymentStatus.PAID
    if settled and (event.paid_amount or event.amount) < payment.amount:
        logger.warning(
            "Underpaid %s notification for order %s: %s < %s",
            event.gateway, order_id, event.paid_amount or event.amount, payment.amount,
        )
        settled = False
        event.status = PaymentStatus.PENDING

    if payment.status != PaymentStatus.PAID:
        payment.status = event.status
        payment.gateway_reference = event.reference or payment.gateway_reference
        payment.payment_method = event.payment_method or payment.payment_method
        payment.raw_payload = event.raw or None
        if settled:
            payment.paid_at = datetime.now(UTC)
            order.payment_status = PaymentStatus.PAID
            if order.status == OrderStatus.PENDING:
                order.status = OrderStatus.CONFIRMED
        elif order.payment_status != PaymentStatus.PAID:
            order.payment_status = event.status
    await db.commit()
    await db.refresh(payment)

    if payment.status == PaymentStatus.PAID:
        await EscrowService(EscrowRepository(db)).confirm_deposit(order_id, payment.payment_id)
    return payment
