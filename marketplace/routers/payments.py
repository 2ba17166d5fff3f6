"""Deposit payment endpoints and gateway webhooks."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, verify_request
from marketplace.database import get_db
from marketplace.payments.base import GatewayError
from marketplace.payments.routing import GATEWAY_NAMES, get_gateway
from marketplace.schemas.payment import (
    PaymentCreate,
    PaymentMethodResponse,
    PaymentResponse,
    WebhookAck,
)
from marketplace.services import payment as payment_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentResponse, status_code=201)
async def create_payment(
    data: PaymentCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Open a gateway checkout for the order's deposit."""
    payment, _ = await payment_service.create_payment(
        db, data.order_id, auth.user_id, gateway=data.gateway, method_code=data.method_code,
    )
    return PaymentResponse.model_validate(payment)


@router.get("/methods", response_model=list[PaymentMethodResponse])
async def list_payment_methods(
    amount: int | None = Query(None, gt=0),
    gateway: str | None = Query(None),
) -> list[PaymentMethodResponse]:
    """Active methods across gateways, optionally filtered to those accepting amount."""
    names = [gateway] if gateway else list(GATEWAY_NAMES)
    methods = []
    for name in names:
        adapter = get_gateway(name)
        try:
            available = await adapter.list_methods()
        except GatewayError as e:
            logger.warning("Skipping %s payment methods: %s", name, e.detail)
            continue
        for method in available:
            if not method.is_active:
                continue
            if amount is not None and not (method.min_amount <= amount <= method.max_amount):
                continue
            methods.append(PaymentMethodResponse(gateway=name, **method.to_dict()))
    return methods


@router.get("/{payment_id}/status", response_model=PaymentResponse)
async def payment_status(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    """Poll the gateway for the latest status."""
    payment = await payment_service.refresh_payment_status(db, payment_id, auth.user_id)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    payment = await payment_service.cancel_payment(db, payment_id, auth.user_id)
    return PaymentResponse.model_validate(payment)


@router.post("/webhook/{gateway}", response_model=WebhookAck)
async def payment_webhook(
    gateway: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    """Gateway notification. Authenticated by the gateway's own signature."""
    body = await request.body()
    payment = await payment_service.handle_webhook(db, gateway, body, request.headers)
    return WebhookAck(payment_id=payment.payment_id, status=payment.status.value)
