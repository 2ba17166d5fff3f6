"""Xendit invoice adapter."""

import hmac
import logging
from collections.abc import Mapping

from marketplace.config import settings
from marketplace.models.order import PaymentStatus
from marketplace.payments.base import (
    GatewayError,
    PaymentGateway,
    PaymentMethod,
    PaymentRequest,
    PaymentResult,
    PaymentStatusInfo,
    WebhookEvent,
    WebhookSignatureError,
    load_notification,
    to_minor_units,
)

logger = logging.getLogger(__name__)

API_URL = "https://api.xendit.co"

_STATUS_MAP = {
    "PENDING": PaymentStatus.PENDING,
    "PAID": PaymentStatus.PAID,
    "SETTLED": PaymentStatus.PAID,
    "EXPIRED": PaymentStatus.EXPIRED,
    "FAILED": PaymentStatus.FAILED,
}


def map_status(status: str | None) -> PaymentStatus:
    return _STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING)


class XenditGateway(PaymentGateway):
    name = "xendit"

    def __init__(self, secret_key: str | None = None, webhook_token: str | None = None) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.xendit_secret_key
        self.webhook_token = webhook_token if webhook_token is not None else settings.xendit_webhook_token

    @property
    def _auth(self) -> tuple[str, str]:
        return (self.secret_key, "")

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        payload: dict = {
            "external_id": request.order_id,
            "amount": request.amount,
            "currency": request.currency,
            "payer_email": request.customer_email,
            "description": request.description,
            "customer": {
                "given_names": request.customer_name,
                "email": request.customer_email,
                "mobile_number": request.customer_phone,
            },
            "success_redirect_url": request.redirect_url,
        }
        if request.method_code:
            payload["payment_methods"] = [request.method_code]

        data = await self._request("POST", f"{API_URL}/v2/invoices", json=payload, auth=self._auth)
        if not data.get("id"):
            raise GatewayError(self.name, "no invoice id in response")
        return PaymentResult(
            gateway=self.name,
            reference=data["id"],
            payment_url=data.get("invoice_url"),
            raw=data,
        )

    async def get_status(self, reference: str) -> PaymentStatusInfo:
        data = await self._request("GET", f"{API_URL}/v2/invoices/{reference}", auth=self._auth)
        status = map_status(data.get("status"))
        return PaymentStatusInfo(
            gateway=self.name,
            reference=reference,
            order_id=data.get("external_id", ""),
            status=status,
            amount=to_minor_units(data.get("amount")),
            paid_amount=to_minor_units(data.get("paid_amount")) if data.get("paid_amount") else None,
            payment_method=data.get("payment_method"),
        )

    async def list_methods(self) -> list[PaymentMethod]:
        return [
            PaymentMethod("BCA", "BCA Virtual Account", "bank_transfer", 4_000, 10_000, 50_000_000_000),
            PaymentMethod("BNI", "BNI Virtual Account", "bank_transfer", 4_000, 10_000, 50_000_000_000),
            PaymentMethod("BRI", "BRI Virtual Account", "bank_transfer", 4_000, 10_000, 50_000_000_000),
            PaymentMethod("MANDIRI", "Mandiri Virtual Account", "bank_transfer", 4_000, 10_000, 50_000_000_000),
            PaymentMethod("OVO", "OVO", "e_wallet", 0, 100, 10_000_000),
            PaymentMethod("DANA", "DANA", "e_wallet", 0, 100, 10_000_000),
            PaymentMethod("LINKAJA", "LinkAja", "e_wallet", 0, 100, 10_000_000),
        ]

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        # Xendit signs callbacks with the static verification token
        token = headers.get("x-callback-token", "")
        if not self.webhook_token or not hmac.compare_digest(token, self.webhook_token):
            raise WebhookSignatureError(self.name)
        payload = load_notification(self.name, body)

        status = map_status(payload.get("status"))
        return WebhookEvent(
            gateway=self.name,
            order_id=str(payload.get("external_id", "")),
            reference=str(payload.get("id", "")),
            status=status,
            amount=to_minor_units(payload.get("amount")),
            paid_amount=to_minor_units(payload.get("paid_amount")) if payload.get("paid_amount") else None,
            payment_method=payload.get("payment_method"),
            raw=payload,
        )

    async def cancel_payment(self, reference: str) -> bool:
        try:
            await self._request("POST", f"{API_URL}/invoices/{reference}/expire!", auth=self._auth)
        except GatewayError:
            logger.warning("Xendit expire failed for invoice %s", reference)
            return False
        return True
