"""Midtrans Snap adapter."""

import hashlib
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

_STATUS_MAP = {
    "capture": PaymentStatus.PAID,
    "settlement": PaymentStatus.PAID,
    "pending": PaymentStatus.PENDING,
    "deny": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "cancel": PaymentStatus.CANCELLED,
    "expire": PaymentStatus.EXPIRED,
}


def map_status(transaction_status: str | None) -> PaymentStatus:
    return _STATUS_MAP.get(transaction_status or "", PaymentStatus.PENDING)


def notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """sha512(order_id + status_code + gross_amount + server_key), hex."""
    return hashlib.sha512(
        f"{order_id}{status_code}{gross_amount}{server_key}".encode()
    ).hexdigest()


class MidtransGateway(PaymentGateway):
    name = "midtrans"

    def __init__(self, server_key: str | None = None) -> None:
        self.server_key = server_key if server_key is not None else settings.midtrans_server_key

    @property
    def _auth(self) -> tuple[str, str]:
        return (self.server_key, "")

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        payload = {
            "transaction_details": {
                "order_id": request.order_id,
                "gross_amount": request.amount,
            },
            "customer_details": {
                "first_name": request.customer_name,
                "email": request.customer_email,
                "phone": request.customer_phone,
            },
            "item_details": [{
                "id": request.order_id,
                "price": request.amount,
                "quantity": 1,
                "name": request.description[:50],
            }],
            "callbacks": {"finish": request.redirect_url},
        }
        if request.method_code:
            payload["enabled_payments"] = [request.method_code]

        data = await self._request(
            "POST", f"{settings.midtrans_snap_url}/transactions", json=payload, auth=self._auth,
        )
        if not data.get("redirect_url"):
            raise GatewayError(self.name, "no redirect_url in response")
        # Midtrans keys transactions by our order id
        return PaymentResult(
            gateway=self.name,
            reference=request.order_id,
            payment_url=data["redirect_url"],
            raw=data,
        )

    async def get_status(self, reference: str) -> PaymentStatusInfo:
        data = await self._request(
            "GET", f"{settings.midtrans_api_url}/{reference}/status", auth=self._auth,
        )
        status = map_status(data.get("transaction_status"))
        amount = to_minor_units(data.get("gross_amount"))
        return PaymentStatusInfo(
            gateway=self.name,
            reference=reference,
            order_id=data.get("order_id", reference),
            status=status,
            amount=amount,
            paid_amount=amount if status == PaymentStatus.PAID else None,
            payment_method=data.get("payment_type"),
        )

    async def list_methods(self) -> list[PaymentMethod]:
        # Midtrans has no method-listing API
        return [
            PaymentMethod("credit_card", "Credit Card", "credit_card", 0, 10_000, 500_000_000),
            PaymentMethod("bank_transfer", "Bank Transfer", "bank_transfer", 4_000, 10_000, 500_000_000),
            PaymentMethod("gopay", "GoPay", "e_wallet", 0, 1_000, 20_000_000),
            PaymentMethod("shopeepay", "ShopeePay", "e_wallet", 0, 1_000, 20_000_000),
            PaymentMethod("qris", "QRIS", "qris", 0, 1_000, 20_000_000),
        ]

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        payload = load_notification(self.name, body)

        expected = notification_signature(
            str(payload.get("order_id", "")),
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
            self.server_key,
        )
        if not self.server_key or not hmac.compare_digest(expected, str(payload.get("signature_key", ""))):
            raise WebhookSignatureError(self.name)

        status = map_status(payload.get("transaction_status"))
        amount = to_minor_units(payload.get("gross_amount"))
        return WebhookEvent(
            gateway=self.name,
            order_id=str(payload["order_id"]),
            reference=str(payload["order_id"]),
            status=status,
            amount=amount,
            paid_amount=amount if status == PaymentStatus.PAID else None,
            payment_method=payload.get("payment_type"),
            raw=payload,
        )

    async def cancel_payment(self, reference: str) -> bool:
        try:
            await self._request(
                "POST", f"{settings.midtrans_api_url}/{reference}/cancel", auth=self._auth,
            )
        except GatewayError:
            logger.warning("Midtrans cancel failed for %s", reference)
            return False
        return True
