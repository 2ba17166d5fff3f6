"""Tripay closed-payment adapter."""

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

DEFAULT_METHOD = "BRIVA"

_STATUS_MAP = {
    "UNPAID": PaymentStatus.PENDING,
    "PAID": PaymentStatus.PAID,
    "EXPIRED": PaymentStatus.EXPIRED,
    "FAILED": PaymentStatus.FAILED,
    "REFUND": PaymentStatus.CANCELLED,
}


def map_status(status: str | None) -> PaymentStatus:
    return _STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING)


def _hmac_sha256(key: str, message: bytes) -> str:
    return hmac.new(key.encode(), message, hashlib.sha256).hexdigest()


class TripayGateway(PaymentGateway):
    name = "tripay"

    def __init__(
        self,
        api_key: str | None = None,
        private_key: str | None = None,
        merchant_code: str | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.tripay_api_key
        self.private_key = private_key if private_key is not None else settings.tripay_private_key
        self.merchant_code = merchant_code if merchant_code is not None else settings.tripay_merchant_code

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def transaction_signature(self, merchant_ref: str, amount: int) -> str:
        return _hmac_sha256(self.private_key, f"{self.merchant_code}{merchant_ref}{amount}".encode())

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        payload = {
            "method": request.method_code or DEFAULT_METHOD,
            "merchant_ref": request.order_id,
            "amount": request.amount,
            "customer_name": request.customer_name,
            "customer_email": request.customer_email,
            "customer_phone": request.customer_phone,
            "order_items": [{
                "sku": request.order_id,
                "name": request.description,
                "price": request.amount,
                "quantity": 1,
            }],
            "return_url": request.redirect_url,
            "callback_url": request.callback_url,
            "signature": self.transaction_signature(request.order_id, request.amount),
        }
        data = await self._request(
            "POST", f"{settings.tripay_api_url}/transaction/create", json=payload, headers=self._headers,
        )
        if not data.get("success"):
            raise GatewayError(self.name, data.get("message") or "transaction rejected")
        tx = data["data"]
        return PaymentResult(
            gateway=self.name,
            reference=tx["reference"],
            payment_url=tx.get("checkout_url"),
            raw=data,
        )

    async def get_status(self, reference: str) -> PaymentStatusInfo:
        data = await self._request(
            "GET", f"{settings.tripay_api_url}/transaction/detail",
            params={"reference": reference}, headers=self._headers,
        )
        if not data.get("success"):
            raise GatewayError(self.name, data.get("message") or "transaction lookup failed")
        tx = data["data"]
        status = map_status(tx.get("status"))
        return PaymentStatusInfo(
            gateway=self.name,
            reference=reference,
            order_id=tx.get("merchant_ref", ""),
            status=status,
            amount=to_minor_units(tx.get("amount")),
            paid_amount=to_minor_units(tx.get("amount_received")) if status == PaymentStatus.PAID else None,
            payment_method=tx.get("payment_method"),
        )

    async def list_methods(self) -> list[PaymentMethod]:
        data = await self._request(
            "GET", f"{settings.tripay_api_url}/merchant/payment-channel", headers=self._headers,
        )
        methods = []
        for channel in data.get("data") or []:
            fee = channel.get("fee_customer") or {}
            methods.append(PaymentMethod(
                code=channel.get("code", ""),
                name=channel.get("name", ""),
                type="e_wallet" if channel.get("group") == "E-Wallet" else "bank_transfer",
                fee=to_minor_units(fee.get("flat")),
                min_amount=to_minor_units(channel.get("minimum_amount")),
                max_amount=to_minor_units(channel.get("maximum_amount")),
                is_active=bool(channel.get("active", True)),
            ))
        return methods

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        signature = headers.get("x-callback-signature", "")
        expected = _hmac_sha256(self.private_key, body)
        if not self.private_key or not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError(self.name)
        payload = load_notification(self.name, body)

        status = map_status(payload.get("status"))
        return WebhookEvent(
            gateway=self.name,
            order_id=str(payload.get("merchant_ref", "")),
            reference=str(payload.get("reference", "")),
            status=status,
            amount=to_minor_units(payload.get("total_amount") or payload.get("amount")),
            paid_amount=to_minor_units(payload.get("amount_received")) if status == PaymentStatus.PAID else None,
            payment_method=payload.get("payment_method"),
            raw=payload,
        )

    async def cancel_payment(self, reference: str) -> bool:
        # Tripay closed payments cannot be cancelled; they expire on their own.
        logger.info("Tripay payment %s cannot be cancelled; waiting for expiry", reference)
        return False
