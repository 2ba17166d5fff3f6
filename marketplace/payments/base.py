"""Payment gateway capability interface.

Each gateway adapter (Midtrans, Xendit, Tripay) implements the same five
operations. The escrow core only cares about the verified webhook event that
tells it a deposit has settled.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
from fastapi import HTTPException

from marketplace.config import settings
from marketplace.models.order import PaymentStatus

logger = logging.getLogger(__name__)


class GatewayError(HTTPException):
    """Upstream gateway unreachable or returned an error."""

    def __init__(self, gateway: str, detail: str) -> None:
        super().__init__(status_code=502, detail=f"{gateway}: {detail}")


class WebhookSignatureError(HTTPException):
    def __init__(self, gateway: str) -> None:
        super().__init__(status_code=401, detail=f"Invalid {gateway} webhook signature")


@dataclass
class PaymentRequest:
    order_id: str
    amount: int
    customer_name: str
    customer_email: str
    description: str
    currency: str = "IDR"
    customer_phone: str | None = None
    method_code: str | None = None
    redirect_url: str | None = None
    callback_url: str | None = None


@dataclass
class PaymentResult:
    gateway: str
    reference: str
    payment_url: str | None = None
    expires_at: datetime | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class PaymentStatusInfo:
    gateway: str
    reference: str
    order_id: str
    status: PaymentStatus
    amount: int
    paid_amount: int | None = None
    payment_method: str | None = None


@dataclass
class PaymentMethod:
    code: str
    name: str
    type: str  # bank_transfer, e_wallet, retail, qris, credit_card
    fee: int
    min_amount: int
    max_amount: int
    is_active: bool = True

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "fee": self.fee,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "is_active": self.is_active,
        }


@dataclass
class WebhookEvent:
    """A verified, gateway-neutral payment notification."""
    gateway: str
    order_id: str
    reference: str
    status: PaymentStatus
    amount: int
    paid_amount: int | None = None
    payment_method: str | None = None
    raw: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    name: str = ""

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        ...

    @abstractmethod
    async def get_status(self, reference: str) -> PaymentStatusInfo:
        ...

    @abstractmethod
    async def list_methods(self) -> list[PaymentMethod]:
        ...

    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Check the notification signature and normalize the payload.

        Raises WebhookSignatureError if the signature does not match.
        """

    @abstractmethod
    async def cancel_payment(self, reference: str) -> bool:
        ...

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict:
        async with httpx.AsyncClient(timeout=settings.payment_http_timeout_seconds) as client:
            try:
                resp = await client.request(method, url, **kwargs)
            except httpx.TimeoutException:
                logger.error("%s API timed out: %s %s", self.name, method, url)
                raise GatewayError(self.name, "request timed out")
            except httpx.RequestError as e:
                logger.error("%s API request failed: %s", self.name, e)
                raise GatewayError(self.name, "gateway unreachable")

        if resp.status_code >= 400:
            logger.error("%s returned %d: %s", self.name, resp.status_code, resp.text[:500])
            raise GatewayError(self.name, f"request failed (status {resp.status_code})")
        return resp.json()


def to_minor_units(value: Any) -> int:
    """Gateways report amounts as strings like "150000.00"; escrow uses integers."""
    if value is None or value == "":
        return 0
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def load_notification(gateway: str, body: bytes) -> dict:
    """Parse a webhook body; anything but a JSON object is treated as forged."""
    try:
        payload = json.loads(body)
    except ValueError:
        raise WebhookSignatureError(gateway)
    if not isinstance(payload, dict):
        raise WebhookSignatureError(gateway)
    return payload
