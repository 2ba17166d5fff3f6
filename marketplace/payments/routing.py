"""Gateway registry and routing policy."""

from marketplace.config import settings
from marketplace.errors import NotFound
from marketplace.payments.base import PaymentGateway
from marketplace.payments.midtrans import MidtransGateway
from marketplace.payments.tripay import TripayGateway
from marketplace.payments.xendit import XenditGateway

GATEWAY_NAMES = ("midtrans", "xendit", "tripay")

_METHOD_GATEWAYS = {
    **dict.fromkeys(("credit_card", "bank_transfer", "gopay", "shopeepay", "qris"), "midtrans"),
    **dict.fromkeys(("BCA", "BNI", "BRI", "MANDIRI", "OVO", "DANA", "LINKAJA"), "xendit"),
    **dict.fromkeys(("BRIVA", "BCAVA", "BNIVA", "MANDIRIVA"), "tripay"),
}


def get_gateway(name: str) -> PaymentGateway:
    """Build a gateway adapter from current settings."""
    if name == "midtrans":
        return MidtransGateway()
    if name == "xendit":
        return XenditGateway()
    if name == "tripay":
        return TripayGateway()
    raise NotFound(f"Payment gateway {name} not found")


def best_gateway_for_amount(amount: int) -> str:
    """Large payments go to Midtrans, medium to Xendit, small to Tripay."""
    if amount >= settings.gateway_midtrans_min_amount:
        return "midtrans"
    if amount >= settings.gateway_xendit_min_amount:
        return "xendit"
    return "tripay"


def gateway_for_method(method_code: str) -> str:
    return _METHOD_GATEWAYS.get(method_code, "midtrans")
