"""
Payment Provider Protocol - Gateway-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.

The gateway itself is an external collaborator: the service only creates
orders and verifies the signature the client relays after paying.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from app.config import settings


@dataclass(frozen=True)
class PaymentOrderResult:
    """
    Gateway order awaiting payment.

    Returned to the client to open the gateway's checkout.
    """

    order_id: str
    amount_minor: int
    currency: str
    key: str  # Public key id the client hands to the gateway widget


def to_minor_units(amount: Decimal) -> int:
    """Decimal major units to integer minor units (cents)."""
    return int((amount * 100).to_integral_value())


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any gateway must implement this interface to stay pluggable.
    """

    async def create_order(self, amount: Decimal, currency: str, receipt: str) -> PaymentOrderResult:
        """
        Create an order with the gateway.

        Args:
            amount: Amount in major units
            currency: ISO 4217 code
            receipt: Our reference for the purchase

        Returns:
            Order details for the client
        """
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Verify the payment signature relayed by the client.

        Returns:
            True if the signature proves the payment of this order
        """
        ...


class HmacPaymentProvider:
    """
    Local gateway-agnostic provider.

    Order ids are random; the verified-payment signature is
    HMAC-SHA256(key_secret, "order_id|payment_id") in hex.
    """

    def __init__(self, key_id: str | None = None, key_secret: str | None = None) -> None:
        self.key_id = key_id if key_id is not None else settings.payment_key_id
        self.key_secret = key_secret if key_secret is not None else settings.payment_key_secret

    async def create_order(self, amount: Decimal, currency: str, receipt: str) -> PaymentOrderResult:
        return PaymentOrderResult(
            order_id=f"order_{secrets.token_hex(12)}",
            amount_minor=to_minor_units(amount),
            currency=currency,
            key=self.key_id,
        )

    def sign(self, order_id: str, payment_id: str) -> str:
        message = f"{order_id}|{payment_id}".encode()
        return hmac.new(self.key_secret.encode(), message, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            return False
        return hmac.compare_digest(self.sign(order_id, payment_id), signature)
