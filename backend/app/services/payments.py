import hashlib
import hmac
import json
import logging
import os
from typing import Any, Dict, Optional
from uuid import uuid4

from app.models import PaymentIntent
from app.services.errors import PaymentVerificationError

logger = logging.getLogger(__name__)

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
_PAYMENT_SECRET = os.getenv("PAYMENT_SECRET", "dev-payment-secret-change-me")
_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", _PAYMENT_SECRET)


class PaymentGateway:
    """Payment provider seam: create an intent, confirm it, refund it."""

    name = "abstract"

    def create_intent(self, booking_id: str, amount: float) -> PaymentIntent:
        raise NotImplementedError

    def confirm(self, intent_id: str, transaction_id: str, signature: str) -> None:
        raise NotImplementedError

    def refund(self, transaction_id: str, amount: float) -> str:
        raise NotImplementedError

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError


class LocalPaymentGateway(PaymentGateway):
    """Self-contained gateway that signs intents with an HMAC secret.

    Confirmation follows the order/payment/signature handshake used by hosted
    checkouts: the client returns ``HMAC(secret, "{intent_id}|{transaction_id}")``.
    """

    name = "local"

    def __init__(self, secret: str = _PAYMENT_SECRET, webhook_secret: str = _WEBHOOK_SECRET) -> None:
        self._secret = secret.encode("utf-8")
        self._webhook_secret = webhook_secret.encode("utf-8")

    def sign(self, intent_id: str, transaction_id: str) -> str:
        payload = f"{intent_id}|{transaction_id}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def sign_webhook(self, body: bytes) -> str:
        return hmac.new(self._webhook_secret, body, hashlib.sha256).hexdigest()

    def create_intent(self, booking_id: str, amount: float) -> PaymentIntent:
        # Amounts travel in minor units (paise, cents).
        return PaymentIntent(
            intent_id=f"pi_{uuid4().hex[:16]}",
            amount=int(round(amount * 100)),
            currency=PAYMENT_CURRENCY,
            gateway=self.name,
            client_key=f"local_{booking_id}",
        )

    def confirm(self, intent_id: str, transaction_id: str, signature: str) -> None:
        expected = self.sign(intent_id, transaction_id)
        if not signature or not hmac.compare_digest(expected, signature):
            logger.warning("Payment signature mismatch for intent %s", intent_id)
            raise PaymentVerificationError("Payment signature verification failed")

    def refund(self, transaction_id: str, amount: float) -> str:
        refund_id = f"rf_{uuid4().hex[:12]}"
        logger.info("Refunded %.2f on %s as %s", amount, transaction_id, refund_id)
        return refund_id

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        expected = self.sign_webhook(body)
        if not signature or not hmac.compare_digest(expected, signature):
            raise PaymentVerificationError("Invalid webhook signature")
        try:
            event = json.loads(body.decode("utf-8"))
        except ValueError as exc:
            raise PaymentVerificationError("Malformed webhook payload") from exc
        if not isinstance(event, dict):
            raise PaymentVerificationError("Malformed webhook payload")
        return event


payment_gateway = LocalPaymentGateway()
