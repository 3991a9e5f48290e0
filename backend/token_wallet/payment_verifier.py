"""
Payment Verifier

HMAC-SHA256 verification of gateway-supplied identifiers.

Required Environment Variables:
- RAZORPAY_KEY_SECRET (checkout signature)
- RAZORPAY_WEBHOOK_SECRET (webhook body signature)
"""

import hashlib
import hmac
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


def compute_signature(secret: str, message: str) -> str:
    """Hex HMAC-SHA256 of message under secret."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class PaymentVerifier:
    """Verifies checkout and webhook signatures against server-held secrets."""

    def __init__(self, key_secret: Optional[str] = None, webhook_secret: Optional[str] = None):
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    @property
    def key_secret(self) -> str:
        return self._key_secret or os.environ.get("RAZORPAY_KEY_SECRET", "")

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret or os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Verify a checkout signature over "{order_id}|{payment_id}".

        A missing secret never verifies.
        """
        if not self.key_secret:
            logger.error("RAZORPAY_KEY_SECRET not configured")
            return False

        if not signature:
            return False

        expected = compute_signature(self.key_secret, f"{order_id}|{payment_id}")
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """Verify a webhook signature over the raw request body."""
        if not self.webhook_secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET not configured")
            return False

        if not signature:
            return False

        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)
