"""
Webhook Signature Verification

HMAC-SHA256 verification of native platform webhooks so that only the
platform (holder of the shared signing secret) can enqueue events.
"""

import base64
import hashlib
import hmac
from typing import Optional

from loguru import logger

SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookSignatureValidator:
    """
    Validates webhook signatures computed over the raw request body.

    The sender signs the exact bytes it posts with the shared secret and
    sends the base64 digest in the X-Webhook-Signature header, optionally
    prefixed with "sha256=".
    """

    def __init__(self, secret: str):
        self.secret = secret

    def compute_signature(self, body: bytes) -> str:
        """
        Compute the base64-encoded HMAC-SHA256 of `body`.

        Args:
            body: Raw request body

        Returns:
            Base64-encoded signature
        """
        mac = hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256)
        return base64.b64encode(mac.digest()).decode("utf-8")

    def validate(self, body: bytes, signature: Optional[str]) -> bool:
        """
        Validate a webhook signature.

        Args:
            body: Raw request body
            signature: X-Webhook-Signature header value

        Returns:
            True if signature is valid, False otherwise
        """
        if not signature:
            return False

        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]

        try:
            expected = self.compute_signature(body)
            # Constant-time comparison
            return hmac.compare_digest(expected, signature.strip())
        except (TypeError, ValueError) as e:
            logger.error(f"Signature validation error: {e}")
            return False


def validate_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Convenience wrapper around WebhookSignatureValidator."""
    return WebhookSignatureValidator(secret).validate(body, signature)
