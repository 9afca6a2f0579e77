"""Webhook signature verification (HMAC-SHA256, constant-time compare).

Security contract:
- The digest is computed over the raw request bytes, never a re-serialized body
- Comparison uses hmac.compare_digest() (constant-time, no timing attacks)
- Missing secret -> verification always fails (fail-closed)
- Malformed input is "not verified", never an exception
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

from event_manager.webhooks.models import WebhookEnvelope

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-shopify-hmac-sha256"


def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    """Base64 HMAC-SHA256 of ``raw_body`` under ``shared_secret``."""
    digest = hmac.new(shared_secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    shared_secret: str | None,
) -> bool:
    """Verify a Shopify webhook signature.

    Shopify sends: X-Shopify-Hmac-SHA256 header (base64-encoded HMAC-SHA256).

    Args:
        raw_body: Raw request body bytes, exactly as received
        signature_header: Value of X-Shopify-Hmac-SHA256 header
        shared_secret: The app's webhook secret

    Returns:
        True if signature is valid
    """
    if not shared_secret:
        logger.warning("Webhook secret not set, rejecting webhook")
        return False
    if not signature_header or not isinstance(signature_header, str):
        return False
    if not isinstance(raw_body, (bytes, bytearray, memoryview)):
        return False

    try:
        provided = base64.b64decode(signature_header.strip(), validate=True)
    except (binascii.Error, ValueError):
        return False

    expected = hmac.new(
        shared_secret.encode("utf-8"),
        bytes(raw_body),
        hashlib.sha256,
    ).digest()

    return hmac.compare_digest(expected, provided)


class WebhookAuthenticator:
    """Binds the shared secret once so callers only pass the envelope."""

    def __init__(self, shared_secret: str) -> None:
        self._secret = shared_secret

    def verify(self, raw_body: bytes, signature_header: str | None) -> bool:
        return verify_signature(raw_body, signature_header, self._secret)

    def authenticate(self, envelope: WebhookEnvelope) -> bool:
        verified = self.verify(envelope.raw_body, envelope.signature_header)
        if not verified:
            logger.warning(
                "HMAC verification failed: shop=%s topic=%s id=%s",
                envelope.shop_domain,
                envelope.topic,
                envelope.delivery_id,
            )
        return verified
