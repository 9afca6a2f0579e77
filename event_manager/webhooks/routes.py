"""FastAPI routes for inbound Shopify webhooks.

Each delivery:
1. Reads the raw body (needed for HMAC verification)
2. Verifies the signature
3. Parses the JSON payload
4. Drops duplicate deliveries
5. Dispatches to the topic handler and returns its result

Security contract:
- Signature failures -> 401, payload never parsed
- Every authenticated delivery -> 200, handled failures included, so the
  provider does not redeliver into a failure loop
- Internal error details never leave the service
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from event_manager.webhooks.models import WebhookEnvelope

if TYPE_CHECKING:
    from event_manager.app import Services

logger = logging.getLogger(__name__)

TOPIC_HEADER = "x-shopify-topic"
SHOP_HEADER = "x-shopify-shop-domain"
DELIVERY_HEADER = "x-shopify-webhook-id"
API_VERSION_HEADER = "x-shopify-api-version"
SIGNATURE_HEADER = "x-shopify-hmac-sha256"


def _log_webhook(topic: str, shop: str, delivery_id: str | None, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT topic=%s shop=%s id=%s status=%s",
        topic,
        shop,
        delivery_id or "unknown",
        status,
    )


def build_envelope(request: Request, body: bytes, path_topic: str) -> WebhookEnvelope:
    """Collect delivery metadata; the topic header wins over the URL path."""
    headers = {k.lower(): v for k, v in request.headers.items()}
    return WebhookEnvelope(
        topic=headers.get(TOPIC_HEADER) or path_topic,
        shop_domain=headers.get(SHOP_HEADER) or "unknown",
        raw_body=body,
        signature_header=headers.get(SIGNATURE_HEADER),
        delivery_id=headers.get(DELIVERY_HEADER),
        api_version=headers.get(API_VERSION_HEADER),
    )


async def _handle_webhook(request: Request, path_topic: str) -> JSONResponse:
    """Generic webhook handler for any topic."""
    start = time.time()
    services: Services = request.app.state.services

    # Read raw body for signature verification
    body = await request.body()
    envelope = build_envelope(request, body, path_topic)

    # 1. Verify signature
    if not services.authenticator.authenticate(envelope):
        _log_webhook(envelope.topic, envelope.shop_domain, envelope.delivery_id, "signature_failed")
        return JSONResponse(
            {"success": False, "error": "HMAC verification failed"},
            status_code=401,
        )

    # 2. Parse JSON payload
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_webhook(envelope.topic, envelope.shop_domain, envelope.delivery_id, "invalid_json")
        return JSONResponse(
            {
                "success": False,
                "error": "Webhook processing failed",
                "message": "Invalid JSON payload",
            },
            status_code=200,
        )

    # 3. Check idempotency
    if services.deduplicator is not None and await services.deduplicator.is_duplicate(
        envelope.shop_domain, envelope.delivery_id
    ):
        _log_webhook(envelope.topic, envelope.shop_domain, envelope.delivery_id, "duplicate")
        return JSONResponse(
            {"success": True, "message": "Duplicate delivery ignored"},
            status_code=200,
        )

    # 4. Dispatch
    try:
        result = await services.registry.handle_webhook(payload, envelope)
    except Exception:
        logger.exception("Failed to dispatch webhook: %s", envelope.topic)
        _log_webhook(envelope.topic, envelope.shop_domain, envelope.delivery_id, "dispatch_failed")
        return JSONResponse(
            {
                "success": False,
                "error": "Internal server error",
                "message": "Failed to process webhook",
            },
            status_code=200,
        )

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed_ms, envelope.topic)

    if result.success:
        _log_webhook(envelope.topic, envelope.shop_domain, envelope.delivery_id, "processed")
        return JSONResponse(result.to_dict(), status_code=200)

    _log_webhook(envelope.topic, envelope.shop_domain, envelope.delivery_id, "failed")
    return JSONResponse(
        {"success": False, "error": "Webhook processing failed", "message": result.message},
        status_code=200,
    )


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app.

    Expects ``app.state.services`` to be populated before the first request.
    """

    @app.post("/webhooks/{topic}/{action}")
    async def webhook_with_action(request: Request, topic: str, action: str):
        """Receive webhooks whose topic is split over the path (products/create)."""
        return await _handle_webhook(request, f"{topic}/{action}")

    @app.post("/webhooks/{topic}")
    async def webhook(request: Request, topic: str):
        """Receive webhooks for a single-segment topic."""
        return await _handle_webhook(request, topic)

    logger.info("Webhook routes registered: /webhooks/{topic}[/{action}]")
