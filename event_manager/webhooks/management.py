"""Webhook subscription management API.

Registers, lists, inspects and deletes the shop's webhook subscriptions
through the Admin API. Every route takes the target shop as the ``shop``
query parameter.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Literal

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import AnyUrl, BaseModel, Field, ValidationError

from event_manager.errors import Fault
from event_manager.throttling.executor import OperationContext

if TYPE_CHECKING:
    from event_manager.app import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookRegistration(BaseModel):
    topic: str = Field(min_length=1)
    address: AnyUrl
    format: Literal["json", "xml"] = "json"
    include_fields: list[str] | None = Field(default=None, alias="fields")
    metafield_namespaces: list[str] | None = None


def _services(request: Request) -> Services:
    return request.app.state.services


def _context(shop: str, operation: str) -> OperationContext:
    return OperationContext(shop_domain=shop, operation_name=operation, extra={"source": "webhook-management"})


def _error(status_code: int, error: str, message: str | None = None, **extra) -> JSONResponse:
    body = {"success": False, "error": error}
    if message is not None:
        body["message"] = message
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def _missing_shop() -> JSONResponse:
    return _error(400, "Shop parameter is required")


def _internal_error(action: str) -> JSONResponse:
    return _error(500, "Internal server error", f"Failed to {action}")


def _parse_id(subscription_id: str) -> int | None:
    return int(subscription_id) if subscription_id.isdigit() else None


@router.post("/register")
async def register_webhook(request: Request, shop: str | None = None):
    """Subscribe the shop to a topic."""
    if not shop:
        return _missing_shop()

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    try:
        registration = WebhookRegistration.model_validate(body)
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return _error(400, "Validation failed", details=details)

    try:
        subscription = await _services(request).subscriptions.register(
            _context(shop, "webhookSubscriptionCreate"),
            registration.topic,
            str(registration.address),
            registration.format,
            include_fields=registration.include_fields,
            metafield_namespaces=registration.metafield_namespaces,
        )
    except Fault as exc:
        logger.warning("Webhook registration failed for %s: %s", shop, exc.message)
        return _error(400, "Failed to register webhook", exc.message)
    except Exception:
        logger.exception("Webhook registration crashed for %s", shop)
        return _internal_error("register webhook")

    return JSONResponse(
        {
            "success": True,
            "message": "Webhook registered successfully via GraphQL",
            "data": subscription.to_dict(),
        },
        status_code=201,
    )


@router.get("/list")
async def list_webhooks(request: Request, shop: str | None = None):
    if not shop:
        return _missing_shop()
    try:
        subscriptions = await _services(request).subscriptions.list_all(
            _context(shop, "webhookSubscriptions")
        )
    except Fault as exc:
        logger.warning("Listing webhooks failed for %s: %s", shop, exc.message)
        return _error(400, "Failed to list webhooks", exc.message)
    except Exception:
        logger.exception("Listing webhooks crashed for %s", shop)
        return _internal_error("list webhooks")

    return {
        "success": True,
        "message": f"Found {len(subscriptions)} webhooks from Shopify",
        "data": [subscription.to_dict() for subscription in subscriptions],
    }


@router.get("/{subscription_id}")
async def get_webhook(request: Request, subscription_id: str, shop: str | None = None):
    if not shop:
        return _missing_shop()
    parsed = _parse_id(subscription_id)
    if parsed is None:
        return _error(400, "Invalid webhook ID")
    try:
        subscription = await _services(request).subscriptions.get(
            parsed, _context(shop, "webhookSubscription")
        )
    except Fault as exc:
        return _error(404, "Webhook not found", exc.message)
    except Exception:
        logger.exception("Fetching webhook %s crashed for %s", subscription_id, shop)
        return _internal_error("get webhook")

    return {"success": True, "message": "Webhook retrieved successfully", "data": subscription.to_dict()}


@router.delete("/{subscription_id}")
async def delete_webhook(request: Request, subscription_id: str, shop: str | None = None):
    if not shop:
        return _missing_shop()
    parsed = _parse_id(subscription_id)
    if parsed is None:
        return _error(400, "Invalid webhook ID")
    try:
        deleted = await _services(request).subscriptions.delete(
            parsed, _context(shop, "webhookSubscriptionDelete")
        )
    except Fault as exc:
        logger.warning("Deleting webhook %s failed for %s: %s", subscription_id, shop, exc.message)
        return _error(404, "Failed to delete webhook", exc.message)
    except Exception:
        logger.exception("Deleting webhook %s crashed for %s", subscription_id, shop)
        return _internal_error("delete webhook")

    return {"success": True, "message": "Webhook deleted successfully", "data": {"id": deleted}}
