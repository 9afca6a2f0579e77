"""Webhook envelope, topics and the normalized dispatch result."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class WebhookTopic(str, Enum):
    """Topics with a registered handler."""

    PRODUCTS_CREATE = "products/create"
    PRODUCTS_UPDATE = "products/update"
    PRODUCTS_DELETE = "products/delete"

    ORDERS_CREATE = "orders/create"
    ORDERS_UPDATED = "orders/updated"
    ORDERS_PAID = "orders/paid"
    ORDERS_CANCELLED = "orders/cancelled"
    ORDERS_FULFILLED = "orders/fulfilled"

    CUSTOMERS_CREATE = "customers/create"
    CUSTOMERS_UPDATE = "customers/update"

    APP_UNINSTALLED = "app/uninstalled"


_SEPARATORS = re.compile(r"[/_]+")


def normalize_topic(topic: str | WebhookTopic) -> str:
    """Canonical lookup key: lower-case, ``/`` and ``_`` treated alike.

    ``"Orders_Create"``, ``"orders/create"`` and ``"/orders/create/"`` all
    normalize to ``"orders/create"``.
    """
    value = topic.value if isinstance(topic, WebhookTopic) else str(topic)
    return _SEPARATORS.sub("/", value.strip().lower()).strip("/")


@dataclass(frozen=True)
class WebhookEnvelope:
    """One inbound delivery, as received."""

    topic: str
    shop_domain: str
    raw_body: bytes
    signature_header: str | None
    delivery_id: str | None = None
    api_version: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body
