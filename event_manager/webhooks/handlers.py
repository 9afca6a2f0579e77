"""Topic handlers for Shopify webhooks.

Each handler decodes its payload into a normalized record, persists it, and
answers with a ``DispatchResult``. Product and order handlers additionally
re-read the resource through the Admin API when the shop has an access
token; a failed re-read is reported but still acknowledged, since the
webhook payload itself has already been stored.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any

from event_manager.clients import OrderClient, ProductClient, from_gid
from event_manager.credentials import CredentialProvider
from event_manager.error_handling import ErrorReporter
from event_manager.errors import WebhookProcessingFault
from event_manager.graphql.transport import GraphQLResponse
from event_manager.store import EventStore
from event_manager.throttling.executor import ExecutionResult, OperationContext
from event_manager.webhooks.models import DispatchResult, WebhookEnvelope, WebhookTopic
from event_manager.webhooks.payloads import (
    ProductRecord,
    decode_customer,
    decode_order,
    decode_product,
    decode_shop,
    order_status_changes,
    parse_tags,
)
from event_manager.webhooks.registry import WebhookDispatchRegistry

logger = logging.getLogger(__name__)


def _log_event(envelope: WebhookEnvelope, payload: Any) -> None:
    logger.info(
        "Processing webhook event: topic=%s shop=%s id=%s keys=%s",
        envelope.topic,
        envelope.shop_domain,
        envelope.delivery_id,
        sorted(payload)[:20] if isinstance(payload, Mapping) else type(payload).__name__,
    )


def _context(envelope: WebhookEnvelope, operation: str) -> OperationContext:
    return OperationContext(
        shop_domain=envelope.shop_domain,
        operation_name=operation,
        request_id=envelope.delivery_id,
        extra={"webhook_topic": envelope.topic},
    )


def _resource(result: ExecutionResult[GraphQLResponse], field: str) -> dict[str, Any] | None:
    """The ``field`` object of a successful, error-free response."""
    if not result.success or result.value is None or result.value.has_errors:
        return None
    node = (result.value.data or {}).get(field)
    return node if isinstance(node, Mapping) else None


def _fetch_failure(result: ExecutionResult[GraphQLResponse]) -> str:
    if result.error is not None:
        return result.error.message
    if result.value is not None and result.value.has_errors:
        return ", ".join(error.message for error in result.value.errors)
    return "resource not found"


def product_from_graphql(node: Mapping[str, Any], fallback: ProductRecord) -> ProductRecord:
    """Overlay an Admin API product node onto the webhook record."""
    variants = (node.get("variants") or {}).get("nodes") or []
    images = (node.get("images") or {}).get("nodes") or []
    return dataclasses.replace(
        fallback,
        product_id=from_gid(str(node.get("id") or fallback.product_id)),
        title=node.get("title") or fallback.title,
        handle=node.get("handle") or fallback.handle,
        vendor=node.get("vendor") or fallback.vendor,
        product_type=node.get("productType") or fallback.product_type,
        status=str(node.get("status") or fallback.status).lower(),
        description=node.get("descriptionHtml") or fallback.description,
        tags=parse_tags(node.get("tags")) or fallback.tags,
        variant_count=len(variants),
        image_count=len(images),
        updated_at=node.get("updatedAt") or fallback.updated_at,
    )


class ProductWebhookHandler:
    """products/create, products/update, products/delete."""

    def __init__(
        self,
        store: EventStore,
        credentials: CredentialProvider,
        products: ProductClient,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.products = products
        self.reporter = reporter

    async def created(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        return await self._sync(payload, envelope, "created", "creation")

    async def updated(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        return await self._sync(payload, envelope, "updated", "update")

    async def deleted(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        _log_event(envelope, payload)
        record = decode_product(payload)
        removed = await self.store.delete_product(envelope.shop_domain, str(record.product_id))
        return DispatchResult(
            success=True,
            message="Product deletion webhook processed",
            data={"productId": record.product_id, "action": "deleted", "removed": removed},
        )

    async def _sync(
        self, payload: Any, envelope: WebhookEnvelope, action: str, noun: str
    ) -> DispatchResult:
        _log_event(envelope, payload)
        record = decode_product(payload)
        shop = envelope.shop_domain
        await self.store.save_product(shop, record)

        if await self.credentials.get_access_token(shop) is None:
            return DispatchResult(
                success=True,
                message=f"Product {noun} webhook processed (API sync skipped - no access token)",
                data={
                    "productId": record.product_id,
                    "action": action,
                    "synchronized": False,
                    "reason": "no_token",
                },
            )

        result = await self.products.get_product(record.product_id, _context(envelope, "getProduct"))
        node = _resource(result, "product")
        if node is None:
            if self.reporter is not None:
                self.reporter.report_webhook_error(
                    WebhookProcessingFault(
                        f"Failed to fetch product data: {_fetch_failure(result)}"
                    ),
                    envelope.topic,
                    shop,
                    product_id=record.product_id,
                )
            return DispatchResult(
                success=True,
                message=f"Product {noun} webhook processed (data sync failed)",
                data={"productId": record.product_id, "action": action, "synchronized": False},
            )

        synced = product_from_graphql(node, record)
        await self.store.save_product(shop, synced)
        logger.info(
            "Product %s synchronized for %s (variants=%d images=%d)",
            synced.product_id,
            shop,
            synced.variant_count,
            synced.image_count,
        )
        return DispatchResult(
            success=True,
            message=f"Product {noun} webhook processed and data saved",
            data={
                "productId": record.product_id,
                "action": action,
                "synchronized": True,
                "variantsCount": synced.variant_count,
                "imagesCount": synced.image_count,
            },
        )


# Order status topic -> (action, fields forced onto the stored order)
_ORDER_STATUS_CHANGES: dict[WebhookTopic, tuple[str, dict[str, Any]]] = {
    WebhookTopic.ORDERS_UPDATED: ("updated", {}),
    WebhookTopic.ORDERS_PAID: ("paid", {"financial_status": "paid"}),
    WebhookTopic.ORDERS_CANCELLED: ("cancelled", {}),
    WebhookTopic.ORDERS_FULFILLED: ("fulfilled", {"fulfillment_status": "fulfilled"}),
}


class OrderWebhookHandler:
    """orders/create and the order status topics."""

    def __init__(
        self,
        store: EventStore,
        credentials: CredentialProvider,
        orders: OrderClient,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.orders = orders
        self.reporter = reporter

    async def created(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        _log_event(envelope, payload)
        order = decode_order(payload)
        shop = envelope.shop_domain

        if order.customer is not None:
            await self.store.save_customer(shop, order.customer)
        await self.store.save_order(shop, order)

        data: dict[str, Any] = {
            "orderId": order.order_id,
            "action": "created",
            "orderName": order.name,
            "synchronized": False,
        }
        if await self.credentials.get_access_token(shop) is None:
            data["reason"] = "no_token"
            return DispatchResult(
                success=True,
                message="Order creation webhook processed (API sync skipped - no access token)",
                data=data,
            )

        result = await self.orders.get_order(order.order_id, _context(envelope, "getOrder"))
        node = _resource(result, "order")
        if node is None:
            if self.reporter is not None:
                self.reporter.report_webhook_error(
                    WebhookProcessingFault(f"Failed to fetch order data: {_fetch_failure(result)}"),
                    envelope.topic,
                    shop,
                    order_id=order.order_id,
                )
            return DispatchResult(
                success=True,
                message="Order creation webhook processed (data sync failed)",
                data=data,
            )

        changes = {
            key: str(node[field]).lower()
            for key, field in (
                ("financial_status", "displayFinancialStatus"),
                ("fulfillment_status", "displayFulfillmentStatus"),
            )
            if node.get(field)
        }
        await self.store.update_order(shop, str(order.order_id), **changes)
        data["synchronized"] = True
        return DispatchResult(
            success=True,
            message="Order creation webhook processed and data saved",
            data=data,
        )

    def status_handler(self, topic: WebhookTopic):
        """Handler for one of the order status topics."""
        action, forced = _ORDER_STATUS_CHANGES[topic]

        async def handle(payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
            _log_event(envelope, payload)
            order = dataclasses.replace(decode_order(payload), **forced)
            shop = envelope.shop_domain
            changes = {**order_status_changes(payload), **forced}
            existed = await self.store.update_order(shop, str(order.order_id), **changes)
            if not existed:
                await self.store.save_order(shop, order)
            return DispatchResult(
                success=True,
                message=f"Order {action} webhook processed",
                data={"orderId": order.order_id, "action": action, "created": not existed},
            )

        return handle


class CustomerWebhookHandler:
    """customers/create, customers/update.

    Customer data is stored straight from the payload; protected customer
    fields are not readable through the Admin API.
    """

    def __init__(self, store: EventStore) -> None:
        self.store = store

    async def created(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        return await self._save(payload, envelope, "created", "creation")

    async def updated(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        return await self._save(payload, envelope, "updated", "update")

    async def _save(
        self, payload: Any, envelope: WebhookEnvelope, action: str, noun: str
    ) -> DispatchResult:
        _log_event(envelope, payload)
        customer = decode_customer(payload)
        await self.store.save_customer(envelope.shop_domain, customer)
        return DispatchResult(
            success=True,
            message=f"Customer {noun} webhook processed",
            data={"customerId": customer.customer_id, "action": action, "source": "webhook_payload"},
        )


class AppWebhookHandler:
    """app/uninstalled: drop everything stored for the shop."""

    def __init__(self, store: EventStore) -> None:
        self.store = store

    async def uninstalled(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        _log_event(envelope, payload)
        shop = decode_shop(payload)
        purged = await self.store.purge_shop(envelope.shop_domain)
        logger.warning("App uninstalled from %s, purged %d records", envelope.shop_domain, purged)
        return DispatchResult(
            success=True,
            message="App uninstallation webhook processed",
            data={"shopId": shop.shop_id, "action": "uninstalled", "purged": purged},
        )


def register_default_handlers(
    registry: WebhookDispatchRegistry,
    *,
    store: EventStore,
    credentials: CredentialProvider,
    products: ProductClient,
    orders: OrderClient,
    reporter: ErrorReporter | None = None,
) -> WebhookDispatchRegistry:
    """Register a handler for every ``WebhookTopic``."""
    product_handler = ProductWebhookHandler(store, credentials, products, reporter)
    order_handler = OrderWebhookHandler(store, credentials, orders, reporter)
    customer_handler = CustomerWebhookHandler(store)
    app_handler = AppWebhookHandler(store)

    registry.register(WebhookTopic.PRODUCTS_CREATE, product_handler.created)
    registry.register(WebhookTopic.PRODUCTS_UPDATE, product_handler.updated)
    registry.register(WebhookTopic.PRODUCTS_DELETE, product_handler.deleted)

    registry.register(WebhookTopic.ORDERS_CREATE, order_handler.created)
    for topic in _ORDER_STATUS_CHANGES:
        registry.register(topic, order_handler.status_handler(topic))

    registry.register(WebhookTopic.CUSTOMERS_CREATE, customer_handler.created)
    registry.register(WebhookTopic.CUSTOMERS_UPDATE, customer_handler.updated)

    registry.register(WebhookTopic.APP_UNINSTALLED, app_handler.uninstalled)
    return registry
