"""Tests for the topic handlers, with the Admin API clients mocked out."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import SHOP, sign
from event_manager.credentials import StaticCredentialProvider
from event_manager.errors import NetworkFault
from event_manager.graphql.transport import GraphQLResponse
from event_manager.store import InMemoryEventStore
from event_manager.throttling.executor import ExecutionResult
from event_manager.webhooks.handlers import (
    AppWebhookHandler,
    CustomerWebhookHandler,
    OrderWebhookHandler,
    ProductWebhookHandler,
)
from event_manager.webhooks.models import WebhookEnvelope, WebhookTopic
from event_manager.webhooks.payloads import decode_order, decode_product

PRODUCT_NODE = {
    "id": "gid://shopify/Product/12345",
    "title": "Synced Title",
    "status": "ACTIVE",
    "productType": "Hats",
    "tags": ["winter"],
    "variants": {"nodes": [{"id": "v1"}, {"id": "v2"}, {"id": "v3"}]},
    "images": {"nodes": [{"id": "i1"}]},
}


def envelope_for(topic: str, payload) -> WebhookEnvelope:
    body = json.dumps(payload).encode()
    return WebhookEnvelope(topic, SHOP, body, sign(body), delivery_id="d-1")


def ok(data) -> ExecutionResult:
    return ExecutionResult(success=True, value=GraphQLResponse(data=data))


@pytest.fixture()
def store():
    return InMemoryEventStore()


@pytest.fixture()
def credentials():
    return StaticCredentialProvider({SHOP: "shpat_test"})


# ── Products ──────────────────────────────────────────────────────────────


class TestProductHandler:
    @pytest.mark.asyncio
    async def test_created_syncs_from_admin_api(self, store, credentials):
        products = MagicMock()
        products.get_product = AsyncMock(return_value=ok({"product": PRODUCT_NODE}))
        handler = ProductWebhookHandler(store, credentials, products)
        payload = {"id": 12345, "title": "Webhook Title"}

        result = await handler.created(payload, envelope_for("products/create", payload))

        assert result.success is True
        assert result.message == "Product creation webhook processed and data saved"
        assert result.data == {
            "productId": 12345,
            "action": "created",
            "synchronized": True,
            "variantsCount": 3,
            "imagesCount": 1,
        }
        stored = store.get("product", SHOP, "12345")
        assert stored["title"] == "Synced Title"
        assert stored["status"] == "active"
        assert stored["tags"] == ["winter"]

        context = products.get_product.call_args.args[1]
        assert context.shop_domain == SHOP
        assert context.request_id == "d-1"

    @pytest.mark.asyncio
    async def test_sync_failure_still_acknowledged(self, store, credentials):
        products = MagicMock()
        products.get_product = AsyncMock(
            return_value=ExecutionResult(success=False, error=NetworkFault("down"))
        )
        reporter = MagicMock()
        handler = ProductWebhookHandler(store, credentials, products, reporter)
        payload = {"id": 12345, "title": "Webhook Title"}

        result = await handler.updated(payload, envelope_for("products/update", payload))

        assert result.success is True
        assert result.data["synchronized"] is False
        assert store.get("product", SHOP, 12345)["title"] == "Webhook Title"
        reporter.report_webhook_error.assert_called_once()
        assert "down" in reporter.report_webhook_error.call_args.args[0].message

    @pytest.mark.asyncio
    async def test_graphql_errors_count_as_sync_failure(self, store, credentials):
        products = MagicMock()
        products.get_product = AsyncMock(
            return_value=ExecutionResult(
                success=True,
                value=GraphQLResponse.from_json({"errors": [{"message": "Access denied"}]}),
            )
        )
        handler = ProductWebhookHandler(store, credentials, products)
        payload = {"id": 1}

        result = await handler.created(payload, envelope_for("products/create", payload))

        assert result.data["synchronized"] is False


    @pytest.mark.asyncio
    async def test_deleted(self, store, credentials):
        handler = ProductWebhookHandler(store, credentials, MagicMock())
        await store.save_product(SHOP, decode_product({"id": 1}))
        payload = {"id": 1}

        result = await handler.deleted(payload, envelope_for("products/delete", payload))

        assert result.data == {"productId": 1, "action": "deleted", "removed": True}
        assert store.count("product") == 0

    @pytest.mark.asyncio
    async def test_deleting_unknown_product(self, store, credentials):
        handler = ProductWebhookHandler(store, credentials, MagicMock())
        payload = {"id": 404}

        result = await handler.deleted(payload, envelope_for("products/delete", payload))

        assert result.success is True
        assert result.data["removed"] is False


# ── Orders ────────────────────────────────────────────────────────────────


class TestOrderHandler:
    @pytest.mark.asyncio
    async def test_created_applies_admin_api_statuses(self, store, credentials):
        orders = MagicMock()
        orders.get_order = AsyncMock(
            return_value=ok(
                {
                    "order": {
                        "id": "gid://shopify/Order/7",
                        "displayFinancialStatus": "PAID",
                        "displayFulfillmentStatus": "UNFULFILLED",
                    }
                }
            )
        )
        handler = OrderWebhookHandler(store, credentials, orders)
        payload = {"id": 7, "name": "#1007", "financial_status": "pending"}

        result = await handler.created(payload, envelope_for("orders/create", payload))

        assert result.data == {
            "orderId": 7,
            "action": "created",
            "orderName": "#1007",
            "synchronized": True,
        }
        stored = store.get("order", SHOP, 7)
        assert stored["financial_status"] == "paid"
        assert stored["fulfillment_status"] == "unfulfilled"

    @pytest.mark.asyncio
    async def test_created_without_token(self, store):
        orders = MagicMock()
        orders.get_order = AsyncMock()
        handler = OrderWebhookHandler(store, StaticCredentialProvider({}), orders)
        payload = {"id": 7}

        result = await handler.created(payload, envelope_for("orders/create", payload))

        assert result.data["reason"] == "no_token"
        assert result.data["orderName"] == "#7"
        orders.get_order.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "topic, action, field, value",
        [
            (WebhookTopic.ORDERS_PAID, "paid", "financial_status", "paid"),
            (WebhookTopic.ORDERS_FULFILLED, "fulfilled", "fulfillment_status", "fulfilled"),
        ],
    )
    async def test_status_topics_force_status(self, store, credentials, topic, action, field, value):
        handler = OrderWebhookHandler(store, credentials, MagicMock())
        await store.save_order(SHOP, decode_order({"id": 7}))
        payload = {"id": 7}

        result = await handler.status_handler(topic)(payload, envelope_for(topic.value, payload))

        assert result.data == {"orderId": 7, "action": action, "created": False}
        assert store.get("order", SHOP, 7)[field] == value

    @pytest.mark.asyncio
    async def test_cancelled_records_reason(self, store, credentials):
        handler = OrderWebhookHandler(store, credentials, MagicMock())
        await store.save_order(SHOP, decode_order({"id": 7}))
        payload = {"id": 7, "cancelled_at": "2024-01-02T00:00:00Z", "cancel_reason": "customer"}

        await handler.status_handler(WebhookTopic.ORDERS_CANCELLED)(
            payload, envelope_for("orders/cancelled", payload)
        )

        assert store.get("order", SHOP, 7)["cancel_reason"] == "customer"

    @pytest.mark.asyncio
    async def test_status_update_for_unknown_order_creates_it(self, store, credentials):
        handler = OrderWebhookHandler(store, credentials, MagicMock())
        payload = {"id": 8, "name": "#1008"}

        result = await handler.status_handler(WebhookTopic.ORDERS_UPDATED)(
            payload, envelope_for("orders/updated", payload)
        )

        assert result.data["created"] is True
        assert store.get("order", SHOP, 8)["name"] == "#1008"

    @pytest.mark.asyncio
    async def test_partial_status_payload_keeps_stored_fields(self, store, credentials):
        handler = OrderWebhookHandler(store, credentials, MagicMock())
        paid = {"id": 7, "total_price": "29.99"}
        fulfilled = {"id": 7}

        await handler.status_handler(WebhookTopic.ORDERS_PAID)(paid, envelope_for("orders/paid", paid))
        result = await handler.status_handler(WebhookTopic.ORDERS_FULFILLED)(
            fulfilled, envelope_for("orders/fulfilled", fulfilled)
        )

        stored = store.get("order", SHOP, 7)
        assert result.data["created"] is False
        assert stored["financial_status"] == "paid"
        assert stored["fulfillment_status"] == "fulfilled"
        assert stored["total_price"] == "29.99"

    @pytest.mark.asyncio
    async def test_updated_applies_only_present_fields(self, store, credentials):
        handler = OrderWebhookHandler(store, credentials, MagicMock())
        await store.save_order(
            SHOP, decode_order({"id": 7, "financial_status": "paid", "total_price": "10.00"})
        )
        payload = {"id": 7, "current_total_price": "12.50", "financial_status": None}

        await handler.status_handler(WebhookTopic.ORDERS_UPDATED)(
            payload, envelope_for("orders/updated", payload)
        )

        stored = store.get("order", SHOP, 7)
        assert stored["total_price"] == "12.50"
        assert stored["financial_status"] == "paid"


# ── Customers and app lifecycle ───────────────────────────────────────────


class TestCustomerAndAppHandlers:
    @pytest.mark.asyncio
    async def test_customer_saved_from_payload(self, store):
        payload = {"id": 3, "email": "c@example.com", "tags": "vip"}

        result = await CustomerWebhookHandler(store).created(
            payload, envelope_for("customers/create", payload)
        )

        assert result.data == {"customerId": 3, "action": "created", "source": "webhook_payload"}
        assert store.get("customer", SHOP, 3)["tags"] == ["vip"]

    @pytest.mark.asyncio
    async def test_uninstall_purges_only_that_shop(self, store):
        await store.save_order(SHOP, decode_order({"id": 1}))
        await store.save_product(SHOP, decode_product({"id": 2}))
        await store.save_order("other.myshopify.com", decode_order({"id": 3}))
        payload = {"id": 99, "myshopify_domain": SHOP}

        result = await AppWebhookHandler(store).uninstalled(
            payload, envelope_for("app/uninstalled", payload)
        )

        assert result.data == {"shopId": 99, "action": "uninstalled", "purged": 2}
        assert store.count() == 1
