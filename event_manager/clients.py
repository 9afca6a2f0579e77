"""Domain query wrappers for products, orders and webhook subscriptions."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from event_manager.errors import RemoteAPIFault, ValidationFault
from event_manager.graphql.client import ShopifyGraphQLClient
from event_manager.graphql.transport import GraphQLRequest, GraphQLResponse
from event_manager.throttling.executor import ExecutionResult, OperationContext
from event_manager.webhooks.models import normalize_topic

logger = logging.getLogger(__name__)

_GID_PREFIX = "gid://shopify/"


def to_gid(resource: str, resource_id: int | str) -> str:
    """``to_gid("Product", 12345) -> "gid://shopify/Product/12345"``."""
    value = str(resource_id)
    if value.startswith(_GID_PREFIX):
        return value
    return f"{_GID_PREFIX}{resource}/{value}"


def from_gid(gid: str) -> str:
    """Numeric id from a global id; plain ids pass through."""
    if gid.startswith(_GID_PREFIX):
        return gid.rsplit("/", 1)[-1]
    return gid


PRODUCT_QUERY = """
query getProduct($id: ID!) {
  product(id: $id) {
    id
    title
    handle
    vendor
    productType
    status
    tags
    descriptionHtml
    createdAt
    updatedAt
    images(first: 50) {
      nodes { id url altText width height }
    }
    variants(first: 100) {
      nodes { id title price compareAtPrice sku barcode inventoryQuantity }
    }
    options { id name values }
  }
}
"""

ORDER_QUERY = """
query getOrder($id: ID!) {
  order(id: $id) {
    id
    name
    email
    createdAt
    displayFinancialStatus
    displayFulfillmentStatus
    totalPriceSet { shopMoney { amount currencyCode } }
    lineItems(first: 100) {
      nodes { id title quantity sku }
    }
  }
}
"""


class _ResourceClient:
    resource: str = ""
    query: str = ""
    operation: str = ""

    def __init__(self, graphql: ShopifyGraphQLClient) -> None:
        self.graphql = graphql

    async def _get(
        self, resource_id: int | str, context: OperationContext, **kwargs: Any
    ) -> ExecutionResult[GraphQLResponse]:
        request = GraphQLRequest(
            query=self.query,
            variables={"id": to_gid(self.resource, resource_id)},
            operation_name=self.operation,
        )
        return await self.graphql.execute_query(request, context, **kwargs)


class ProductClient(_ResourceClient):
    resource = "Product"
    query = PRODUCT_QUERY
    operation = "getProduct"

    async def get_product(self, product_id: int | str, context: OperationContext, **kwargs: Any):
        return await self._get(product_id, context, **kwargs)


class OrderClient(_ResourceClient):
    resource = "Order"
    query = ORDER_QUERY
    operation = "getOrder"

    async def get_order(self, order_id: int | str, context: OperationContext, **kwargs: Any):
        return await self._get(order_id, context, **kwargs)



# ── Webhook subscriptions ─────────────────────────────────────────────────

_SUBSCRIPTION_FIELDS = """
    id
    topic
    format
    includeFields
    metafieldNamespaces
    createdAt
    updatedAt
    apiVersion { handle }
    endpoint {
      __typename
      ... on WebhookHttpEndpoint { callbackUrl }
    }
"""

SUBSCRIPTION_CREATE_MUTATION = (
    """
mutation webhookSubscriptionCreate($topic: WebhookSubscriptionTopic!, $webhookSubscription: WebhookSubscriptionInput!) {
  webhookSubscriptionCreate(topic: $topic, webhookSubscription: $webhookSubscription) {
    webhookSubscription {"""
    + _SUBSCRIPTION_FIELDS
    + """    }
    userErrors { field message }
  }
}
"""
)

SUBSCRIPTION_DELETE_MUTATION = """
mutation webhookSubscriptionDelete($id: ID!) {
  webhookSubscriptionDelete(id: $id) {
    deletedWebhookSubscriptionId
    userErrors { field message }
  }
}
"""

SUBSCRIPTIONS_QUERY = (
    """
query webhookSubscriptions($first: Int!) {
  webhookSubscriptions(first: $first) {
    nodes {"""
    + _SUBSCRIPTION_FIELDS
    + """    }
  }
}
"""
)

SUBSCRIPTION_QUERY = (
    """
query webhookSubscription($id: ID!) {
  webhookSubscription(id: $id) {"""
    + _SUBSCRIPTION_FIELDS
    + """  }
}
"""
)


def to_subscription_topic(topic: str) -> str:
    """``"orders/create" -> "ORDERS_CREATE"``."""
    return normalize_topic(topic).replace("/", "_").upper()


def from_subscription_topic(topic: str) -> str:
    """``"ORDERS_CREATE" -> "orders/create"``; only the first separator becomes ``/``."""
    return topic.lower().replace("_", "/", 1)


def _numeric_id(gid: str) -> int | str:
    value = from_gid(gid)
    return int(value) if value.isdigit() else value


@dataclass(frozen=True)
class WebhookSubscription:
    subscription_id: int | str
    topic: str
    address: str
    format: str = "json"
    include_fields: tuple[str, ...] = ()
    metafield_namespaces: tuple[str, ...] = ()
    api_version: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_node(cls, node: Mapping[str, Any]) -> "WebhookSubscription":
        endpoint = node.get("endpoint") or {}
        api_version = node.get("apiVersion") or {}
        return cls(
            subscription_id=_numeric_id(str(node.get("id", ""))),
            topic=from_subscription_topic(str(node.get("topic", ""))),
            address=str(node.get("callbackUrl") or endpoint.get("callbackUrl") or ""),
            format=str(node.get("format") or "JSON").lower(),
            include_fields=tuple(node.get("includeFields") or ()),
            metafield_namespaces=tuple(node.get("metafieldNamespaces") or ()),
            api_version=api_version.get("handle"),
            created_at=node.get("createdAt"),
            updated_at=node.get("updatedAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.subscription_id,
            "topic": self.topic,
            "address": self.address,
            "format": self.format,
            "fields": list(self.include_fields),
            "metafield_namespaces": list(self.metafield_namespaces),
            "api_version": self.api_version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _payload(result: ExecutionResult[GraphQLResponse], field: str) -> Any:
    """The ``field`` entry of a successful response.

    Raises the execution fault, a ``RemoteAPIFault`` for GraphQL errors or
    an empty payload, and a ``ValidationFault`` for mutation userErrors.
    """
    if not result.success or result.value is None:
        raise result.error or RemoteAPIFault(f"{field} failed")
    response = result.value
    response.raise_for_errors()
    payload = (response.data or {}).get(field)
    if isinstance(payload, Mapping):
        user_errors = payload.get("userErrors") or []
        if user_errors:
            messages = "; ".join(str(error.get("message")) for error in user_errors)
            raise ValidationFault(messages, context={"user_errors": user_errors})
    return payload


class WebhookSubscriptionClient:
    """Manages the shop's webhook subscriptions through the Admin API."""

    def __init__(self, graphql: ShopifyGraphQLClient) -> None:
        self.graphql = graphql

    async def register(
        self,
        context: OperationContext,
        topic: str,
        address: str,
        format: str = "json",
        *,
        include_fields: Sequence[str] | None = None,
        metafield_namespaces: Sequence[str] | None = None,
    ) -> WebhookSubscription:
        subscription_input: dict[str, Any] = {"callbackUrl": address, "format": format.upper()}
        if include_fields:
            subscription_input["includeFields"] = list(include_fields)
        if metafield_namespaces:
            subscription_input["metafieldNamespaces"] = list(metafield_namespaces)

        request = GraphQLRequest(
            query=SUBSCRIPTION_CREATE_MUTATION,
            variables={
                "topic": to_subscription_topic(topic),
                "webhookSubscription": subscription_input,
            },
            operation_name="webhookSubscriptionCreate",
        )
        result = await self.graphql.execute_mutation(request, context)
        payload = _payload(result, "webhookSubscriptionCreate")
        node = payload.get("webhookSubscription") if isinstance(payload, Mapping) else None
        if not isinstance(node, Mapping):
            raise RemoteAPIFault("No webhook subscription data returned")

        subscription = WebhookSubscription.from_node(node)
        logger.info(
            "Registered webhook %s -> %s for %s (id=%s)",
            subscription.topic,
            subscription.address,
            context.shop_domain,
            subscription.subscription_id,
        )
        return subscription

    async def list_all(self, context: OperationContext, first: int = 100) -> list[WebhookSubscription]:
        request = GraphQLRequest(
            query=SUBSCRIPTIONS_QUERY,
            variables={"first": first},
            operation_name="webhookSubscriptions",
        )
        payload = _payload(await self.graphql.execute_query(request, context), "webhookSubscriptions")
        nodes = payload.get("nodes") if isinstance(payload, Mapping) else None
        return [WebhookSubscription.from_node(node) for node in nodes or () if isinstance(node, Mapping)]

    async def get(self, subscription_id: int | str, context: OperationContext) -> WebhookSubscription:
        request = GraphQLRequest(
            query=SUBSCRIPTION_QUERY,
            variables={"id": to_gid("WebhookSubscription", subscription_id)},
            operation_name="webhookSubscription",
        )
        node = _payload(await self.graphql.execute_query(request, context), "webhookSubscription")
        if not isinstance(node, Mapping):
            raise RemoteAPIFault(f"Webhook subscription {subscription_id} not found", status_code=404)
        return WebhookSubscription.from_node(node)

    async def delete(self, subscription_id: int | str, context: OperationContext) -> int | str:
        """Delete a subscription and return the id Shopify reports as deleted."""
        request = GraphQLRequest(
            query=SUBSCRIPTION_DELETE_MUTATION,
            variables={"id": to_gid("WebhookSubscription", subscription_id)},
            operation_name="webhookSubscriptionDelete",
        )
        result = await self.graphql.execute_mutation(request, context)
        payload = _payload(result, "webhookSubscriptionDelete")
        deleted = payload.get("deletedWebhookSubscriptionId") if isinstance(payload, Mapping) else None
        if not deleted:
            raise RemoteAPIFault(f"Webhook subscription {subscription_id} not found", status_code=404)
        logger.info("Deleted webhook subscription %s for %s", deleted, context.shop_domain)
        return _numeric_id(str(deleted))
