"""Per-topic payload decoding.

Webhook bodies differ by topic and by API version. Each decoder turns a raw
payload into a normalized record before a handler sees it. Where several
fields may carry the same value, the candidates are listed in order of
precedence and the first present, non-empty one wins.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Sequence

from event_manager.errors import ValidationFault

_MISSING = object()

ORDER_NAME_FIELDS = ("name", "order_name")
ORDER_EMAIL_FIELDS = ("email", "contact_email", "customer.email")
ORDER_TOTAL_FIELDS = ("current_total_price", "total_price")
ORDER_STATUS_FIELDS = (
    "financial_status",
    "fulfillment_status",
    "cancelled_at",
    "cancel_reason",
    "updated_at",
)
ORDER_CURRENCY_FIELDS = ("currency", "presentment_currency")
PRODUCT_DESCRIPTION_FIELDS = ("body_html", "description")
SHOP_DOMAIN_FIELDS = ("myshopify_domain", "domain")


def _lookup(payload: Mapping[str, Any], path: str) -> Any:
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def first_present(
    payload: Mapping[str, Any], fields: Sequence[str], default: Any = None
) -> Any:
    """Value of the first field in ``fields`` that is present and not empty.

    Dotted names reach into nested objects (``"customer.email"``).
    """
    for name in fields:
        value = _lookup(payload, name)
        if value is _MISSING or value is None or value == "":
            continue
        return value
    return default


def parse_tags(raw: Any) -> list[str]:
    """Tags arrive as a list or as a comma-separated string."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [tag.strip() for tag in raw.split(",") if tag.strip()]
    if isinstance(raw, (list, tuple)):
        return [str(tag).strip() for tag in raw if str(tag).strip()]
    raise ValidationFault(f"Unsupported tags value: {raw!r}")


def _require_id(payload: Mapping[str, Any], kind: str) -> int | str:
    if not isinstance(payload, Mapping):
        raise ValidationFault(f"{kind} payload must be a JSON object")
    resource_id = payload.get("id")
    if resource_id is None or resource_id == "" or isinstance(resource_id, bool):
        raise ValidationFault(f"{kind} payload is missing an id")
    return resource_id


@dataclass(frozen=True)
class ProductRecord:
    product_id: int | str
    title: str = ""
    handle: str = ""
    vendor: str = ""
    product_type: str = ""
    status: str = "active"
    description: str = ""
    tags: list[str] = field(default_factory=list)
    variant_count: int = 0
    image_count: int = 0
    updated_at: str | None = None


@dataclass(frozen=True)
class CustomerRecord:
    customer_id: int | str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    state: str = "disabled"
    total_spent: str = "0"
    orders_count: int = 0
    accepts_marketing: bool | None = None
    tags: list[str] = field(default_factory=list)
    updated_at: str | None = None


@dataclass(frozen=True)
class OrderRecord:
    order_id: int | str
    name: str
    order_number: int | None = None
    email: str = ""
    total_price: str = "0"
    currency: str = "USD"
    financial_status: str = "pending"
    fulfillment_status: str = "unfulfilled"
    line_item_count: int = 0
    tags: list[str] = field(default_factory=list)
    customer: CustomerRecord | None = None
    cancelled_at: str | None = None
    cancel_reason: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class ShopRecord:
    shop_id: int | str | None
    domain: str = ""


def decode_product(payload: Mapping[str, Any]) -> ProductRecord:
    product_id = _require_id(payload, "Product")
    variants = payload.get("variants")
    images = payload.get("images")
    return ProductRecord(
        product_id=product_id,
        title=str(payload.get("title") or ""),
        handle=str(payload.get("handle") or ""),
        vendor=str(payload.get("vendor") or ""),
        product_type=str(payload.get("product_type") or ""),
        status=str(payload.get("status") or "active"),
        description=str(first_present(payload, PRODUCT_DESCRIPTION_FIELDS, "")),
        tags=parse_tags(payload.get("tags")),
        variant_count=len(variants) if isinstance(variants, list) else 0,
        image_count=len(images) if isinstance(images, list) else 0,
        updated_at=payload.get("updated_at"),
    )


def decode_customer(payload: Mapping[str, Any]) -> CustomerRecord:
    customer_id = _require_id(payload, "Customer")
    accepts = payload.get("accepts_marketing")
    return CustomerRecord(
        customer_id=customer_id,
        email=str(payload.get("email") or ""),
        first_name=str(payload.get("first_name") or ""),
        last_name=str(payload.get("last_name") or ""),
        phone=str(payload.get("phone") or ""),
        state=str(payload.get("state") or "disabled"),
        total_spent=str(payload.get("total_spent") or "0"),
        orders_count=int(payload.get("orders_count") or 0),
        accepts_marketing=bool(accepts) if accepts is not None else None,
        tags=parse_tags(payload.get("tags")),
        updated_at=payload.get("updated_at"),
    )


def _order_number(value: Any) -> int | None:
    """Shopify sends a plain number, but imports carry names like "#1001"."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip().lstrip("#"))
    except ValueError:
        return None


def decode_order(payload: Mapping[str, Any]) -> OrderRecord:
    order_id = _require_id(payload, "Order")
    order_number = _order_number(payload.get("order_number"))
    name = first_present(payload, ORDER_NAME_FIELDS)
    if name is None:
        name = f"#{order_number}" if order_number is not None else f"#{order_id}"

    customer = None
    raw_customer = payload.get("customer")
    if isinstance(raw_customer, Mapping) and raw_customer.get("id") is not None:
        customer = decode_customer(raw_customer)

    line_items = payload.get("line_items")
    return OrderRecord(
        order_id=order_id,
        name=str(name),
        order_number=order_number,
        email=str(first_present(payload, ORDER_EMAIL_FIELDS, "")),
        total_price=str(first_present(payload, ORDER_TOTAL_FIELDS, "0")),
        currency=str(first_present(payload, ORDER_CURRENCY_FIELDS, "USD")),
        financial_status=str(payload.get("financial_status") or "pending"),
        fulfillment_status=str(payload.get("fulfillment_status") or "unfulfilled"),
        line_item_count=len(line_items) if isinstance(line_items, list) else 0,
        tags=parse_tags(payload.get("tags")),
        customer=customer,
        cancelled_at=payload.get("cancelled_at"),
        cancel_reason=payload.get("cancel_reason"),
        updated_at=payload.get("updated_at"),
    )


def decode_shop(payload: Mapping[str, Any]) -> ShopRecord:
    if not isinstance(payload, Mapping):
        raise ValidationFault("Shop payload must be a JSON object")
    return ShopRecord(
        shop_id=payload.get("id"),
        domain=str(first_present(payload, SHOP_DOMAIN_FIELDS, "")),
    )



def order_status_changes(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Status fields the payload actually carries, for partial order updates."""
    changes = {
        name: payload[name]
        for name in ORDER_STATUS_FIELDS
        if payload.get(name) is not None
    }
    total = first_present(payload, ORDER_TOTAL_FIELDS)
    if total is not None:
        changes["total_price"] = str(total)
    return changes
