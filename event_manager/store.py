"""Persistence boundary for webhook-derived records.

The storage engine is owned elsewhere; handlers only talk to ``EventStore``.
``InMemoryEventStore`` backs development runs and tests.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Protocol

from event_manager.webhooks.payloads import CustomerRecord, OrderRecord, ProductRecord

logger = logging.getLogger(__name__)


class EventStore(Protocol):
    async def save_product(self, shop_domain: str, product: ProductRecord) -> None: ...

    async def delete_product(self, shop_domain: str, product_id: str) -> bool: ...

    async def save_order(self, shop_domain: str, order: OrderRecord) -> None: ...

    async def update_order(self, shop_domain: str, order_id: str, **changes: Any) -> bool: ...

    async def save_customer(self, shop_domain: str, customer: CustomerRecord) -> None: ...

    async def purge_shop(self, shop_domain: str) -> int: ...


class InMemoryEventStore:
    """Dict-backed store keyed by (kind, shop, id).

    Every method completes without awaiting, so concurrent handlers on one
    event loop never observe a half-applied write.
    """

    def __init__(self) -> None:
        self._items: dict[tuple[str, str, str], dict[str, Any]] = {}

    def get(self, kind: str, shop_domain: str, item_id: Any) -> dict[str, Any] | None:
        item = self._items.get((kind, shop_domain, str(item_id)))
        return dict(item) if item is not None else None

    def count(self, kind: str | None = None) -> int:
        return sum(1 for key in self._items if kind is None or key[0] == kind)

    def _put(self, kind: str, shop_domain: str, item_id: Any, record: Any) -> None:
        self._items[(kind, shop_domain, str(item_id))] = dataclasses.asdict(record)

    async def save_product(self, shop_domain: str, product: ProductRecord) -> None:
        self._put("product", shop_domain, product.product_id, product)

    async def delete_product(self, shop_domain: str, product_id: str) -> bool:
        return self._items.pop(("product", shop_domain, str(product_id)), None) is not None

    async def save_order(self, shop_domain: str, order: OrderRecord) -> None:
        self._put("order", shop_domain, order.order_id, order)

    async def update_order(self, shop_domain: str, order_id: str, **changes: Any) -> bool:
        item = self._items.get(("order", shop_domain, str(order_id)))
        if item is None:
            return False
        item.update(changes)
        return True

    async def save_customer(self, shop_domain: str, customer: CustomerRecord) -> None:
        self._put("customer", shop_domain, customer.customer_id, customer)

    async def purge_shop(self, shop_domain: str) -> int:
        keys = [key for key in self._items if key[1] == shop_domain]
        for key in keys:
            del self._items[key]
        logger.info("Purged %d records for shop %s", len(keys), shop_domain)
        return len(keys)
