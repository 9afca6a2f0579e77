"""Shared fixtures for the event manager test suite."""

from __future__ import annotations

import base64
import hashlib
import hmac

import pytest

from event_manager.throttling.backoff import RetryPolicy

SHOP = "test-shop.myshopify.com"
WEBHOOK_SECRET = "shopify-test-secret"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Compute a valid Shopify webhook signature."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays in seconds."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def fast_policy() -> RetryPolicy:
    """Deterministic policy: 1ms, 2ms, 4ms, 4ms ..."""
    return RetryPolicy(
        max_retries=3,
        base_delay_ms=1,
        max_delay_ms=4,
        backoff_multiplier=2.0,
        jitter=False,
    )


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
