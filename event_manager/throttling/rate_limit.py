"""Rate-limit snapshot parsing for the Shopify Admin API.

GraphQL responses report cost in ``extensions.cost``::

    {"requestedQueryCost": 12, "actualQueryCost": 10,
     "throttleStatus": {"maximumAvailable": 1000, "currentlyAvailable": 990,
                        "restoreRate": 50}}

REST-style responses only carry ``X-Shopify-Shop-Api-Call-Limit: used/max``.
Parsing is best-effort: anything missing or malformed yields ``None``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

CALL_LIMIT_HEADER = "x-shopify-shop-api-call-limit"

# Leaky-bucket refill for the REST call limit (requests/second)
_DEFAULT_HEADER_RESTORE_RATE = 2.0


@dataclass(frozen=True)
class ThrottleStatus:
    maximum_available: float
    currently_available: float
    restore_rate: float


@dataclass(frozen=True)
class RateLimitInfo:
    """Cost accounting for one API call."""

    requested_cost: float
    actual_cost: float
    throttle_status: ThrottleStatus

    def refill_delay_ms(self, next_cost: float | None = None) -> int:
        """Milliseconds until the bucket can afford ``next_cost``.

        Defaults to the requested cost of this call. Returns 0 when the
        budget already covers it or the restore rate is unknown.
        """
        cost = self.requested_cost if next_cost is None else next_cost
        deficit = cost - self.throttle_status.currently_available
        if deficit <= 0 or self.throttle_status.restore_rate <= 0:
            return 0
        return math.ceil(deficit * 1000 / self.throttle_status.restore_rate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestedQueryCost": self.requested_cost,
            "actualQueryCost": self.actual_cost,
            "throttleStatus": {
                "maximumAvailable": self.throttle_status.maximum_available,
                "currentlyAvailable": self.throttle_status.currently_available,
                "restoreRate": self.throttle_status.restore_rate,
            },
        }


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return number


def _parse_throttle_status(raw: Any) -> ThrottleStatus | None:
    if not isinstance(raw, Mapping):
        return None
    maximum = _number(raw.get("maximumAvailable"))
    current = _number(raw.get("currentlyAvailable"))
    restore = _number(raw.get("restoreRate", raw.get("restoreRatePerSecond")))
    if maximum is None or current is None or restore is None:
        return None
    if current > maximum:
        return None
    return ThrottleStatus(
        maximum_available=maximum,
        currently_available=current,
        restore_rate=restore,
    )


def _parse_cost(cost: Mapping) -> RateLimitInfo | None:
    requested = _number(cost.get("requestedQueryCost"))
    actual = cost.get("actualQueryCost")
    # actualQueryCost is null when the query was throttled before running
    actual_cost = _number(actual) if actual is not None else 0.0
    status = _parse_throttle_status(cost.get("throttleStatus"))
    if requested is None or actual_cost is None or status is None:
        return None
    return RateLimitInfo(
        requested_cost=requested,
        actual_cost=actual_cost,
        throttle_status=status,
    )


def _parse_call_limit_header(headers: Mapping) -> RateLimitInfo | None:
    raw = None
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == CALL_LIMIT_HEADER:
            raw = value
            break
    if not isinstance(raw, str) or raw.count("/") != 1:
        return None
    used_raw, maximum_raw = raw.split("/")
    used = _number(used_raw)
    maximum = _number(maximum_raw)
    if used is None or maximum is None or used > maximum:
        return None
    return RateLimitInfo(
        requested_cost=1.0,
        actual_cost=1.0,
        throttle_status=ThrottleStatus(
            maximum_available=maximum,
            currently_available=maximum - used,
            restore_rate=_DEFAULT_HEADER_RESTORE_RATE,
        ),
    )


def parse_rate_limit(source: Any) -> RateLimitInfo | None:
    """Extract a rate-limit snapshot from a response, its JSON, or its headers.

    Accepts an object exposing ``rate_limit_info`` or ``extensions``, a
    response body mapping, an ``extensions`` mapping, a bare ``cost``
    mapping, or an HTTP header mapping. Never raises.
    """
    try:
        return _parse(source)
    except Exception:
        logger.debug("Unparseable rate-limit data: %r", source, exc_info=True)
        return None


def _parse(source: Any) -> RateLimitInfo | None:
    if source is None:
        return None
    if isinstance(source, RateLimitInfo):
        return source

    if not isinstance(source, Mapping):
        info = getattr(source, "rate_limit_info", None)
        if isinstance(info, RateLimitInfo):
            return info
        extensions = getattr(source, "extensions", None)
        if isinstance(extensions, Mapping):
            return _parse(extensions)
        return None

    if "requestedQueryCost" in source:
        return _parse_cost(source)
    cost = source.get("cost")
    if isinstance(cost, Mapping):
        return _parse_cost(cost)
    extensions = source.get("extensions")
    if isinstance(extensions, Mapping):
        return _parse(extensions)
    return _parse_call_limit_header(source)
