"""Exponential backoff with optional full jitter.

delay(attempt) = min(max_delay_ms, base_delay_ms * multiplier ** attempt)

With jitter the delay is drawn uniformly from [0, delay] so concurrent
callers that failed together do not retry together.
"""

from __future__ import annotations

import random
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class RetryPolicy(BaseModel):
    """Retry configuration for one executor call."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, gt=0)
    max_delay_ms: int = Field(default=30_000, gt=0)
    backoff_multiplier: float = Field(default=2.0, gt=1.0)
    jitter: bool = True
    retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES

    @field_validator("retryable_status_codes", mode="before")
    @classmethod
    def _coerce_codes(cls, value: Iterable[int]) -> frozenset[int]:
        return frozenset(value)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "RetryPolicy":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return self


def raw_delay_ms(attempt: int, policy: RetryPolicy) -> int:
    """Un-jittered delay for ``attempt``, capped at ``policy.max_delay_ms``."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    try:
        delay = policy.base_delay_ms * policy.backoff_multiplier**attempt
    except OverflowError:
        return policy.max_delay_ms
    return int(min(float(policy.max_delay_ms), delay))


def delay_for(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> int:
    """Milliseconds to wait before retry number ``attempt + 1``.

    Deterministic when ``policy.jitter`` is off; otherwise uniform over
    ``[0, raw_delay_ms(attempt, policy)]``.
    """
    delay = raw_delay_ms(attempt, policy)
    if policy.jitter:
        return (rng or random).randint(0, delay)
    return delay
