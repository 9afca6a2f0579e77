"""Event manager configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from event_manager.errors import ErrorSeverity
from event_manager.throttling.backoff import RetryPolicy


class Settings(BaseSettings):
    """Environment-driven settings for the event manager."""

    shopify_api_version: str = "2024-01"
    shopify_webhook_secret: str = ""
    graphql_timeout_ms: int = 30_000

    # Retry policy for Admin API calls
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_status_codes: list[int] = [429, 500, 502, 503, 504]
    retry_throttled_graphql_errors: bool = False

    # Delivery de-duplication (empty URL disables it)
    redis_url: str = ""
    dedup_ttl_seconds: int = 86400

    # Fault notifications
    notification_severity_threshold: ErrorSeverity = ErrorSeverity.HIGH
    notifications_per_hour: int = 10

    # Development credential source: shop domain -> access token
    access_tokens: dict[str, str] = {}

    log_level: str = "INFO"

    model_config = {"env_prefix": "EVENT_MANAGER_", "env_file": ".env", "extra": "ignore"}

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            retryable_status_codes=self.retryable_status_codes,
        )
