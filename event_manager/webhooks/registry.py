"""Topic -> handler registry for inbound webhooks.

Every outcome leaves ``handle_webhook`` as a ``DispatchResult``:

- unknown topic: ``success=False`` with a "No handler found" message. This
  is an expected outcome, so the boundary can still acknowledge the delivery
  and the provider does not redeliver it.
- handler returned: its result, unchanged.
- handler raised: ``success=False``; the fault is reported, never re-raised.

Registering a second handler for a topic replaces the first (last
registration wins) and logs a warning.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from event_manager.error_handling import ErrorReporter
from event_manager.errors import Fault, WebhookProcessingFault
from event_manager.webhooks.models import DispatchResult, WebhookEnvelope, WebhookTopic, normalize_topic

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[Any, WebhookEnvelope], Awaitable[DispatchResult]]


class WebhookDispatchRegistry:
    def __init__(self, reporter: ErrorReporter | None = None) -> None:
        self._handlers: dict[str, WebhookHandler] = {}
        self.reporter = reporter

    def register(self, topic: str | WebhookTopic, handler: WebhookHandler) -> WebhookHandler | None:
        """Register ``handler`` for ``topic``; returns the handler it replaced, if any."""
        key = normalize_topic(topic)
        if not key:
            raise ValueError("Webhook topic must not be empty")
        previous = self._handlers.get(key)
        if previous is not None and previous is not handler:
            logger.warning("Replacing webhook handler for topic %s", key)
        self._handlers[key] = handler
        return previous

    def handler_for(self, topic: str | WebhookTopic) -> WebhookHandler | None:
        return self._handlers.get(normalize_topic(topic))

    @property
    def topics(self) -> list[str]:
        return sorted(self._handlers)

    async def handle_webhook(self, payload: Any, envelope: WebhookEnvelope) -> DispatchResult:
        """Route ``payload`` to the handler registered for ``envelope.topic``."""
        handler = self.handler_for(envelope.topic)
        if handler is None:
            logger.info(
                "No handler for webhook topic %s (shop=%s id=%s)",
                envelope.topic,
                envelope.shop_domain,
                envelope.delivery_id,
            )
            return DispatchResult(
                success=False,
                message=f"No handler found for webhook topic: {envelope.topic}",
            )

        try:
            result = await handler(payload, envelope)
        except Exception as exc:
            fault = exc if isinstance(exc, Fault) else WebhookProcessingFault(
                str(exc) or type(exc).__name__,
                context={"exception_type": type(exc).__name__},
            )
            if self.reporter is not None:
                self.reporter.report_webhook_error(
                    fault,
                    envelope.topic,
                    envelope.shop_domain,
                    delivery_id=envelope.delivery_id,
                )
            else:
                logger.exception("Webhook handler for %s failed", envelope.topic)
            return DispatchResult(
                success=False,
                message=f"Failed to process {envelope.topic} webhook: {fault.message}",
                data={"error": fault.message, "category": fault.category.value},
            )

        if not isinstance(result, DispatchResult):
            logger.error("Handler for %s returned %r instead of DispatchResult", envelope.topic, result)
            return DispatchResult(
                success=False,
                message=f"Handler for {envelope.topic} returned an invalid result",
            )
        return result
