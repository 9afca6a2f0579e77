"""Application wiring.

Every long-lived collaborator is built once here and handed to its users by
reference; nothing in the package reaches for a module-level singleton.

Run with::

    uvicorn event_manager.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI

from event_manager.clients import OrderClient, ProductClient, WebhookSubscriptionClient
from event_manager.config import Settings
from event_manager.credentials import CredentialProvider, StaticCredentialProvider
from event_manager.error_handling import ErrorClassifier, ErrorReporter, Notifier
from event_manager.graphql.client import ShopifyGraphQLClient
from event_manager.graphql.transport import GraphQLTransport
from event_manager.store import EventStore, InMemoryEventStore
from event_manager.throttling.executor import ThrottlingExecutor
from event_manager.webhooks import dedup
from event_manager.webhooks.dedup import DeliveryDeduplicator
from event_manager.webhooks.handlers import register_default_handlers
from event_manager.webhooks.management import router as management_router
from event_manager.webhooks.registry import WebhookDispatchRegistry
from event_manager.webhooks.routes import register_webhook_routes
from event_manager.webhooks.verification import WebhookAuthenticator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    reporter: ErrorReporter
    executor: ThrottlingExecutor
    transport: GraphQLTransport
    graphql: ShopifyGraphQLClient
    credentials: CredentialProvider
    store: EventStore
    authenticator: WebhookAuthenticator
    registry: WebhookDispatchRegistry
    subscriptions: WebhookSubscriptionClient
    deduplicator: DeliveryDeduplicator | None = None

    async def aclose(self) -> None:
        await self.reporter.drain()
        await self.transport.aclose()
        if self.deduplicator is not None:
            await self.deduplicator.aclose()


def build_services(
    settings: Settings,
    *,
    credentials: CredentialProvider | None = None,
    store: EventStore | None = None,
    notifier: Notifier | None = None,
    http_client: httpx.AsyncClient | None = None,
    deduplicator: DeliveryDeduplicator | None = None,
) -> Services:
    reporter = ErrorReporter(
        ErrorClassifier(),
        notifier,
        severity_threshold=settings.notification_severity_threshold,
        max_per_hour=settings.notifications_per_hour,
    )
    credentials = credentials or StaticCredentialProvider(settings.access_tokens)
    store = store or InMemoryEventStore()

    executor = ThrottlingExecutor(settings.retry_policy(), reporter=reporter)
    transport = GraphQLTransport(http_client, api_version=settings.shopify_api_version)
    graphql = ShopifyGraphQLClient(
        transport,
        executor,
        credentials,
        timeout_ms=settings.graphql_timeout_ms,
        retry_throttled_errors=settings.retry_throttled_graphql_errors,
    )

    registry = register_default_handlers(
        WebhookDispatchRegistry(reporter),
        store=store,
        credentials=credentials,
        products=ProductClient(graphql),
        orders=OrderClient(graphql),
        reporter=reporter,
    )

    if deduplicator is None and settings.redis_url:
        deduplicator = DeliveryDeduplicator(
            dedup.connect(settings.redis_url), settings.dedup_ttl_seconds
        )

    return Services(
        settings=settings,
        reporter=reporter,
        executor=executor,
        transport=transport,
        graphql=graphql,
        credentials=credentials,
        store=store,
        authenticator=WebhookAuthenticator(settings.shopify_webhook_secret),
        registry=registry,
        subscriptions=WebhookSubscriptionClient(graphql),
        deduplicator=deduplicator,
    )


def create_app(
    settings: Settings | None = None,
    *,
    credentials: CredentialProvider | None = None,
    store: EventStore | None = None,
    notifier: Notifier | None = None,
    http_client: httpx.AsyncClient | None = None,
    deduplicator: DeliveryDeduplicator | None = None,
) -> FastAPI:
    """Build the FastAPI app with all services wired in."""
    settings = settings or Settings()
    logging.getLogger("event_manager").setLevel(settings.log_level.upper())
    if not settings.shopify_webhook_secret:
        logger.warning("Webhook secret not configured, every delivery will be rejected")

    services = build_services(
        settings,
        credentials=credentials,
        store=store,
        notifier=notifier,
        http_client=http_client,
        deduplicator=deduplicator,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.aclose()

    app = FastAPI(title="Shopify Event Manager", lifespan=lifespan)
    app.state.services = services
    register_webhook_routes(app)
    app.include_router(management_router)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "event-manager",
            "topics": services.registry.topics,
            "dedup": services.deduplicator is not None,
        }

    return app
