"""Shopify GraphQL client: credential lookup + transport + throttled retries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from event_manager.credentials import CredentialProvider
from event_manager.errors import AuthenticationFault, RemoteAPIFault
from event_manager.graphql.transport import GraphQLRequest, GraphQLResponse, GraphQLTransport
from event_manager.throttling.backoff import RetryPolicy
from event_manager.throttling.executor import ExecutionResult, OperationContext, ThrottlingExecutor

logger = logging.getLogger(__name__)


class ShopifyGraphQLClient:
    """Executes queries and mutations against a shop's Admin API.

    Top-level GraphQL errors come back inside a successful result unless
    ``retry_throttled_errors`` is on, in which case a THROTTLED error is
    retried like an HTTP 429.
    """

    def __init__(
        self,
        transport: GraphQLTransport,
        executor: ThrottlingExecutor,
        credentials: CredentialProvider,
        *,
        timeout_ms: int = 30_000,
        retry_throttled_errors: bool = False,
    ) -> None:
        self.transport = transport
        self.executor = executor
        self.credentials = credentials
        self.timeout_ms = timeout_ms
        self.retry_throttled_errors = retry_throttled_errors

    async def execute_query(
        self,
        request: GraphQLRequest,
        context: OperationContext,
        **kwargs: Any,
    ) -> ExecutionResult[GraphQLResponse]:
        return await self._execute(request, context, "query", **kwargs)

    async def execute_mutation(
        self,
        request: GraphQLRequest,
        context: OperationContext,
        **kwargs: Any,
    ) -> ExecutionResult[GraphQLResponse]:
        return await self._execute(request, context, "mutation", **kwargs)

    async def _execute(
        self,
        request: GraphQLRequest,
        context: OperationContext,
        operation_type: str,
        *,
        policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
        deadline: float | None = None,
    ) -> ExecutionResult[GraphQLResponse]:
        credential = await self.credentials.get_access_token(context.shop_domain)
        if credential is None:
            fault = AuthenticationFault(
                f"No access token available for shop {context.shop_domain}",
                context={"operation": context.operation_name},
            )
            if self.executor.reporter is not None:
                self.executor.reporter.report_graphql_error(
                    fault, context.operation_name, context.shop_domain
                )
            return ExecutionResult(success=False, error=fault)

        throttling_context = OperationContext(
            shop_domain=context.shop_domain,
            operation_name=f"{operation_type}:{context.operation_name}",
            request_id=context.request_id,
            extra={**context.extra, "query": request.query[:100]},
        )

        async def operation() -> GraphQLResponse:
            response = await self.transport.send(
                request, credential, context.shop_domain, self.timeout_ms
            )
            if self.retry_throttled_errors and response.is_throttled:
                raise RemoteAPIFault(
                    "GraphQL request throttled",
                    status_code=429,
                    rate_limit_info=response.rate_limit_info,
                )
            return response

        return await self.executor.execute(
            operation,
            throttling_context,
            policy,
            cancel_event=cancel_event,
            deadline=deadline,
        )
