"""Single-shot GraphQL exchange with the Shopify Admin API.

The transport never retries; it turns one HTTP exchange into either a
``GraphQLResponse`` or a transport-level ``Fault``. Top-level GraphQL
``errors`` are part of a successful response: the HTTP exchange worked and
it is up to the caller to decide what the errors mean.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import BaseModel, Field

from event_manager.errors import AuthenticationFault, NetworkFault, RemoteAPIFault
from event_manager.throttling.rate_limit import RateLimitInfo, parse_rate_limit

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-01"
USER_AGENT = "Shopify-Event-Manager/1.0.0"
THROTTLED_CODE = "THROTTLED"

_AUTH_STATUS_CODES = {401, 403}


def parse_retry_after(value: str | None) -> int | None:
    """Retry-After seconds as milliseconds; HTTP-date and junk values are ignored."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return math.ceil(seconds * 1000)


class GraphQLRequest(BaseModel):
    query: str = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    operation_name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": self.query, "variables": self.variables}
        if self.operation_name:
            payload["operationName"] = self.operation_name
        return payload


@dataclass(frozen=True)
class AccessToken:
    """What the credential provider hands out for a shop."""

    access_token: str
    scopes: str = ""


@dataclass(frozen=True)
class GraphQLError:
    message: str
    path: tuple[Any, ...] = ()
    extensions: dict[str, Any] = field(default_factory=dict)

    @property
    def code(self) -> str | None:
        code = self.extensions.get("code")
        return code if isinstance(code, str) else None

    @classmethod
    def from_json(cls, raw: Any) -> "GraphQLError":
        if not isinstance(raw, Mapping):
            return cls(message=str(raw))
        extensions = raw.get("extensions")
        return cls(
            message=str(raw.get("message", "Unknown GraphQL error")),
            path=tuple(raw.get("path") or ()),
            extensions=dict(extensions) if isinstance(extensions, Mapping) else {},
        )


@dataclass(frozen=True)
class GraphQLResponse:
    data: dict[str, Any] | None
    errors: tuple[GraphQLError, ...] = ()
    extensions: dict[str, Any] = field(default_factory=dict)
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def is_throttled(self) -> bool:
        return any(error.code == THROTTLED_CODE for error in self.errors)

    @property
    def rate_limit_info(self) -> RateLimitInfo | None:
        return parse_rate_limit(self.extensions) or parse_rate_limit(self.headers)

    def raise_for_errors(self) -> None:
        """Raise ``RemoteAPIFault`` if the response carries top-level errors."""
        if not self.errors:
            return
        messages = ", ".join(error.message for error in self.errors)
        raise RemoteAPIFault(
            f"GraphQL errors: {messages}",
            rate_limit_info=self.rate_limit_info,
            context={
                "errors": [
                    {"message": e.message, "path": list(e.path), "code": e.code}
                    for e in self.errors
                ]
            },
        )

    @classmethod
    def from_json(
        cls,
        body: Mapping[str, Any],
        *,
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
    ) -> "GraphQLResponse":
        data = body.get("data")
        errors = body.get("errors") or []
        extensions = body.get("extensions")
        return cls(
            data=dict(data) if isinstance(data, Mapping) else None,
            errors=tuple(GraphQLError.from_json(e) for e in errors)
            if isinstance(errors, list)
            else (GraphQLError.from_json(errors),),
            extensions=dict(extensions) if isinstance(extensions, Mapping) else {},
            status_code=status_code,
            headers={k.lower(): v for k, v in (headers or {}).items()},
        )


class GraphQLTransport:
    """Issues one query or mutation per ``send()`` call."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        api_version: str = DEFAULT_API_VERSION,
    ) -> None:
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self.api_version = api_version

    def endpoint(self, shop_domain: str) -> str:
        return f"https://{shop_domain}/admin/api/{self.api_version}/graphql.json"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(
        self,
        request: GraphQLRequest,
        credential: AccessToken | str,
        shop_domain: str,
        timeout_ms: int,
    ) -> GraphQLResponse:
        """POST ``request`` to the shop's Admin API.

        Raises:
            NetworkFault: connection failure or timeout (the exchange is cancelled).
            AuthenticationFault: empty credential, or HTTP 401/403.
            RemoteAPIFault: any other non-2xx status or an undecodable body.
        """
        token = credential.access_token if isinstance(credential, AccessToken) else credential
        if not token:
            raise AuthenticationFault(f"No access token for shop {shop_domain}")

        url = self.endpoint(shop_domain)
        try:
            response = await self._client.post(
                url,
                json=request.to_payload(),
                headers={
                    "X-Shopify-Access-Token": token,
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=timeout_ms / 1000,
            )
        except httpx.TimeoutException as exc:
            raise NetworkFault(
                f"GraphQL request timeout after {timeout_ms}ms",
                context={"shop_domain": shop_domain, "exception_type": type(exc).__name__},
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkFault(
                f"GraphQL request failed: {exc}",
                context={"shop_domain": shop_domain, "exception_type": type(exc).__name__},
            ) from exc

        headers = {k.lower(): v for k, v in response.headers.items()}
        if response.status_code in _AUTH_STATUS_CODES:
            raise AuthenticationFault(
                f"HTTP {response.status_code}: access token rejected for {shop_domain}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise RemoteAPIFault(
                f"HTTP {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
                rate_limit_info=parse_rate_limit(headers),
                retry_after_ms=parse_retry_after(headers.get("retry-after")),
                context={"shop_domain": shop_domain, "retry_after": headers.get("retry-after")},
            )

        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RemoteAPIFault(
                "GraphQL response is not valid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, Mapping):
            raise RemoteAPIFault(
                "GraphQL response is not a JSON object",
                status_code=response.status_code,
            )

        result = GraphQLResponse.from_json(
            body, status_code=response.status_code, headers=headers
        )
        logger.debug(
            "GraphQL %s on %s -> %d (errors=%d)",
            request.operation_name or "anonymous",
            shop_domain,
            response.status_code,
            len(result.errors),
        )
        return result
