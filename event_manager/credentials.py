"""Access-token lookup for shops.

Token storage and encryption belong to the auth service; this package only
sees the provider interface. ``StaticCredentialProvider`` serves tokens from
configuration for development and tests.
"""

from __future__ import annotations

import logging
from typing import Mapping, Protocol

from event_manager.graphql.transport import AccessToken

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    async def get_access_token(self, shop_domain: str) -> AccessToken | None: ...


class StaticCredentialProvider:
    """Serves access tokens from a fixed shop -> token mapping."""

    def __init__(self, tokens: Mapping[str, str | AccessToken] | None = None) -> None:
        self._tokens: dict[str, AccessToken] = {}
        for shop, token in (tokens or {}).items():
            self._tokens[shop.lower()] = (
                token if isinstance(token, AccessToken) else AccessToken(access_token=token)
            )

    async def get_access_token(self, shop_domain: str) -> AccessToken | None:
        token = self._tokens.get(shop_domain.lower())
        if token is None:
            logger.warning("No access token found for shop: %s", shop_domain)
        return token
