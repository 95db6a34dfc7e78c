"""Bearer credentials for the upstream model service."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from ..types import UpstreamAuthError

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenProvider(Protocol):
    async def get_token(self, audience: str) -> str: ...


class GoogleIdTokenProvider:
    """OIDC identity tokens from application-default credentials.

    Tokens are scoped to *audience* (the service URL). Failures surface as
    :class:`UpstreamAuthError`; there is no retry at this layer.
    """

    def _fetch(self, audience: str) -> str:
        import google.auth.transport.requests
        import google.oauth2.id_token

        request = google.auth.transport.requests.Request()
        return google.oauth2.id_token.fetch_id_token(request, audience)

    async def get_token(self, audience: str) -> str:
        if not audience:
            raise UpstreamAuthError("Target audience (service URL) is required to fetch an identity token")
        try:
            token = await asyncio.to_thread(self._fetch, audience)
        except Exception as e:
            logger.error("Error fetching identity token: %s", e)
            raise UpstreamAuthError(f"Failed to fetch identity token: {e}") from e
        if not token:
            raise UpstreamAuthError("Failed to fetch identity token: empty token returned")
        return token


class StaticTokenProvider:
    """Fixed token; empty means the upstream is called without Authorization."""

    def __init__(self, token: str = "") -> None:
        self.token = token

    async def get_token(self, audience: str) -> str:
        return self.token


def build_token_provider(config) -> TokenProvider:
    """Create the provider named by an UpstreamConfig."""
    if config.auth == "static":
        return StaticTokenProvider(config.token)
    return GoogleIdTokenProvider()
