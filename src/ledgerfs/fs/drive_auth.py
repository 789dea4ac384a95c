"""Access-token providers for the Google Drive backend.

The authorization-code exchange happens elsewhere; these providers only
hand out bearer tokens and refresh them from a stored refresh token.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from .exceptions import AuthenticationError

if TYPE_CHECKING:
    from .config import DriveConfig

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 300


@runtime_checkable
class TokenProvider(Protocol):
    """Supplies bearer tokens to the drive backend."""

    async def get_access_token(self) -> str:
        """Return a usable token or raise ``AuthenticationError``."""
        ...

    async def invalidate(self) -> None:
        """Forget the current token after the service rejected it."""
        ...


class StaticTokenProvider:
    """A fixed token. Cannot recover once the service rejects it."""

    def __init__(self, access_token: str) -> None:
        self._access_token: str | None = access_token

    async def get_access_token(self) -> str:
        if not self._access_token:
            raise AuthenticationError("Not authenticated with Google Drive")
        return self._access_token

    async def invalidate(self) -> None:
        self._access_token = None


class RefreshingTokenProvider:
    """Exchanges a refresh token for access tokens as they expire.

    Tokens are refreshed ``EXPIRY_BUFFER_SECONDS`` before their expiry so
    an in-flight request never carries a token that lapses mid-call.
    """

    def __init__(
        self,
        config: DriveConfig,
        client: httpx.AsyncClient | None = None,
        *,
        clock=time.time,
    ) -> None:
        config.validate()
        self._config = config
        self._client = client
        self._clock = clock
        self._access_token = config.access_token
        self._expires_at: float | None = None
        self._lock = asyncio.Lock()

    def is_token_expired(self) -> bool:
        if not self._access_token:
            return True
        if self._expires_at is None:
            return False
        return self._clock() >= self._expires_at - EXPIRY_BUFFER_SECONDS

    async def get_access_token(self) -> str:
        async with self._lock:
            if self.is_token_expired():
                await self._refresh()
            assert self._access_token is not None
            return self._access_token

    async def invalidate(self) -> None:
        async with self._lock:
            self._access_token = None
            self._expires_at = None

    async def _refresh(self) -> None:
        if not self._config.refresh_token:
            raise AuthenticationError("No refresh token available for Google Drive")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self._config.refresh_token,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self._config.token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=self._config.timeout) as client:
                    response = await client.post(self._config.token_url, data=data)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Token refresh failed: {e}") from e

        if response.status_code != 200:
            raise AuthenticationError(
                f"Token refresh rejected with HTTP {response.status_code}",
                {"status": response.status_code},
            )

        payload = response.json()
        self._access_token = payload.get("access_token")
        if not self._access_token:
            raise AuthenticationError("Token refresh returned no access token")
        expires_in = payload.get("expires_in")
        self._expires_at = self._clock() + float(expires_in) if expires_in else None
        logger.debug("Refreshed Google Drive access token")
