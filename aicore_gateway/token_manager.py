from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Callable, Optional

import httpx

from .config import GatewaySettings
from .logging_setup import mask_secret
from .proxy.errors import ConfigurationError, UpstreamTransportError
from .proxy.transport import ProxyTransport, raise_for_upstream_status, read_json

logger = logging.getLogger(__name__)


class TokenManager:
    """OAuth client-credentials token cache.

    The token is reused until ``expires_in`` minus the configured buffer has
    elapsed. Concurrent callers that find the cache stale wait on one lock,
    so only a single refresh request is ever in flight.
    """

    def __init__(
        self,
        transport: ProxyTransport,
        settings: GatewaySettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._settings = settings
        self._clock = clock
        self._token: Optional[str] = None
        self._expiry = 0.0
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _cached(self) -> Optional[str]:
        if self._token and self._clock() < self._expiry:
            return self._token
        return None

    async def get_access_token(self) -> str:
        token = self._cached()
        if token:
            return token

        async with self._lock:
            token = self._cached()
            if token:
                return token
            return await self._refresh_token()

    async def _refresh_token(self) -> str:
        settings = self._settings
        if not (settings.aicore_client_id and settings.aicore_client_secret and settings.aicore_auth_url):
            raise ConfigurationError(
                "AICORE_CLIENT_ID, AICORE_CLIENT_SECRET and AICORE_AUTH_URL are required"
            )

        credentials = base64.b64encode(
            f"{settings.aicore_client_id}:{settings.aicore_client_secret}".encode("utf-8")
        ).decode("ascii")
        url = f"{settings.aicore_auth_url}/oauth/token?grant_type=client_credentials"
        headers = {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/x-www-form-urlencoded",
        }

        self.refresh_count += 1
        try:
            response = await self._transport.request("POST", url, headers, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(
                f"authentication request failed: {type(exc).__name__}"
            ) from exc
        await raise_for_upstream_status(response, "Authentication")
        data = await read_json(response, "Authentication")

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise UpstreamTransportError("no access token received from authentication service")

        expires_in = data.get("expires_in")
        if not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = settings.default_token_expiry_secs
        lifetime = max(0.0, float(expires_in) - settings.token_expiry_buffer_secs)

        self._token = str(access_token)
        self._expiry = self._clock() + lifetime
        logger.debug(
            "access token refreshed: token=%s valid_for=%.0fs", mask_secret(self._token), lifetime
        )
        return self._token

    def clear_cache(self) -> None:
        self._token = None
        self._expiry = 0.0
