"""Single-flight OAuth2 client-credentials token cache."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from billing_engine.config import EnkapCredentials
from billing_engine.errors import GatewayTimeout, ProviderRejection, TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


class TokenCache:
    """Shares one bearer token across all callers of an E-nkap client.

    A cached token is reused until ``refresh_margin_seconds`` before its
    advertised expiry. When it needs renewing, the first caller starts the
    token request and every concurrent caller awaits that same request, so
    a burst of callers costs exactly one round trip to the token endpoint.
    """

    def __init__(
        self,
        credentials: EnkapCredentials,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credentials = credentials
        self._http = http_client
        self._clock = clock
        self._token: AccessToken | None = None
        self._inflight: asyncio.Future[AccessToken] | None = None
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the API answered 401."""
        self._token = None

    async def get_token(self) -> str:
        token = self._token
        if token is not None and token.is_fresh(
            self._clock(), self.credentials.refresh_margin_seconds
        ):
            return token.value

        async with self._lock:
            # Re-check under the lock: another caller may have just refreshed.
            token = self._token
            if token is not None and token.is_fresh(
                self._clock(), self.credentials.refresh_margin_seconds
            ):
                return token.value
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._fetch())
                self._inflight.add_done_callback(self._clear_inflight)
            inflight = self._inflight

        # Callers are cancellable without cancelling the shared request.
        token = await asyncio.shield(inflight)
        return token.value

    def _clear_inflight(self, future: asyncio.Future[AccessToken]) -> None:
        if self._inflight is future:
            self._inflight = None
        if not future.cancelled() and future.exception() is None:
            self._token = future.result()

    async def _fetch(self) -> AccessToken:
        credentials = self.credentials
        basic = base64.b64encode(
            f"{credentials.consumer_key}:{credentials.consumer_secret}".encode()
        ).decode("ascii")
        try:
            response = await self._http.post(
                credentials.token_url,
                data={"grant_type": "client_credentials"},
                headers={
                    "Authorization": f"Basic {basic}",
                    "Accept": "application/json",
                },
                timeout=credentials.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(credentials.token_url, credentials.timeout_seconds) from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(
                f"Unable to reach the E-nkap token endpoint: {exc}",
                endpoint=credentials.token_url,
            ) from exc

        if response.is_error:
            logger.warning("E-nkap token request rejected: status=%s", response.status_code)
            raise ProviderRejection(
                status=response.status_code,
                message="Unable to authenticate with the payment service",
                code="AUTH_FAILED",
            )
        try:
            data = response.json()
            value = data["access_token"]
            expires_in = float(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderRejection(
                status=response.status_code,
                message="Token response did not include an access_token",
                code="INVALID_RESPONSE",
            ) from exc

        logger.info("E-nkap access token refreshed (expires in %ss)", int(expires_in))
        return AccessToken(value=value, expires_at=self._clock() + expires_in)
