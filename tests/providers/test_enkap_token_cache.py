"""Tests for the single-flight E-nkap token cache."""

import asyncio
import base64

import httpx
import pytest

from billing_engine.config import EnkapCredentials
from billing_engine.errors import ProviderRejection, TransientNetworkError
from billing_engine.providers.enkap.token_cache import TokenCache

CREDENTIALS = EnkapCredentials(
    token_url="https://enkap.test/token",
    api_base_url="https://enkap.test/api",
    consumer_key="key",
    consumer_secret="secret",
)


class TokenEndpoint:
    """Counts token requests and issues ``token-1``, ``token-2``, ..."""

    def __init__(self, expires_in: int = 3600, delay: float = 0.0):
        self.expires_in = expires_in
        self.delay = delay
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return httpx.Response(
            200,
            json={"access_token": f"token-{len(self.requests)}", "expires_in": self.expires_in},
        )


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(handler, clock=None) -> TokenCache:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    if clock is None:
        return TokenCache(CREDENTIALS, http)
    return TokenCache(CREDENTIALS, http, clock=clock)


class TestTokenCache:
    """Token acquisition and reuse."""

    async def test_requests_client_credentials_with_basic_auth(self):
        endpoint = TokenEndpoint()
        token = await _cache(endpoint).get_token()

        assert token == "token-1"
        request = endpoint.requests[0]
        assert request.method == "POST"
        assert request.content == b"grant_type=client_credentials"
        expected = base64.b64encode(b"key:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    async def test_concurrent_callers_share_one_request(self):
        endpoint = TokenEndpoint(delay=0.05)
        cache = _cache(endpoint)

        tokens = await asyncio.gather(*(cache.get_token() for _ in range(20)))

        assert set(tokens) == {"token-1"}
        assert len(endpoint.requests) == 1

    async def test_token_is_reused_until_refresh_margin(self):
        endpoint = TokenEndpoint(expires_in=600)
        clock = Clock(1000.0)
        cache = _cache(endpoint, clock)

        assert await cache.get_token() == "token-1"
        clock.now = 1299.0  # 301s before expiry, outside the 300s margin
        assert await cache.get_token() == "token-1"
        clock.now = 1301.0  # inside the margin
        assert await cache.get_token() == "token-2"
        assert len(endpoint.requests) == 2

    async def test_invalidate_forces_refresh(self):
        endpoint = TokenEndpoint()
        cache = _cache(endpoint)

        await cache.get_token()
        cache.invalidate()
        assert await cache.get_token() == "token-2"

    async def test_failed_refresh_is_not_cached(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(401, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "recovered"})

        cache = _cache(handler)
        with pytest.raises(ProviderRejection) as exc_info:
            await cache.get_token()
        assert exc_info.value.code == "AUTH_FAILED"

        assert await cache.get_token() == "recovered"

    async def test_concurrent_callers_all_see_the_failure(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            return httpx.Response(500, text="down")

        cache = _cache(handler)
        results = await asyncio.gather(
            *(cache.get_token() for _ in range(5)), return_exceptions=True
        )
        assert all(isinstance(r, ProviderRejection) for r in results)

    async def test_missing_access_token(self):
        cache = _cache(lambda request: httpx.Response(200, json={"expires_in": 10}))
        with pytest.raises(ProviderRejection) as exc_info:
            await cache.get_token()
        assert exc_info.value.code == "INVALID_RESPONSE"

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientNetworkError):
            await _cache(handler).get_token()
