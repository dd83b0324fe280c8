"""Signed HTTP client for the S3P REST API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from billing_engine.config import S3PCredentials
from billing_engine.errors import GatewayTimeout, ProviderRejection, TransientNetworkError
from billing_engine.providers.s3p.signature import S3PSigner, filter_params

logger = logging.getLogger(__name__)

COLLECT_REQUIRED_FIELDS = ("quoteId", "customerPhonenumber", "customerEmailaddress")


def rejection_from_response(response: httpx.Response) -> ProviderRejection:
    """Wrap a non-2xx response, keeping the raw text if it is not JSON."""
    try:
        data = response.json()
    except ValueError:
        text = response.text
        return ProviderRejection(
            status=response.status_code,
            message=text or response.reason_phrase,
            code=None,
            details={"raw": text},
        )

    if isinstance(data, dict):
        message = (
            data.get("message")
            or data.get("usrMsg")
            or data.get("devMsg")
            or response.reason_phrase
        )
        code = data.get("respCode", data.get("code"))
        return ProviderRejection(
            status=response.status_code,
            message=str(message),
            code=str(code) if code is not None else None,
            details=data,
        )
    return ProviderRejection(
        status=response.status_code,
        message=response.reason_phrase,
        details=data,
    )


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderRejection(
            status=response.status_code,
            message="Gateway returned a non-JSON body",
            code="INVALID_RESPONSE",
            details={"raw": response.text},
        ) from exc


class S3PClient:
    """Low-level S3P client.

    GET signs over the query parameters and appends them to the URL; POST
    signs over the body parameters and sends them form-encoded. Every call is
    bounded by the credentials' hard timeout and raises ``GatewayTimeout``
    when it is exceeded.
    """

    def __init__(
        self,
        credentials: S3PCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        signer: S3PSigner | None = None,
    ):
        self.credentials = credentials
        self.base_url = credentials.base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._signer = signer or S3PSigner(
            credentials.access_token, credentials.access_secret
        )

    async def __aenter__(self) -> S3PClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def get(self, endpoint: str, query_params: dict[str, Any] | None = None) -> Any:
        url = self._url(endpoint)
        params = filter_params(query_params or {})
        headers = {
            "Authorization": self._signer.authorization_header("GET", url, params),
            "Accept": "application/json",
        }
        response = await self._send("GET", url, params=params, headers=headers)
        return _decode(response)

    async def post(self, endpoint: str, body_params: dict[str, Any] | None = None) -> Any:
        url = self._url(endpoint)
        body = filter_params(body_params or {})
        headers = {
            "Authorization": self._signer.authorization_header("POST", url, body),
            "x-api-version": self.credentials.api_version,
            "Accept": "application/json",
        }
        response = await self._send("POST", url, data=body, headers=headers)
        return _decode(response)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        timeout = self.credentials.timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._http.request(method, url, timeout=timeout, **kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("S3P %s %s timed out after %ss", method, url, timeout)
            raise GatewayTimeout(url, timeout) from exc
        except httpx.TransportError as exc:
            logger.warning("S3P %s %s transport error: %s", method, url, exc)
            raise TransientNetworkError(
                f"Unable to reach the payment service: {exc}", endpoint=url
            ) from exc

        if response.is_error:
            rejection = rejection_from_response(response)
            logger.info(
                "S3P %s %s rejected: status=%s code=%s",
                method,
                url,
                rejection.status,
                rejection.code,
            )
            raise rejection
        return response

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def cashout_packages(self, service_id: int | str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if service_id is not None:
            params["serviceid"] = service_id
        data = await self.get("/cashout", params)
        return data if isinstance(data, list) else []

    async def quote_std(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self.post("/quotestd", body)

    async def collect_std(self, body: dict[str, Any]) -> dict[str, Any]:
        missing = [name for name in COLLECT_REQUIRED_FIELDS if not body.get(name)]
        if missing:
            raise ValueError(f"collectstd requires {', '.join(missing)}")
        return await self.post("/collectstd", body)

    async def verify_tx(self, ptn: str | None = None, trid: str | None = None) -> Any:
        if not ptn and not trid:
            raise ValueError("verifytx requires ptn or trid")
        params: dict[str, Any] = {}
        if ptn:
            params["ptn"] = ptn
        if trid:
            params["trid"] = trid
        return await self.get("/verifytx", params)
