"""E-nkap order API client (OAuth2 bearer)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

import httpx

from billing_engine.config import EnkapCredentials
from billing_engine.errors import GatewayTimeout, ProviderRejection, TransientNetworkError
from billing_engine.providers.base import OrderResult, StatusResult
from billing_engine.providers.enkap.status import normalize_enkap_status, pending_signal
from billing_engine.providers.enkap.token_cache import TokenCache

logger = logging.getLogger(__name__)

ORDER_ENDPOINT = "/order"
ORDER_STATUS_ENDPOINT = "/order/status"

ORDER_VALIDITY = timedelta(days=7)

# Status-check errors surfaced to the caller
STATUS_ERRORS: dict[int, str] = {
    400: "Invalid status request parameters",
    401: "Unauthorized: access token invalid or expired",
    403: "Access denied: insufficient permissions",
    500: "Payment service internal error",
}


@dataclass(frozen=True)
class OrderItem:
    item_id: str
    particulars: str
    quantity: int
    unit_cost: int

    @property
    def sub_total(self) -> int:
        return self.quantity * self.unit_cost


@dataclass
class OrderRequest:
    """What the checkout flow knows about an order before it is normalized."""

    customer_name: str
    total_amount: int
    email: str | None = None
    phone_number: str | None = None
    description: str | None = None
    merchant_reference: str | None = None
    currency: str = "XAF"
    lang_key: str = "fr"
    items: list[OrderItem] = field(default_factory=list)
    return_url: str | None = None
    notification_url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def format_phone_number(phone: str | None) -> str | None:
    """Normalize a Cameroonian number to the ``237`` international prefix."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("237"):
        return digits
    if digits.startswith("0"):
        return f"237{digits[1:]}"
    if len(digits) == 9:
        return f"237{digits}"
    return digits


def mask_phone(phone: str | None) -> str | None:
    if not phone:
        return phone
    return f"{phone[:3]}*****{phone[-3:]}"


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    user, domain = email.split("@", 1)
    return f"{user[:1]}***@{domain}"


def build_order_payload(
    order: OrderRequest, *, now: datetime, default_return_url: str | None = None,
    default_notification_url: str | None = None,
) -> dict[str, Any]:
    """Apply E-nkap's field limits and defaults to an order.

    Raises:
        ValueError: if the customer name is missing or the amount is not
            positive.
    """
    if not order.customer_name or not order.customer_name.strip():
        raise ValueError("customerName is required")
    if order.total_amount is None or order.total_amount <= 0:
        raise ValueError("totalAmount must be greater than zero")

    merchant_reference = order.merchant_reference or str(uuid4())
    payload: dict[str, Any] = {
        "currency": order.currency,
        "totalAmount": order.total_amount,
        "merchantReference": merchant_reference,
        "customerName": order.customer_name[:50],
        "id": {"uuid": merchant_reference, "version": "1.0"},
        "langKey": order.lang_key,
        "orderDate": now.isoformat(),
        "expiryDate": (now + ORDER_VALIDITY).isoformat(),
        "items": [
            {
                "itemId": item.item_id,
                "particulars": item.particulars[:100],
                "quantity": item.quantity,
                "unitCost": item.unit_cost,
                "subTotal": item.sub_total,
            }
            for item in order.items
        ],
    }
    if order.description:
        payload["description"] = order.description[:255]
    if order.email:
        payload["email"] = order.email
    phone = format_phone_number(order.phone_number)
    if phone:
        payload["phoneNumber"] = phone
    return_url = order.return_url or default_return_url
    if return_url:
        payload["returnUrl"] = return_url
    notification_url = order.notification_url or default_notification_url
    if notification_url:
        payload["notificationUrl"] = notification_url
    payload.update(order.extra)
    return payload


class EnkapClient:
    """Creates orders and checks their status against the E-nkap API.

    The token cache is owned by the client; share one client per process so
    every request reuses the same bearer token.
    """

    provider_name = "enkap"

    def __init__(
        self,
        credentials: EnkapCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        token_cache: TokenCache | None = None,
        return_url: str | None = None,
        notification_url: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.credentials = credentials
        self.base_url = credentials.api_base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self.tokens = token_cache or TokenCache(credentials, self._http)
        self.return_url = return_url
        self.notification_url = notification_url
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def __aenter__(self) -> EnkapClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{endpoint}"
        token = await self.tokens.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        timeout = self.credentials.timeout_seconds
        try:
            response = await self._http.request(
                method, url, headers=headers, timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            logger.warning("E-nkap %s %s timed out after %ss", method, url, timeout)
            raise GatewayTimeout(url, timeout) from exc
        except httpx.TransportError as exc:
            logger.warning("E-nkap %s %s transport error: %s", method, url, exc)
            raise TransientNetworkError(
                f"Unable to reach the payment service: {exc}", endpoint=url
            ) from exc

        if response.status_code == 401:
            self.tokens.invalidate()
        return response

    async def create_order(self, order: OrderRequest) -> OrderResult:
        """Place an order and return where the payer completes it."""
        payload = build_order_payload(
            order,
            now=self._clock(),
            default_return_url=self.return_url,
            default_notification_url=self.notification_url,
        )
        logger.info(
            "Creating E-nkap order %s: amount=%s %s phone=%s email=%s",
            payload["merchantReference"],
            payload["totalAmount"],
            payload["currency"],
            mask_phone(payload.get("phoneNumber")),
            mask_email(payload.get("email")),
        )

        response = await self._request("POST", ORDER_ENDPOINT, json=payload)
        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"raw": data}

        if response.status_code >= 400:
            message = (
                data.get("message")
                or data.get("error")
                or f"Error {response.status_code} while creating the order"
            )
            raise ProviderRejection(
                status=response.status_code,
                message=str(message),
                code=data.get("code"),
                details=data,
            )
        if not data.get("redirectUrl"):
            raise ProviderRejection(
                status=response.status_code,
                message="Invalid E-nkap response: redirect URL missing",
                code="INVALID_RESPONSE",
                details=data,
            )

        return OrderResult(
            order_id=str(data.get("orderTransactionId") or ""),
            merchant_reference=str(data.get("merchantReferenceId") or payload["merchantReference"]),
            redirect_url=data["redirectUrl"],
            raw=data,
        )

    async def get_order_status(
        self, reference: str, *, is_merchant_reference: bool = False
    ) -> StatusResult:
        """Check an order by E-nkap transaction id or by our merchant reference.

        201 and 404 are PENDING signals: very recent orders are not indexed
        yet. 400/401/403/500 raise ``ProviderRejection``.
        """
        if is_merchant_reference:
            response = await self._request(
                "GET", ORDER_STATUS_ENDPOINT, params={"orderMerchantId": reference}
            )
        else:
            response = await self._request("GET", f"{ORDER_STATUS_ENDPOINT}/{reference}")

        status_code = response.status_code
        if status_code == 201:
            return pending_signal(reference, "Order created, awaiting payment")
        if status_code == 404:
            return pending_signal(
                reference, "Order not found yet, still initialising", error_code="HTTP_404"
            )
        if status_code >= 400:
            message = STATUS_ERRORS.get(
                status_code, f"HTTP error {status_code}: {response.reason_phrase}"
            )
            logger.warning("E-nkap status check for %s failed: %s", reference, status_code)
            raise ProviderRejection(status=status_code, message=message, code=f"HTTP_{status_code}")

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return normalize_enkap_status(None, ptn=reference)
        return normalize_enkap_status(data.get("status"), ptn=reference, details=data)

    async def verify(self, ptn: str, *, merchant_reference: str | None = None) -> StatusResult:
        # Orders stored without an E-nkap id are keyed by our merchant reference
        by_reference = merchant_reference is not None and merchant_reference == ptn
        return await self.get_order_status(ptn, is_merchant_reference=by_reference)
