"""Tests for the E-nkap order client."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from billing_engine.config import EnkapCredentials
from billing_engine.errors import ProviderRejection
from billing_engine.providers.enkap.client import (
    EnkapClient,
    OrderItem,
    OrderRequest,
    build_order_payload,
    format_phone_number,
    mask_email,
    mask_phone,
)
from billing_engine.providers.enkap.status import normalize_enkap_status
from billing_engine.services.state_machine import TransactionStatus

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

CREDENTIALS = EnkapCredentials(
    token_url="https://enkap.test/token",
    api_base_url="https://enkap.test/api",
    consumer_key="key",
    consumer_secret="secret",
)


class FakeEnkap:
    """Token endpoint plus scripted order endpoints."""

    def __init__(self) -> None:
        self.token_requests = 0
        self.order_response = httpx.Response(
            200,
            json={
                "orderTransactionId": "OTX-1",
                "merchantReferenceId": "ref-1",
                "redirectUrl": "https://checkout.enkap.test/OTX-1",
            },
        )
        self.status_response = httpx.Response(200, json={"status": "CONFIRMED"})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.token_requests += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.token_requests}", "expires_in": 3600}
            )
        self.requests.append(request)
        if request.url.path == "/api/order":
            return self.order_response
        return self.status_response


@pytest.fixture
def fake_enkap() -> FakeEnkap:
    return FakeEnkap()


@pytest.fixture
async def enkap(fake_enkap):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_enkap))
    yield EnkapClient(
        CREDENTIALS,
        http_client=http,
        return_url="https://billing.example.cm/return",
        notification_url="https://billing.example.cm/api/v1/webhooks/enkap",
        clock=lambda: NOW,
    )
    await http.aclose()


def _order(**overrides) -> OrderRequest:
    values = {
        "customer_name": "Awa Ngono",
        "total_amount": 285,
        "email": "awa@example.cm",
        "phone_number": "690 00 00 00",
        "description": "Subscription Pro - 3 months",
        "merchant_reference": "ref-1",
        "items": [OrderItem("PRO", "Subscription Pro", 1, 285)],
    }
    values.update(overrides)
    return OrderRequest(**values)


class TestPayloadHelpers:
    """Order normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("690000000", "237690000000"),
            ("0690000000", "237690000000"),
            ("+237 690 00 00 00", "237690000000"),
            ("237690000000", "237690000000"),
            (None, None),
        ],
    )
    def test_format_phone_number(self, raw, expected):
        assert format_phone_number(raw) == expected

    def test_masking(self):
        assert mask_phone("237690000123") == "237*****123"
        assert mask_email("awa@example.cm") == "a***@example.cm"

    def test_payload_limits_and_defaults(self):
        payload = build_order_payload(
            _order(customer_name="N" * 80, description="D" * 400, items=[OrderItem("PRO", "P" * 150, 2, 100)]),
            now=NOW,
            default_return_url="https://r",
        )

        assert len(payload["customerName"]) == 50
        assert len(payload["description"]) == 255
        assert len(payload["items"][0]["particulars"]) == 100
        assert payload["items"][0]["subTotal"] == 200
        assert payload["id"] == {"uuid": "ref-1", "version": "1.0"}
        assert payload["phoneNumber"] == "237690000000"
        assert payload["returnUrl"] == "https://r"
        assert payload["expiryDate"] == "2026-03-17T12:00:00+00:00"

    def test_generated_merchant_reference(self):
        payload = build_order_payload(_order(merchant_reference=None), now=NOW)
        assert payload["merchantReference"]
        assert payload["id"]["uuid"] == payload["merchantReference"]

    @pytest.mark.parametrize("overrides", [{"customer_name": "  "}, {"total_amount": 0}])
    def test_invalid_order(self, overrides):
        with pytest.raises(ValueError):
            build_order_payload(_order(**overrides), now=NOW)


class TestCreateOrder:
    """Order placement."""

    async def test_success(self, enkap, fake_enkap):
        result = await enkap.create_order(_order())

        assert result.order_id == "OTX-1"
        assert result.merchant_reference == "ref-1"
        assert result.redirect_url == "https://checkout.enkap.test/OTX-1"

        request = fake_enkap.requests[0]
        assert request.headers["Authorization"] == "Bearer token-1"
        sent = json.loads(request.content)
        assert sent["notificationUrl"] == "https://billing.example.cm/api/v1/webhooks/enkap"
        assert sent["totalAmount"] == 285

    async def test_token_is_reused_across_calls(self, enkap, fake_enkap):
        await enkap.create_order(_order())
        await enkap.get_order_status("OTX-1")
        assert fake_enkap.token_requests == 1

    async def test_missing_redirect_url(self, enkap, fake_enkap):
        fake_enkap.order_response = httpx.Response(200, json={"orderTransactionId": "OTX-1"})

        with pytest.raises(ProviderRejection) as exc_info:
            await enkap.create_order(_order())
        assert exc_info.value.code == "INVALID_RESPONSE"

    async def test_rejected_order(self, enkap, fake_enkap):
        fake_enkap.order_response = httpx.Response(422, json={"message": "Invalid amount"})

        with pytest.raises(ProviderRejection) as exc_info:
            await enkap.create_order(_order())
        assert exc_info.value.status == 422
        assert exc_info.value.message == "Invalid amount"


class TestOrderStatus:
    """Status checks."""

    async def test_confirmed_is_success(self, enkap, fake_enkap):
        result = await enkap.verify("OTX-1")

        assert result.status is TransactionStatus.SUCCESS
        assert fake_enkap.requests[0].url.path == "/api/order/status/OTX-1"

    async def test_lookup_by_merchant_reference(self, enkap, fake_enkap):
        await enkap.get_order_status("ref-1", is_merchant_reference=True)

        request = fake_enkap.requests[0]
        assert request.url.path == "/api/order/status"
        assert request.url.params["orderMerchantId"] == "ref-1"

    @pytest.mark.parametrize("status_code", [201, 404])
    async def test_pending_signals(self, enkap, fake_enkap, status_code):
        fake_enkap.status_response = httpx.Response(status_code, json={})

        result = await enkap.verify("OTX-1")
        assert result.status is TransactionStatus.PENDING

    @pytest.mark.parametrize("status_code", [400, 403, 500, 503])
    async def test_errors_raise(self, enkap, fake_enkap, status_code):
        fake_enkap.status_response = httpx.Response(status_code, json={})

        with pytest.raises(ProviderRejection) as exc_info:
            await enkap.verify("OTX-1")
        assert exc_info.value.code == f"HTTP_{status_code}"

    async def test_unauthorized_drops_cached_token(self, enkap, fake_enkap):
        fake_enkap.status_response = httpx.Response(401, json={})
        with pytest.raises(ProviderRejection):
            await enkap.verify("OTX-1")

        fake_enkap.status_response = httpx.Response(200, json={"status": "PENDING"})
        await enkap.verify("OTX-1")
        assert fake_enkap.token_requests == 2
        assert fake_enkap.requests[-1].headers["Authorization"] == "Bearer token-2"

    async def test_missing_status_stays_pending(self, enkap, fake_enkap):
        fake_enkap.status_response = httpx.Response(200, json={"orderId": "OTX-1"})

        result = await enkap.verify("OTX-1")
        assert result.status is TransactionStatus.PENDING
        assert result.error_code == "STRUCTURE_ERROR"


class TestNormalizeEnkapStatus:
    """E-nkap vocabulary."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("PAID", TransactionStatus.SUCCESS),
            ("confirmed", TransactionStatus.SUCCESS),
            ("CANCELED", TransactionStatus.CANCELLED),
            ("REJECTED", TransactionStatus.FAILED),
            ("EXPIRED", TransactionStatus.EXPIRED),
            ("IN_PROGRESS", TransactionStatus.PENDING),
            ("BRAND_NEW", TransactionStatus.PENDING),
        ],
    )
    def test_mapping(self, raw, expected):
        assert normalize_enkap_status(raw).status is expected

    def test_error_details_are_kept(self):
        result = normalize_enkap_status(
            "FAILED", details={"error": {"code": "E42", "message": "Card declined"}}
        )
        assert result.error_code == "E42"
        assert result.message == "Card declined"
