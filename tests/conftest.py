"""Pytest fixtures for billing engine tests."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing_engine.api.app import create_app
from billing_engine.api.dependencies import BillingServices
from billing_engine.config import S3PCredentials, Settings, get_settings
from billing_engine.database import make_session_factory
from billing_engine.models import Base, Transaction, User, utcnow
from billing_engine.providers.base import StatusResult
from billing_engine.providers.s3p.client import S3PClient
from billing_engine.providers.s3p.gateway import S3PGateway
from billing_engine.services.reconciler import StatusReconciler
from billing_engine.services.transaction_store import TransactionStore

# Fixed instant used wherever a test pins the clock
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

S3P_BASE_URL = "https://s3p.test/v2"


@pytest.fixture
async def engine(tmp_path):
    """Create a file-backed SQLite engine per test.

    A file (not ``:memory:``) so every pooled connection sees the same data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(session_factory) -> User:
    """A free-tier user with no plan."""
    async with session_factory() as session:
        user = User(email="awa@example.cm", name="Awa Ngono")
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
async def other_user(session_factory) -> User:
    async with session_factory() as session:
        user = User(email="paul@example.cm", name="Paul Essomba")
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
def make_transaction(session_factory) -> Callable[..., Awaitable[Transaction]]:
    """Factory for persisted PENDING transactions carrying plan metadata."""

    async def _make(
        ptn: str = "PTN-0001",
        *,
        user_id: int | None = None,
        provider: str = "s3p",
        amount: int = 285,
        plan_id: str = "PRO",
        duration_months: int = 3,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> Transaction:
        async with session_factory() as session:
            txn = await TransactionStore(session).create(
                ptn=ptn,
                provider=provider,
                amount=amount,
                currency="XAF",
                merchant="CMORANGEOM" if provider == "s3p" else "ENKAP",
                user_id=user_id,
                metadata={"planId": plan_id, "durationMonths": duration_months, **(metadata or {})},
                expires_at=expires_at,
            )
            await session.commit()
            return txn

    return _make


@pytest.fixture
def load_transaction(session_factory) -> Callable[[str], Awaitable[Transaction]]:
    async def _load(ptn: str) -> Transaction:
        async with session_factory() as session:
            return await TransactionStore(session).require(ptn)

    return _load


@pytest.fixture
def load_user(session_factory) -> Callable[[int], Awaitable[User]]:
    async def _load(user_id: int) -> User:
        async with session_factory() as session:
            return await session.get(User, user_id)

    return _load


# ============================================================================
# Provider fakes
# ============================================================================


class ScriptedVerifier:
    """Status verifier that replays a script; the last entry repeats.

    Entries may be ``StatusResult`` objects or exceptions to raise.
    """

    def __init__(self, *script: StatusResult | Exception, provider_name: str = "s3p"):
        self.provider_name = provider_name
        self.script = list(script)
        self.calls: list[str] = []

    async def verify(self, ptn: str, *, merchant_reference: str | None = None) -> StatusResult:
        self.calls.append(ptn)
        index = min(len(self.calls), len(self.script)) - 1
        entry = self.script[index]
        if isinstance(entry, Exception):
            raise entry
        return entry


@pytest.fixture
def scripted_verifier() -> type[ScriptedVerifier]:
    return ScriptedVerifier


class NoSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep() -> NoSleep:
    return NoSleep()


class FakeS3P:
    """In-process stand-in for the S3P REST API, used via ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.packages: list[dict[str, Any]] = [
            {
                "serviceid": "20062",
                "merchant": "CMORANGEOM",
                "payItemId": "S-112-951-CMORANGEOM-20062-FIXED",
                "amountType": "FIXED",
                "name": "Orange Money fixed",
            },
            {
                "serviceid": "20062",
                "merchant": "CMORANGEOM",
                "payItemId": "S-112-951-CMORANGEOM-20062-CUSTOM",
                "amountType": "CUSTOM",
                "name": "Orange Money",
            },
            {
                "serviceid": "20053",
                "merchant": "MTNMOMO",
                "payItemId": "S-112-951-MTNMOMO-20053-CUSTOM",
                "amountType": "CUSTOM",
                "name": "MTN Mobile Money",
            },
        ]
        self.quote_ttl = timedelta(minutes=10)
        self.collect_response: dict[str, Any] = {
            "ptn": "99999166542651400095315364801168",
            "status": "PENDING",
        }
        self.collect_error: tuple[int, dict[str, Any]] | None = None
        self.verify_responses: dict[str, tuple[int, Any]] = {}
        self.requests: list[httpx.Request] = []

    def form(self, request: httpx.Request) -> dict[str, str]:
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}

    def requests_to(self, endpoint: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(endpoint)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/cashout"):
            return httpx.Response(200, json=self.packages)
        if path.endswith("/quotestd"):
            body = self.form(request)
            return httpx.Response(
                200,
                json={
                    "quoteId": "QUOTE-0001",
                    "payItemId": body["payItemId"],
                    "amountLocalCur": body["amount"],
                    "priceLocalCur": body["amount"],
                    "expiresAt": (utcnow() + self.quote_ttl).isoformat(),
                },
            )
        if path.endswith("/collectstd"):
            if self.collect_error is not None:
                return httpx.Response(self.collect_error[0], json=self.collect_error[1])
            return httpx.Response(200, json=self.collect_response)
        if path.endswith("/verifytx"):
            ptn = request.url.params.get("ptn")
            status_code, body = self.verify_responses.get(
                ptn, (404, {"respCode": 40401, "devMsg": "Transaction not found"})
            )
            return httpx.Response(status_code, json=body)
        return httpx.Response(404, json={"message": "unknown endpoint"})


@pytest.fixture
def fake_s3p() -> FakeS3P:
    return FakeS3P()


@pytest.fixture
def s3p_credentials() -> S3PCredentials:
    return S3PCredentials(base_url=S3P_BASE_URL, access_token="tok", access_secret="sec")


@pytest.fixture
async def s3p_gateway(fake_s3p, s3p_credentials) -> AsyncGenerator[S3PGateway, None]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_s3p))
    yield S3PGateway(
        S3PClient(s3p_credentials, http_client=http),
        callback_url="https://billing.example.cm/api/v1/webhooks/s3p",
    )
    await http.aclose()


# ============================================================================
# API
# ============================================================================

S3P_WEBHOOK_SECRET = "s3p-webhook-secret"
ENKAP_WEBHOOK_SECRET = "enkap-webhook-secret"


@pytest.fixture
def api_settings() -> Settings:
    return replace(
        get_settings(),
        s3p_webhook_secret=S3P_WEBHOOK_SECRET,
        enkap_webhook_secret=ENKAP_WEBHOOK_SECRET,
    )


@pytest.fixture
def services(api_settings, session_factory, s3p_gateway, no_sleep) -> BillingServices:
    reconciler = StatusReconciler(
        session_factory, {"s3p": s3p_gateway}, max_attempts=2, sleep=no_sleep
    )
    return BillingServices(
        api_settings, session_factory, s3p=s3p_gateway, reconciler=reconciler, build_clients=False
    )


@pytest.fixture
async def client(api_settings, services) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to an app wired to the test database and fake S3P."""
    app = create_app(api_settings, services)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
