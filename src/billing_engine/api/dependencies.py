"""FastAPI dependencies for dependency injection."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import httpx
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import Settings
from billing_engine.errors import ConfigurationError
from billing_engine.providers.base import StatusVerifier
from billing_engine.providers.enkap.client import EnkapClient
from billing_engine.providers.s3p.client import S3PClient
from billing_engine.providers.s3p.gateway import S3PGateway
from billing_engine.services.checkout import CheckoutService
from billing_engine.services.reconciler import KeyedLock, StatusReconciler
from billing_engine.webhooks.handlers import WebhookProcessor

logger = logging.getLogger(__name__)


class BillingServices:
    """Process-wide collaborators shared by every request.

    Provider clients are built from the settings when their credentials are
    present; a provider with missing credentials is left out and any route
    that needs it answers with a configuration error.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        s3p: S3PGateway | None = None,
        enkap: EnkapClient | None = None,
        reconciler: StatusReconciler | None = None,
        build_clients: bool = True,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self._http: httpx.AsyncClient | None = None

        if build_clients and (s3p is None or enkap is None):
            self._http = httpx.AsyncClient()
            s3p = s3p or self._build_s3p()
            enkap = enkap or self._build_enkap()
        self.s3p = s3p
        self.enkap = enkap

        verifiers: dict[str, StatusVerifier] = {}
        if s3p is not None:
            verifiers["s3p"] = s3p
        if enkap is not None:
            verifiers["enkap"] = enkap
        self.reconciler = reconciler or StatusReconciler(
            session_factory,
            verifiers,
            locks=KeyedLock(),
            poll_interval=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
        )
        self.checkout = CheckoutService(
            session_factory, s3p=s3p, enkap=enkap, reconciler=self.reconciler
        )
        self.webhooks = WebhookProcessor(
            session_factory,
            self.reconciler,
            s3p_secret=settings.s3p_webhook_secret,
            enkap_secret=settings.enkap_webhook_secret,
            dedupe_capacity=settings.webhook_dedupe_capacity,
        )

    def _build_s3p(self) -> S3PGateway | None:
        try:
            credentials = self.settings.s3p_credentials()
        except ConfigurationError as exc:
            logger.warning("S3P disabled: %s", exc)
            return None
        return S3PGateway(
            S3PClient(credentials, http_client=self._http),
            callback_url=self.settings.s3p_callback_url,
        )

    def _build_enkap(self) -> EnkapClient | None:
        try:
            credentials = self.settings.enkap_credentials()
        except ConfigurationError as exc:
            logger.warning("E-nkap disabled: %s", exc)
            return None
        return EnkapClient(
            credentials,
            http_client=self._http,
            return_url=self.settings.enkap_return_url,
            notification_url=self.settings.enkap_notification_url,
        )

    def require_s3p(self) -> S3PGateway:
        if self.s3p is None:
            raise ConfigurationError("S3P payments are not configured")
        return self.s3p

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()


def get_services(request: Request) -> BillingServices:
    return request.app.state.services


async def get_db_session(
    services: Annotated[BillingServices, Depends(get_services)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with services.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> int:
    """Extract the caller's user ID from header."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-User-Id format",
        )


# Type aliases for cleaner dependency injection
Services = Annotated[BillingServices, Depends(get_services)]
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
UserId = Annotated[int, Depends(get_user_id)]
