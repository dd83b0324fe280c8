"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine.api.dependencies import BillingServices
from billing_engine.api.routes import health_router, payments_router, webhooks_router
from billing_engine.config import Settings, get_settings
from billing_engine.database import dispose_db, init_db
from billing_engine.errors import (
    ConfigurationError,
    GatewayTimeout,
    InvalidTransitionError,
    ProviderRejection,
    QuoteExpired,
    SignatureInvalid,
    TransactionNotFound,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    owned = getattr(app.state, "services", None) is None
    if owned:
        _, session_factory = init_db()
        app.state.services = BillingServices(app.state.settings, session_factory)
    yield
    # Shutdown
    if owned:
        await app.state.services.aclose()
        await dispose_db()


def _error(status_code: int, detail: str, code: str, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code, **extra})


def create_app(
    settings: Settings | None = None,
    services: BillingServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``services`` may be injected (tests do); otherwise the lifespan builds
    them from ``settings`` and owns their shutdown.
    """
    app = FastAPI(
        title="Billing Engine API",
        description="Mobile money subscription payments: S3P and E-nkap",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or (services.settings if services else get_settings())
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        logger.error("Configuration error on %s: %s", request.url.path, exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), "CONFIGURATION_ERROR"
        )

    @app.exception_handler(ProviderRejection)
    async def provider_rejection_handler(
        request: Request, exc: ProviderRejection
    ) -> JSONResponse:
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            exc.message,
            exc.code or "PROVIDER_ERROR",
            provider=exc.to_dict(),
        )

    @app.exception_handler(TransientNetworkError)
    async def network_error_handler(
        request: Request, exc: TransientNetworkError
    ) -> JSONResponse:
        if isinstance(exc, GatewayTimeout):
            return _error(status.HTTP_504_GATEWAY_TIMEOUT, str(exc), "GATEWAY_TIMEOUT")
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc), "NETWORK")

    @app.exception_handler(SignatureInvalid)
    async def signature_error_handler(
        request: Request, exc: SignatureInvalid
    ) -> JSONResponse:
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc), "INVALID_SIGNATURE")

    @app.exception_handler(QuoteExpired)
    async def quote_expired_handler(request: Request, exc: QuoteExpired) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc), "QUOTE_EXPIRED")

    @app.exception_handler(InvalidTransitionError)
    async def transition_error_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc), "INVALID_TRANSITION")

    @app.exception_handler(TransactionNotFound)
    async def not_found_handler(
        request: Request, exc: TransactionNotFound
    ) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, str(exc), "NOT_FOUND")

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
