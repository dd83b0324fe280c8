"""Provider webhook endpoints.

The raw request body is handed to the processor untouched; signatures are
computed over the exact bytes the provider sent.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Query, Request, status
from fastapi.responses import JSONResponse

from billing_engine.api.dependencies import Services
from billing_engine.errors import ConfigurationError, SignatureInvalid
from billing_engine.webhooks.handlers import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _to_json(response: WebhookResponse) -> JSONResponse:
    return JSONResponse(status_code=response.status_code, content=response.body)


def _unauthorized(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"success": False, "error": str(exc)},
    )


def _failed() -> JSONResponse:
    # 5xx asks the provider to redeliver
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Webhook processing failed"},
    )


@router.post("/s3p")
async def s3p_webhook(
    request: Request,
    services: Services,
    x_signature: Annotated[str | None, Header()] = None,
    x_s3p_signature: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    """Receive an S3P payment notification."""
    raw_body = await request.body()
    try:
        result = await services.webhooks.handle_s3p(raw_body, x_signature or x_s3p_signature)
    except (SignatureInvalid, ConfigurationError) as exc:
        logger.warning("S3P webhook rejected: %s", exc)
        return _unauthorized(exc)
    except Exception:
        logger.exception("S3P webhook processing failed")
        return _failed()
    return _to_json(result)


@router.put("/enkap")
async def enkap_webhook(
    request: Request,
    services: Services,
    txid: Annotated[str | None, Query()] = None,
    x_signature: Annotated[str | None, Header()] = None,
    x_enkap_signature: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    """Receive an E-nkap order status notification."""
    raw_body = await request.body()
    try:
        result = await services.webhooks.handle_enkap(
            raw_body, x_signature or x_enkap_signature, txid
        )
    except (SignatureInvalid, ConfigurationError) as exc:
        logger.warning("E-nkap webhook rejected: %s", exc)
        return _unauthorized(exc)
    except Exception:
        logger.exception("E-nkap webhook processing failed")
        return _failed()
    return _to_json(result)
