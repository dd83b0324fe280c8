"""S3P status vocabulary → TransactionStatus."""

from __future__ import annotations

from typing import Any

from billing_engine.providers.base import StatusResult
from billing_engine.services.state_machine import TransactionStatus

INSUFFICIENT_BALANCE = 703108
NOT_CONFIRMED_IN_TIME = 703201
REJECTED_BY_PAYER = 703202

ERROR_MESSAGES: dict[int, str] = {
    0: "Payment successful",
    703000: "Transaction failed",
    INSUFFICIENT_BALANCE: "Insufficient balance",
    NOT_CONFIRMED_IN_TIME: "Transaction was not confirmed by the payer in time",
    REJECTED_BY_PAYER: "Transaction was rejected by the payer",
    704005: "Transaction failed",
}

# ERRORED codes that mean the payer walked away rather than a hard failure
CANCELLATION_CODES = frozenset({NOT_CONFIRMED_IN_TIME, REJECTED_BY_PAYER})

PENDING_STATUSES = frozenset({"PENDING", "INPROCESS", "UNDERINVESTIGATION", "CREATED"})


def _as_int(code: Any) -> int | None:
    if code is None or code == "":
        return None
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


def error_message(error_code: Any) -> str:
    code = _as_int(error_code)
    if code is None:
        return ""
    return ERROR_MESSAGES.get(code, f"Payment error (code {code})")


def normalize_s3p_status(
    raw_status: str | None,
    error_code: Any = None,
    *,
    ptn: str | None = None,
    details: dict[str, Any] | None = None,
) -> StatusResult:
    """Map an S3P ``status``/``errorCode`` pair onto the shared state machine.

    ``ERRORED`` splits on the error code: payer cancellations become
    CANCELLED, everything else (including unknown codes) FAILED.
    Unrecognised non-error statuses stay PENDING.
    """
    raw = (raw_status or "").strip().upper()
    code = _as_int(error_code)
    code_str = str(code) if code is not None else None
    details = details or {}

    if raw == "SUCCESS":
        status = TransactionStatus.SUCCESS
        message = ERROR_MESSAGES[0]
    elif raw == "ERRORED":
        status = (
            TransactionStatus.CANCELLED
            if code in CANCELLATION_CODES
            else TransactionStatus.FAILED
        )
        message = error_message(code) or ERROR_MESSAGES[703000]
    elif raw in ("FAILED", "CANCELLED", "EXPIRED"):
        status = TransactionStatus(raw)
        message = error_message(code) or f"Transaction {raw.lower()}"
    else:
        status = TransactionStatus.PENDING
        message = "Transaction is awaiting confirmation"

    return StatusResult(
        status=status,
        raw_status=raw or None,
        message=message,
        error_code=code_str,
        ptn=ptn,
        details=details,
    )


def not_found_as_pending(ptn: str, message: str = "") -> StatusResult:
    """A verification 404: the gateway has not indexed the PTN yet."""
    return StatusResult(
        status=TransactionStatus.PENDING,
        raw_status=None,
        message=message or "Transaction is not visible at the gateway yet",
        error_code="HTTP_404",
        ptn=ptn,
    )


class UnsupportedEvent(ValueError):
    """A webhook event we do not understand or that contradicts itself."""


def normalize_s3p_event(event: str | None, data: dict[str, Any]) -> StatusResult | None:
    """Map a webhook ``event`` and its ``data`` block to a status.

    Returns None for ``payment.pending``, which carries no new information.

    Raises:
        UnsupportedEvent: for unknown events, or ``payment.succeeded`` whose
            data does not say SUCCESS.
    """
    ptn = data.get("ptn")
    raw_status = (data.get("status") or "").strip().upper()
    error_code = data.get("errorCode")

    if event == "payment.pending":
        return None
    if event == "payment.succeeded":
        if raw_status != "SUCCESS":
            raise UnsupportedEvent(
                f"Inconsistent status {raw_status or 'missing'!r} for payment.succeeded"
            )
        return normalize_s3p_status("SUCCESS", error_code, ptn=ptn, details=data)
    if event == "payment.failed":
        result = normalize_s3p_status("ERRORED", error_code, ptn=ptn, details=data)
        return result if error_code is not None else StatusResult(
            status=TransactionStatus.FAILED,
            raw_status=raw_status or "FAILED",
            message=data.get("message") or ERROR_MESSAGES[703000],
            ptn=ptn,
            details=data,
        )
    if event == "payment.cancelled":
        return normalize_s3p_status("CANCELLED", error_code, ptn=ptn, details=data)
    raise UnsupportedEvent(f"Unsupported event {event!r}")
