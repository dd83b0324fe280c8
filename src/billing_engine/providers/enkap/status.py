"""E-nkap status vocabulary → TransactionStatus."""

from __future__ import annotations

from typing import Any

from billing_engine.providers.base import StatusResult
from billing_engine.services.state_machine import TransactionStatus

STATUS_MAP: dict[str, TransactionStatus] = {
    "PAID": TransactionStatus.SUCCESS,
    "SUCCESS": TransactionStatus.SUCCESS,
    "COMPLETED": TransactionStatus.SUCCESS,
    "CONFIRMED": TransactionStatus.SUCCESS,
    "CANCELLED": TransactionStatus.CANCELLED,
    "CANCELED": TransactionStatus.CANCELLED,
    "CREATED": TransactionStatus.PENDING,
    "PENDING": TransactionStatus.PENDING,
    "IN_PROGRESS": TransactionStatus.PENDING,
    "INITIALISED": TransactionStatus.PENDING,
    "FAILED": TransactionStatus.FAILED,
    "ERROR": TransactionStatus.FAILED,
    "REJECTED": TransactionStatus.FAILED,
    "EXPIRED": TransactionStatus.EXPIRED,
}

MESSAGES: dict[TransactionStatus, str] = {
    TransactionStatus.SUCCESS: "Payment confirmed",
    TransactionStatus.PENDING: "Payment is awaiting confirmation",
    TransactionStatus.FAILED: "Payment failed",
    TransactionStatus.CANCELLED: "Payment was cancelled",
    TransactionStatus.EXPIRED: "Payment order has expired",
}


def normalize_enkap_status(
    raw_status: str | None,
    *,
    ptn: str | None = None,
    details: dict[str, Any] | None = None,
) -> StatusResult:
    """Map an E-nkap order status onto the shared state machine.

    Unknown statuses stay PENDING. A response without any status is a
    malformed answer, not a payment outcome: it stays PENDING and carries
    ``STRUCTURE_ERROR`` so the transaction is left for the next check.
    """
    details = details or {}
    if not raw_status:
        return StatusResult(
            status=TransactionStatus.PENDING,
            message="Payment service returned an invalid response",
            error_code="STRUCTURE_ERROR",
            ptn=ptn,
            details=details,
        )

    raw = str(raw_status).strip().upper()
    status = STATUS_MAP.get(raw, TransactionStatus.PENDING)
    error = details.get("error") if isinstance(details.get("error"), dict) else {}
    return StatusResult(
        status=status,
        raw_status=raw,
        message=error.get("message") or MESSAGES[status],
        error_code=error.get("code"),
        ptn=ptn,
        details=details,
    )


def pending_signal(ptn: str, message: str, error_code: str | None = None) -> StatusResult:
    return StatusResult(
        status=TransactionStatus.PENDING,
        message=message,
        error_code=error_code,
        ptn=ptn,
    )
