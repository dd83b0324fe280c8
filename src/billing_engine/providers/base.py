"""Shared result types for payment provider adapters.

Both gateways feed the same ``StatusResult`` into the reconciler; raw
provider vocabularies never leave the provider packages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from billing_engine.services.state_machine import TransactionStatus


@dataclass(frozen=True)
class StatusResult:
    """Normalized outcome of one status observation."""

    status: TransactionStatus
    raw_status: str | None = None
    message: str = ""
    error_code: str | None = None
    ptn: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status is not TransactionStatus.PENDING


@dataclass(frozen=True)
class PayItem:
    """A cashout/collection package offered by S3P for an operator."""

    pay_item_id: str
    service_id: str | None
    merchant: str | None
    amount_type: str | None
    name: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_variable_amount(self) -> bool:
        return (self.amount_type or "").upper() == "CUSTOM"


@dataclass(frozen=True)
class Quote:
    """Short-lived price lock, consumed once by the collect step."""

    quote_id: str
    pay_item_id: str
    amount_local_cur: int
    price_local_cur: int
    expires_at: datetime | None
    raw: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class CollectResult:
    """Answer to a collect request: the PTN and its first status."""

    ptn: str
    status: StatusResult
    trid: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderResult:
    """Answer to an E-nkap order creation."""

    order_id: str
    merchant_reference: str
    redirect_url: str
    raw: dict[str, Any] = field(default_factory=dict)


class StatusVerifier(Protocol):
    """Anything the reconciler can ask for the current status of a PTN."""

    provider_name: str

    async def verify(self, ptn: str, *, merchant_reference: str | None = None) -> StatusResult:
        """Return the normalized status for ``ptn``.

        ``merchant_reference`` is our own order reference when the provider
        has one; it equals ``ptn`` when no provider id was ever returned.
        """
        ...
