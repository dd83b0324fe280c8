"""S3P quote/collect protocol.

Three ordered calls, each a separate network round trip:

1. ``get_packages`` - list pay items for an operator, pick one.
2. ``create_quote`` - lock a price; the quote expires quickly.
3. ``collect`` - debit the payer's wallet; returns the PTN.

A failure at any step aborts the flow. Nothing is retried across steps: an
expired quote raises ``QuoteExpired`` and the caller starts again at step 1.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from billing_engine.errors import ProviderRejection, QuoteExpired
from billing_engine.providers.base import CollectResult, PayItem, Quote, StatusResult
from billing_engine.providers.s3p.client import S3PClient
from billing_engine.providers.s3p.status import normalize_s3p_status, not_found_as_pending

logger = logging.getLogger(__name__)

# Operator codes as they appear in the ``merchant`` field of S3P pay items
OPERATORS: dict[str, str] = {
    "mtn-mobile-money": "MTNMOMO",
    "orange-money": "CMORANGEOM",
    "express-union": "EUMM",
}

# Quote/collect errors that mean the quote is no longer usable
QUOTE_EXPIRED_CODES = frozenset({"40602", "40604"})


@dataclass(frozen=True)
class Customer:
    """Payer identity forwarded to the gateway."""

    id: str
    name: str
    email: str
    phone: str


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(round(float(value)))


def parse_pay_item(data: dict[str, Any]) -> PayItem:
    return PayItem(
        pay_item_id=str(data.get("payItemId", "")),
        service_id=str(data["serviceid"]) if data.get("serviceid") is not None else None,
        merchant=data.get("merchant"),
        amount_type=data.get("amountType"),
        name=data.get("name") or data.get("payItemDescr") or "",
        raw=data,
    )


def parse_quote(data: dict[str, Any], pay_item_id: str) -> Quote:
    quote_id = data.get("quoteId")
    if not quote_id:
        raise ProviderRejection(
            status=502,
            message="Quote response did not include a quoteId",
            code="INVALID_RESPONSE",
            details=data,
        )
    return Quote(
        quote_id=str(quote_id),
        pay_item_id=str(data.get("payItemId") or pay_item_id),
        amount_local_cur=_as_int(data.get("amountLocalCur")),
        price_local_cur=_as_int(data.get("priceLocalCur")),
        expires_at=_parse_datetime(data.get("expiresAt")),
        raw=data,
    )


def pick_status_entry(
    result: Any, *, ptn: str | None = None, trid: str | None = None
) -> dict[str, Any] | None:
    """Choose the verifytx entry matching our reference, else the first one."""
    if isinstance(result, dict):
        return result
    if not isinstance(result, list) or not result:
        return None
    for entry in result:
        if ptn and entry.get("ptn") == ptn:
            return entry
        if trid and entry.get("trid") == trid:
            return entry
    return result[0]


class S3PGateway:
    """Payment operations on top of the signed S3P client."""

    provider_name = "s3p"

    def __init__(
        self,
        client: S3PClient,
        *,
        callback_url: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.client = client
        self.callback_url = callback_url
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Step 1 ----------------------------------------------------------------

    async def get_packages(self, service_id: int | str | None = None) -> list[PayItem]:
        raw = await self.client.cashout_packages(service_id)
        return [parse_pay_item(item) for item in raw if isinstance(item, dict)]

    @staticmethod
    def select_package(packages: list[PayItem], operator: str | None = None) -> PayItem:
        """Pick the first variable-amount package for ``operator``.

        ``operator`` may be an alias (``orange-money``) or a raw merchant
        code (``CMORANGEOM``). Falls back to the first package for the
        operator, then to the first package overall.
        """
        if not packages:
            raise ProviderRejection(
                status=404,
                message="No payment packages available for this operator",
                code="NO_PACKAGES",
            )
        merchant = OPERATORS.get(operator, operator) if operator else None
        candidates = [p for p in packages if merchant is None or p.merchant == merchant]
        if not candidates:
            raise ProviderRejection(
                status=404,
                message=f"No payment packages available for {operator}",
                code="NO_PACKAGES",
            )
        for package in candidates:
            if package.is_variable_amount:
                return package
        return candidates[0]

    # Step 2 ----------------------------------------------------------------

    async def create_quote(
        self,
        pay_item_id: str,
        amount: int,
        currency: str,
        customer: Customer,
        metadata: dict[str, Any] | None = None,
    ) -> Quote:
        body = {
            "payItemId": pay_item_id,
            "amount": amount,
            "currency": currency,
            "payItemDescr": f"Payment of {amount} {currency}",
            "customerName": customer.name,
            "customerEmail": customer.email,
            "customerPhone": customer.phone,
            "metadata": json.dumps(metadata or {}),
        }
        data = await self.client.quote_std(body)
        quote = parse_quote(data, pay_item_id)
        logger.info(
            "S3P quote %s created for pay item %s (expires %s)",
            quote.quote_id,
            pay_item_id,
            quote.expires_at,
        )
        return quote

    # Step 3 ----------------------------------------------------------------

    async def collect(
        self,
        quote: Quote,
        service_number: str,
        customer: Customer,
        *,
        transaction_id: str | None = None,
        cdata: dict[str, Any] | None = None,
    ) -> CollectResult:
        """Initiate the wallet debit for a quote.

        ``transaction_id`` is sent as ``trid``; a fresh one is generated per
        attempt when omitted so the gateway never sees a reused id.
        """
        if quote.is_expired(self._clock()):
            raise QuoteExpired(quote.quote_id)

        trid = transaction_id or uuid4().hex
        body = {
            "quoteId": quote.quote_id,
            "customerPhonenumber": customer.phone,
            "customerEmailaddress": customer.email,
            "customerName": customer.name,
            "customerNumber": customer.id,
            "serviceNumber": service_number,
            "trid": trid,
            "tag": "subscription_payment",
            "callbackUrl": self.callback_url,
            "cdata": json.dumps({"customer_id": customer.id, **(cdata or {})}),
        }
        try:
            data = await self.client.collect_std(body)
        except ProviderRejection as exc:
            if exc.code in QUOTE_EXPIRED_CODES:
                raise QuoteExpired(quote.quote_id) from exc
            raise

        ptn = data.get("ptn")
        if not ptn:
            raise ProviderRejection(
                status=502,
                message="Collect response did not include a ptn",
                code="INVALID_RESPONSE",
                details=data,
            )
        status = normalize_s3p_status(
            data.get("status"), data.get("errorCode"), ptn=ptn, details=data
        )
        logger.info("S3P collect accepted: ptn=%s trid=%s status=%s", ptn, trid, status.status.value)
        return CollectResult(ptn=str(ptn), status=status, trid=trid, raw=data)

    # Verification ----------------------------------------------------------

    async def verify(self, ptn: str, *, merchant_reference: str | None = None) -> StatusResult:
        """Fetch and normalize the status of ``ptn``."""
        return await self.verify_transaction(ptn=ptn)

    async def verify_transaction(
        self, ptn: str | None = None, trid: str | None = None
    ) -> StatusResult:
        """Look a transaction up by PTN or by our own ``trid``.

        A 404 means the gateway has not indexed the transaction yet and is
        reported as PENDING, not as a failure. So is an empty result list.
        """
        if not ptn and not trid:
            raise ValueError("verify_transaction requires ptn or trid")
        reference = ptn or trid
        try:
            result = await self.client.verify_tx(ptn=ptn, trid=trid)
        except ProviderRejection as exc:
            if exc.status == 404:
                return not_found_as_pending(reference, exc.message)
            raise

        entry = pick_status_entry(result, ptn=ptn, trid=trid)
        if entry is None:
            return not_found_as_pending(reference, "Transaction is awaiting processing")
        return normalize_s3p_status(
            entry.get("status"),
            entry.get("errorCode"),
            ptn=entry.get("ptn") or ptn,
            details=entry,
        )
