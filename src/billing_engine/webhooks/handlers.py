"""Processing of authenticated provider notifications.

Both handlers verify the signature over the raw body before parsing it, and
both funnel the normalized status into ``StatusReconciler.apply_status``.
The returned ``WebhookResponse`` carries the HTTP status the provider should
see: 2xx stops redelivery, 5xx asks for it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.models import Transaction
from billing_engine.providers.base import StatusResult
from billing_engine.providers.enkap.status import normalize_enkap_status
from billing_engine.providers.s3p.status import UnsupportedEvent, normalize_s3p_event
from billing_engine.services.reconciler import ReconcileOutcome, StatusReconciler
from billing_engine.services.transaction_store import TransactionStore
from billing_engine.webhooks.dedupe import WebhookDeduplicator
from billing_engine.webhooks.verifier import require_valid_signature

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _reject(status_code: int, error: str) -> WebhookResponse:
    return WebhookResponse(status_code, {"success": False, "error": error})


def _parse_json(raw_body: bytes) -> dict[str, Any] | None:
    try:
        payload = json.loads(raw_body)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _applied(outcome: ReconcileOutcome) -> WebhookResponse:
    return WebhookResponse(
        200,
        {
            "success": True,
            "ptn": outcome.ptn,
            "status": outcome.status.value,
            "changed": outcome.changed,
            "credited": outcome.credited,
        },
    )


class WebhookProcessor:
    """Authenticates, deduplicates and applies provider webhooks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: StatusReconciler,
        *,
        s3p_secret: str | None,
        enkap_secret: str | None,
        dedupe_capacity: int = 1000,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.s3p_secret = s3p_secret
        self.enkap_secret = enkap_secret
        self.dedupe_capacity = dedupe_capacity

    async def _already_processed(self, provider: str, ptn: str) -> bool:
        async with self.session_factory() as session:
            return await WebhookDeduplicator(session, self.dedupe_capacity).is_processed(
                provider, ptn
            )

    async def _find(self, ptn: str) -> Transaction | None:
        async with self.session_factory() as session:
            store = TransactionStore(session)
            return await store.get_by_ptn(ptn) or await store.get_by_merchant_reference(ptn)

    async def _apply(
        self, provider: str, txn: Transaction, result: StatusResult
    ) -> ReconcileOutcome:
        outcome = await self.reconciler.apply_status(
            txn.ptn, result, source=f"webhook:{provider}"
        )
        if outcome.is_terminal and (outcome.status.value != "SUCCESS" or outcome.credited):
            async with self.session_factory() as session:
                await WebhookDeduplicator(session, self.dedupe_capacity).mark_processed(
                    provider, txn.ptn, outcome.status.value
                )
                await session.commit()
        return outcome

    async def handle_s3p(self, raw_body: bytes, signature: str | None) -> WebhookResponse:
        """``POST`` notification ``{event, data: {ptn, amount, currency, status, ...}}``.

        Raises:
            ConfigurationError: webhook secret not configured.
            SignatureInvalid: missing or wrong signature.
        """
        require_valid_signature(raw_body, signature, self.s3p_secret, provider="s3p")

        payload = _parse_json(raw_body)
        data = payload.get("data") if payload else None
        if not payload or not payload.get("event") or not isinstance(data, dict) or not data.get("ptn"):
            return _reject(400, "Malformed payload")

        ptn = str(data["ptn"])
        if await self._already_processed("s3p", ptn):
            logger.info("Duplicate S3P webhook for %s ignored", ptn)
            return WebhookResponse(200, {"success": True, "ptn": ptn, "duplicate": True})

        try:
            result = normalize_s3p_event(payload["event"], data)
        except UnsupportedEvent as exc:
            logger.warning("S3P webhook for %s rejected: %s", ptn, exc)
            return _reject(422, str(exc))
        if result is None:
            return WebhookResponse(200, {"success": True, "ptn": ptn, "ignored": True})

        txn = await self._find(ptn)
        if txn is None:
            logger.warning("S3P webhook for unknown transaction %s", ptn)
            return _reject(422, "Unknown transaction")

        try:
            amount = int(data["amount"]) if data.get("amount") is not None else None
        except (TypeError, ValueError):
            return _reject(400, "Malformed amount")
        if amount is not None and amount != txn.amount:
            logger.warning(
                "S3P webhook for %s rejected: amount %s does not match %s", ptn, amount, txn.amount
            )
            return _reject(422, "Amount mismatch")
        currency = data.get("currency")
        if currency and str(currency).upper() != txn.currency:
            return _reject(422, "Currency mismatch")

        outcome = await self._apply("s3p", txn, result)
        return _applied(outcome)

    async def handle_enkap(
        self, raw_body: bytes, signature: str | None, txid: str | None
    ) -> WebhookResponse:
        """``PUT`` notification with ``?txid=`` and a JSON ``{status, ...}`` body.

        Raises:
            ConfigurationError: webhook secret not configured.
            SignatureInvalid: missing or wrong signature.
        """
        require_valid_signature(raw_body, signature, self.enkap_secret, provider="enkap")

        payload = _parse_json(raw_body)
        if not txid or not payload or not payload.get("status"):
            return _reject(400, "Missing transaction id or status")

        txn = await self._find(txid)
        if txn is None:
            # 200 so the provider stops redelivering
            logger.warning("E-nkap webhook for unknown transaction %s ignored", txid)
            return WebhookResponse(
                200, {"success": True, "ptn": txid, "ignored": True, "message": "Transaction not found"}
            )

        # txid may be the merchant reference; dedupe rows are keyed by ptn
        if await self._already_processed("enkap", txn.ptn):
            logger.info("Duplicate E-nkap webhook for %s ignored", txn.ptn)
            return WebhookResponse(200, {"success": True, "ptn": txn.ptn, "duplicate": True})

        result = normalize_enkap_status(payload["status"], ptn=txn.ptn, details=payload)
        outcome = await self._apply("enkap", txn, result)
        return _applied(outcome)
