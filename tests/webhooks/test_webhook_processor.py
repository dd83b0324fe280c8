"""Tests for webhook processing."""

import json

import pytest

from billing_engine.errors import ConfigurationError, SignatureInvalid
from billing_engine.services.reconciler import StatusReconciler
from billing_engine.webhooks.dedupe import WebhookDeduplicator
from billing_engine.webhooks.handlers import WebhookProcessor
from billing_engine.webhooks.verifier import compute_signature

S3P_SECRET = "s3p-webhook-secret"
ENKAP_SECRET = "enkap-webhook-secret"


@pytest.fixture
def processor(session_factory) -> WebhookProcessor:
    return WebhookProcessor(
        session_factory,
        StatusReconciler(session_factory),
        s3p_secret=S3P_SECRET,
        enkap_secret=ENKAP_SECRET,
    )


def s3p_event(event: str, ptn: str = "PTN-1", **data) -> bytes:
    return json.dumps({"event": event, "data": {"ptn": ptn, **data}}).encode()


class TestS3PWebhook:
    """``POST`` notifications from S3P."""

    async def test_success_credits_and_records_delivery(self, processor, make_transaction, load_transaction, session_factory, user):
        await make_transaction("PTN-1", user_id=user.id)
        body = s3p_event("payment.succeeded", status="SUCCESS", amount=285, currency="XAF")

        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))

        assert response.status_code == 200
        assert response.body["status"] == "SUCCESS"
        assert response.body["credited"] is True
        assert (await load_transaction("PTN-1")).credited_at is not None
        async with session_factory() as session:
            assert await WebhookDeduplicator(session).is_processed("s3p", "PTN-1") is True

    async def test_redelivery_is_acknowledged_without_reprocessing(self, processor, make_transaction, load_user, user):
        await make_transaction("PTN-1", user_id=user.id)
        body = s3p_event("payment.succeeded", status="SUCCESS", amount=285)
        signature = compute_signature(body, S3P_SECRET)

        await processor.handle_s3p(body, signature)
        expiry = (await load_user(user.id)).plan_expires_at
        response = await processor.handle_s3p(body, signature)

        assert response.status_code == 200
        assert response.body["duplicate"] is True
        assert (await load_user(user.id)).plan_expires_at == expiry

    async def test_bad_signature_raises_before_parsing(self, processor, make_transaction, load_transaction):
        await make_transaction("PTN-1")

        with pytest.raises(SignatureInvalid):
            await processor.handle_s3p(b"not even json", "0" * 64)
        assert (await load_transaction("PTN-1")).status == "PENDING"

    async def test_unconfigured_secret(self, session_factory):
        processor = WebhookProcessor(
            session_factory, StatusReconciler(session_factory), s3p_secret="", enkap_secret=""
        )
        body = s3p_event("payment.succeeded", status="SUCCESS")
        with pytest.raises(ConfigurationError):
            await processor.handle_s3p(body, compute_signature(body, "anything"))

    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[]", b'{"event": "payment.succeeded"}', b'{"event": "payment.succeeded", "data": {}}'],
    )
    async def test_malformed_payload(self, processor, body):
        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))
        assert response.status_code == 400

    async def test_amount_mismatch_is_rejected(self, processor, make_transaction, load_transaction, user):
        await make_transaction("PTN-1", user_id=user.id)
        body = s3p_event("payment.succeeded", status="SUCCESS", amount=1)

        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))

        assert response.status_code == 422
        assert (await load_transaction("PTN-1")).status == "PENDING"

    async def test_currency_mismatch_is_rejected(self, processor, make_transaction):
        await make_transaction("PTN-1")
        body = s3p_event("payment.succeeded", status="SUCCESS", amount=285, currency="EUR")

        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))
        assert response.status_code == 422

    async def test_unknown_transaction(self, processor):
        body = s3p_event("payment.succeeded", ptn="PTN-404", status="SUCCESS")
        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))
        assert response.status_code == 422

    async def test_unsupported_event(self, processor, make_transaction):
        await make_transaction("PTN-1")
        body = s3p_event("payment.refunded")
        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))
        assert response.status_code == 422

    async def test_pending_event_is_ignored(self, processor, make_transaction, load_transaction):
        await make_transaction("PTN-1")
        body = s3p_event("payment.pending", status="PENDING")

        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))

        assert response.status_code == 200
        assert response.body["ignored"] is True
        assert (await load_transaction("PTN-1")).status == "PENDING"

    async def test_failure_is_recorded(self, processor, make_transaction, load_transaction):
        await make_transaction("PTN-1")
        body = s3p_event("payment.failed", status="ERRORED", errorCode=703108, amount=285)

        response = await processor.handle_s3p(body, compute_signature(body, S3P_SECRET))

        assert response.status_code == 200
        txn = await load_transaction("PTN-1")
        assert txn.status == "FAILED"
        assert txn.error_message == "Insufficient balance"


class TestEnkapWebhook:
    """``PUT`` notifications from E-nkap."""

    async def test_paid_order_is_credited(self, processor, make_transaction, load_user, user):
        await make_transaction("OTX-1", provider="enkap", user_id=user.id)
        body = json.dumps({"status": "CONFIRMED"}).encode()

        response = await processor.handle_enkap(body, compute_signature(body, ENKAP_SECRET), "OTX-1")

        assert response.status_code == 200
        assert response.body["credited"] is True
        assert (await load_user(user.id)).plan_expires_at is not None

    async def test_lookup_by_merchant_reference(self, processor, make_transaction, load_transaction, session_factory, user):
        await make_transaction(
            "OTX-1", provider="enkap", user_id=user.id, metadata={"merchantReference": "ref-1"}
        )
        body = json.dumps({"status": "CANCELED"}).encode()
        signature = compute_signature(body, ENKAP_SECRET)

        response = await processor.handle_enkap(body, signature, "ref-1")
        again = await processor.handle_enkap(body, signature, "ref-1")

        assert response.body["ptn"] == "OTX-1"
        assert (await load_transaction("OTX-1")).status == "CANCELLED"
        assert again.body["duplicate"] is True

    async def test_unknown_order_is_acknowledged(self, processor):
        body = json.dumps({"status": "CONFIRMED"}).encode()

        response = await processor.handle_enkap(body, compute_signature(body, ENKAP_SECRET), "OTX-404")

        assert response.status_code == 200
        assert response.body["ignored"] is True

    @pytest.mark.parametrize("txid,payload", [(None, {"status": "CONFIRMED"}), ("OTX-1", {"state": "x"})])
    async def test_missing_fields(self, processor, txid, payload):
        body = json.dumps(payload).encode()
        response = await processor.handle_enkap(body, compute_signature(body, ENKAP_SECRET), txid)
        assert response.status_code == 400

    async def test_signed_with_the_other_providers_secret(self, processor, make_transaction):
        await make_transaction("OTX-1", provider="enkap")
        body = json.dumps({"status": "CONFIRMED"}).encode()

        with pytest.raises(SignatureInvalid):
            await processor.handle_enkap(body, compute_signature(body, S3P_SECRET), "OTX-1")
