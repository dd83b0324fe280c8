"""HMAC verification of provider webhook bodies."""

from __future__ import annotations

import hashlib
import hmac
import logging

from billing_engine.errors import ConfigurationError, SignatureInvalid

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Check ``signature_header`` against the body in constant time.

    A missing secret or header never verifies. The header may carry a
    ``sha256=`` prefix.
    """
    if not secret or not signature_header:
        return False
    supplied = signature_header.strip()
    if supplied.lower().startswith(SIGNATURE_PREFIX):
        supplied = supplied[len(SIGNATURE_PREFIX):]
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(supplied.lower().encode("ascii", "replace"), expected.encode("ascii"))


def require_valid_signature(
    raw_body: bytes, signature_header: str | None, secret: str | None, *, provider: str
) -> None:
    """Raise unless the webhook is authentic.

    Raises:
        ConfigurationError: the shared secret is not configured.
        SignatureInvalid: the header is missing or does not match.
    """
    if not secret:
        logger.error("%s webhook rejected: webhook secret is not configured", provider)
        raise ConfigurationError(f"{provider} webhook secret is not configured")
    if not signature_header:
        logger.warning("%s webhook rejected: missing signature header", provider)
        raise SignatureInvalid("Missing signature")
    if not verify_signature(raw_body, signature_header, secret):
        logger.warning("%s webhook rejected: signature mismatch", provider)
        raise SignatureInvalid("Invalid signature")
