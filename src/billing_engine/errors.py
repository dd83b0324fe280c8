"""Error taxonomy for the billing engine.

Gateway clients convert transport failures into these types at their
boundary; nothing above the clients sees a raw ``httpx`` exception.
"""

from __future__ import annotations

from typing import Any


class BillingEngineError(Exception):
    """Base class for all billing engine errors."""


class ConfigurationError(BillingEngineError):
    """Missing or invalid credentials/secrets. Fatal; never retried."""


class TransientNetworkError(BillingEngineError):
    """Connection failure talking to a provider. Retried by polling."""

    def __init__(self, message: str, *, endpoint: str | None = None):
        self.endpoint = endpoint
        super().__init__(message)


class GatewayTimeout(TransientNetworkError):
    """The provider did not answer within the hard request timeout."""

    def __init__(self, endpoint: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request to {endpoint} timed out after {timeout_seconds:g}s",
            endpoint=endpoint,
        )


class ProviderRejection(BillingEngineError):
    """Structured non-2xx answer from a provider."""

    def __init__(
        self,
        status: int,
        message: str,
        code: str | None = None,
        details: Any = None,
    ):
        self.status = status
        self.message = message
        self.code = code
        self.details = details
        super().__init__(f"Provider error {status}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class SignatureInvalid(BillingEngineError):
    """Webhook authentication failed. Always answered with 401."""


class VerificationTimedOut(BillingEngineError):
    """Local polling bound exceeded while the transaction was still pending.

    This is not a payment failure: the provider may still settle the
    transaction and notify us through the webhook.
    """

    def __init__(self, ptn: str, attempts: int):
        self.ptn = ptn
        self.attempts = attempts
        super().__init__(f"Transaction {ptn} still pending after {attempts} attempts")


class QuoteExpired(BillingEngineError):
    """A quote was used after its validity window closed."""

    def __init__(self, quote_id: str):
        self.quote_id = quote_id
        super().__init__(f"Quote {quote_id} has expired; request a new quote")


class InvalidTransitionError(BillingEngineError):
    """Raised when an invalid status transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class TransactionNotFound(BillingEngineError):
    """No transaction is stored under the given reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Transaction {reference} not found")


class CreditError(BillingEngineError):
    """The subscription credit could not be applied."""
