"""Inbound provider webhooks."""

from billing_engine.webhooks.verifier import require_valid_signature, verify_signature

__all__ = ["require_valid_signature", "verify_signature"]
