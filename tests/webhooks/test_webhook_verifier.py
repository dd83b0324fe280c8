"""Tests for webhook signature verification."""

import pytest

from billing_engine.errors import ConfigurationError, SignatureInvalid
from billing_engine.webhooks.verifier import (
    compute_signature,
    require_valid_signature,
    verify_signature,
)

BODY = b'{"event":"payment.succeeded"}'
SECRET = "whsec"
EXPECTED = "7176b7e8fda594ba42b6a4f807076da29981eedfabc40a628fe1223f11f4f680"


class TestVerifySignature:
    """HMAC-SHA256 over the raw body."""

    def test_known_vector(self):
        assert compute_signature(BODY, SECRET) == EXPECTED

    @pytest.mark.parametrize("header", [EXPECTED, f"sha256={EXPECTED}", EXPECTED.upper(), f" {EXPECTED} "])
    def test_accepted_forms(self, header):
        assert verify_signature(BODY, header, SECRET) is True

    def test_any_body_change_fails(self):
        assert verify_signature(BODY + b" ", EXPECTED, SECRET) is False

    def test_wrong_secret_fails(self):
        assert verify_signature(BODY, EXPECTED, "other") is False

    @pytest.mark.parametrize("header,secret", [(None, SECRET), ("", SECRET), (EXPECTED, None), (EXPECTED, "")])
    def test_missing_inputs_never_verify(self, header, secret):
        assert verify_signature(BODY, header, secret) is False

    def test_non_ascii_header_fails_cleanly(self):
        assert verify_signature(BODY, "é" * 64, SECRET) is False


class TestRequireValidSignature:
    """Raising variant used by the handlers."""

    def test_valid(self):
        require_valid_signature(BODY, EXPECTED, SECRET, provider="s3p")

    def test_unconfigured_secret(self):
        with pytest.raises(ConfigurationError):
            require_valid_signature(BODY, EXPECTED, "", provider="s3p")

    def test_missing_header(self):
        with pytest.raises(SignatureInvalid, match="Missing"):
            require_valid_signature(BODY, None, SECRET, provider="s3p")

    def test_mismatch(self):
        with pytest.raises(SignatureInvalid, match="Invalid"):
            require_valid_signature(BODY, "0" * 64, SECRET, provider="enkap")
