"""S3P request signing (``s3pAuth`` scheme, HMAC-SHA1).

Signing steps:
1. Merge the auth parameters with the body parameters (POST) or the query
   parameters (GET), never both.
2. Drop parameters whose value is empty after trimming.
3. Sort keys and join ``key=value`` pairs with ``&`` (values unencoded).
4. Percent-encode the base URL (no query string) and the parameter string.
5. Canonical string is ``METHOD&encoded_url&encoded_params``.
6. Signature is ``base64(HMAC-SHA1(secret, canonical))``.

Given a fixed nonce and timestamp the header is byte-for-byte reproducible.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import quote

SIGNATURE_METHOD = "HMAC-SHA1"
AUTH_SCHEME = "s3pAuth"


def generate_nonce() -> str:
    """Random part plus millisecond clock, base16."""
    return f"{secrets.token_hex(8)}{int(time.time() * 1000):x}"


def generate_timestamp() -> str:
    return str(int(time.time()))


def percent_encode(value: str) -> str:
    """RFC 3986 encoding; only ``A-Z a-z 0-9 - _ .`` stay literal.

    ``! ' ( ) *`` and ``~`` are always escaped, as the gateway expects.
    """
    return quote(value, safe="").replace("~", "%7E")


def filter_params(params: Mapping[str, Any]) -> dict[str, str]:
    """Stringify and trim values, dropping ``None`` and blanks."""
    filtered: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        text = str(value).strip()
        if text:
            filtered[key] = text
    return filtered


def build_parameter_string(params: Mapping[str, str]) -> str:
    return "&".join(f"{key}={params[key]}" for key in sorted(params))


def build_canonical_string(method: str, url: str, params: Mapping[str, str]) -> str:
    base_url = url.split("?", 1)[0]
    return "&".join(
        [
            method.upper(),
            percent_encode(base_url),
            percent_encode(build_parameter_string(params)),
        ]
    )


def compute_signature(canonical: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        canonical.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def format_authorization_header(
    *, nonce: str, signature: str, timestamp: str, token: str
) -> str:
    return AUTH_SCHEME + "," + ",".join(
        [
            f's3pAuth_nonce="{nonce}"',
            f's3pAuth_signature="{signature}"',
            f's3pAuth_signature_method="{SIGNATURE_METHOD}"',
            f's3pAuth_timestamp="{timestamp}"',
            f's3pAuth_token="{token}"',
        ]
    )


def sign(
    method: str,
    url: str,
    params: Mapping[str, Any] | None,
    secret: str,
    *,
    token: str,
    nonce: str | None = None,
    timestamp: str | None = None,
) -> str:
    """Build the ``Authorization`` header for one S3P request.

    Args:
        method: HTTP method; GET signs query params, POST signs body params.
        url: Full endpoint URL. Any query string is ignored for signing.
        params: The request's own parameters (query for GET, body for POST).
        secret: S3P access secret (HMAC key).
        token: S3P access token.
        nonce: Override for tests; random when omitted.
        timestamp: Unix seconds override for tests; now when omitted.

    Returns:
        The complete ``s3pAuth,...`` header value.
    """
    nonce = nonce or generate_nonce()
    timestamp = timestamp or generate_timestamp()

    auth_params = {
        "s3pAuth_nonce": nonce,
        "s3pAuth_signature_method": SIGNATURE_METHOD,
        "s3pAuth_timestamp": timestamp,
        "s3pAuth_token": token,
    }
    merged = filter_params({**auth_params, **(params or {})})
    canonical = build_canonical_string(method, url, merged)
    signature = compute_signature(canonical, secret)

    return format_authorization_header(
        nonce=nonce, signature=signature, timestamp=timestamp, token=token
    )


class S3PSigner:
    """Signs requests with one set of S3P credentials.

    The nonce and clock sources are injectable so tests can pin them.
    """

    def __init__(
        self,
        access_token: str,
        access_secret: str,
        *,
        nonce_factory: Callable[[], str] = generate_nonce,
        clock: Callable[[], str] = generate_timestamp,
    ):
        self.access_token = access_token
        self._access_secret = access_secret
        self._nonce_factory = nonce_factory
        self._clock = clock

    def authorization_header(
        self, method: str, url: str, params: Mapping[str, Any] | None = None
    ) -> str:
        return sign(
            method,
            url,
            params,
            self._access_secret,
            token=self.access_token,
            nonce=self._nonce_factory(),
            timestamp=self._clock(),
        )
