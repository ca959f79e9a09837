# Overview: Service-layer operations for signed claim tokens; pure encode/verify helpers.

"""
Signed claim tokens

WIRE FORMAT:
    base64url(payload_json) + "." + base64url(HMAC-SHA256(secret, base64url(payload_json)))

- base64url segments are unpadded
- the HMAC is computed over the payload *segment* text, not the decoded JSON
- payload minimally carries {lineItemId, orderId, editionNumber, exp}
- exp is a Unix timestamp in whole seconds; a token is expired once now > exp

SECRET RESOLUTION:
The first non-empty candidate in SECRET_CANDIDATES wins. A missing secret is a
configuration error raised on first use, never a per-request failure.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Mapping

from flask import current_app

from edition_ledger.time_utils import epoch_seconds


SECRET_CANDIDATES = ("CLAIM_TOKEN_SECRET", "NFC_TOKEN_SECRET", "CERTIFICATE_TOKEN_SECRET")

# app.extensions key for the resolved secret
_SECRET_CACHE_KEY = "claim_token_secret"

REASON_MALFORMED = "malformed"
REASON_SIGNATURE = "signature"
REASON_EXPIRED = "expired"


class TokenConfigurationError(RuntimeError):
    """No signing secret configured. Fatal; not retried."""


class InvalidTokenError(ValueError):
    """Token failed validation. `reason` is malformed, signature or expired."""

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"Invalid token ({reason})")


class ExpiredTokenError(InvalidTokenError):
    def __init__(self, exp: int):
        self.exp = exp
        super().__init__(REASON_EXPIRED, "Token has expired")


def resolve_secret(config: Mapping[str, Any]) -> bytes:
    for key in SECRET_CANDIDATES:
        value = config.get(key)
        if value:
            return value.encode("utf-8") if isinstance(value, str) else bytes(value)
    raise TokenConfigurationError(
        f"No claim token secret configured (set one of: {', '.join(SECRET_CANDIDATES)})"
    )


def signing_secret() -> bytes:
    """Secret for the current app, resolved once and cached on app.extensions."""
    app = current_app._get_current_object()
    secret = app.extensions.get(_SECRET_CACHE_KEY)
    if secret is None:
        secret = resolve_secret(app.config)
        app.extensions[_SECRET_CACHE_KEY] = secret
    return secret


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(segment: str, secret: bytes) -> str:
    digest = hmac.new(secret, segment.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def encode_token(payload: Mapping[str, Any], *, secret: bytes) -> str:
    body = json.dumps(dict(payload), separators=(",", ":"), sort_keys=True)
    segment = _b64url_encode(body.encode("utf-8"))
    return f"{segment}.{_sign(segment, secret)}"


def decode_token(token: str, *, secret: bytes, now: int | None = None) -> dict:
    """
    Verify signature, then expiry. Returns the payload dict.

    Raises:
        InvalidTokenError: malformed segments or signature mismatch
        ExpiredTokenError: signature valid but now > exp
    """
    if not isinstance(token, str) or "." not in token:
        raise InvalidTokenError(REASON_MALFORMED)
    # The signature segment never contains ".", so damage to the payload
    # segment (even one that introduces a ".") fails the HMAC check below.
    segment, signature = token.rsplit(".", 1)
    if not segment or not signature:
        raise InvalidTokenError(REASON_MALFORMED)

    expected = _sign(segment, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        raise InvalidTokenError(REASON_SIGNATURE)

    try:
        payload = json.loads(_b64url_decode(segment).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise InvalidTokenError(REASON_MALFORMED)
    if not isinstance(payload, dict):
        raise InvalidTokenError(REASON_MALFORMED)

    exp = payload.get("exp")
    if exp is not None:
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError(REASON_MALFORMED)
        current = epoch_seconds() if now is None else now
        if current > exp:
            raise ExpiredTokenError(int(exp))

    return payload


def issue_token(payload: Mapping[str, Any], ttl_seconds: int | None) -> str:
    """Sign `payload` with the app secret, adding exp = now + ttl_seconds when given."""
    body = dict(payload)
    if ttl_seconds is not None:
        body["exp"] = epoch_seconds() + int(ttl_seconds)
    return encode_token(body, secret=signing_secret())


def validate_token(token: str) -> dict:
    return decode_token(token, secret=signing_secret())


def build_claim_payload(*, line_item_id: str, order_id: str, edition_number: int | None) -> dict:
    return {
        "lineItemId": line_item_id,
        "orderId": order_id,
        "editionNumber": edition_number,
    }
