"""HMAC-SHA256 verification for the two Shopify signing protocols.

Security contract:
- Both checks compare with ``hmac.compare_digest`` (constant time).
- Any parse problem, missing secret or missing signature fails closed.
- Secrets and signatures are never logged.

OAuth callback: the ``hmac`` query parameter is the hex HMAC of the remaining
``key=value`` pairs, sorted and joined with ``&``, exactly as Shopify encoded
them. Verification therefore runs over the raw query string; re-decoding and
re-encoding the parameters can change bytes and break valid requests.

Webhook delivery: ``X-Shopify-Hmac-Sha256`` is the base64 HMAC of the exact
request body bytes.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Iterable, Mapping, Optional, Union

from app.utils.logger import logger

_SIGNATURE_PARAMS = frozenset({"hmac", "signature"})

ParamValue = Union[str, Iterable[str]]


def build_callback_message(raw_query: str) -> str:
    """Message Shopify signs for an OAuth callback, from the raw query text."""

    pairs = [
        pair
        for pair in raw_query.split("&")
        if pair and pair.split("=", 1)[0] not in _SIGNATURE_PARAMS
    ]
    return "&".join(sorted(pairs))


def _escape_component(value: str) -> str:
    return value.replace("%", "%25").replace("&", "%26").replace("=", "%3D")


def build_callback_message_from_params(params: Mapping[str, ParamValue]) -> str:
    """Best-effort rebuild of the signed message from decoded parameters.

    Only ``%``, ``&`` and ``=`` are re-escaped, so values that Shopify
    percent-encoded differently (arrays, reserved punctuation) will not
    reproduce the original bytes. Used only when the raw query is missing.
    """

    parts = []
    for key in sorted(k for k in params.keys() if k not in _SIGNATURE_PARAMS):
        value = params[key]
        if isinstance(value, str):
            value_str = value
        else:
            value_str = ",".join(str(v) for v in value)
        parts.append(f"{_escape_component(key)}={_escape_component(value_str)}")
    return "&".join(parts)


def compute_callback_hmac(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_oauth_callback(
    claimed_hmac: Optional[str],
    secret: Optional[str],
    *,
    raw_query: Optional[str] = None,
    params: Optional[Mapping[str, ParamValue]] = None,
) -> bool:
    """Verify the ``hmac`` parameter of an OAuth install/callback request."""

    if not secret:
        logger.warning("[shopify-signature] API secret not configured; rejecting callback")
        return False
    if not claimed_hmac:
        return False

    try:
        if raw_query:
            message = build_callback_message(raw_query)
        elif params is not None:
            logger.warning(
                "[shopify-signature] raw query unavailable; rebuilding callback message from decoded parameters"
            )
            message = build_callback_message_from_params(params)
        else:
            return False

        computed = compute_callback_hmac(message, secret)
        return hmac.compare_digest(computed.encode("ascii"), claimed_hmac.strip().lower().encode("utf-8"))
    except (UnicodeError, ValueError, TypeError) as exc:
        logger.warning("[shopify-signature] callback verification error: %s", type(exc).__name__)
        return False


def compute_webhook_hmac(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook(body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify ``X-Shopify-Hmac-Sha256`` against the raw, unparsed body."""

    if not secret:
        logger.warning("[shopify-signature] webhook secret not configured; rejecting delivery")
        return False
    if not signature_header or body is None:
        return False

    try:
        claimed = base64.b64decode(signature_header.strip(), validate=True)
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
        if len(claimed) != len(expected):
            return False
        return hmac.compare_digest(expected, claimed)
    except (binascii.Error, ValueError, TypeError) as exc:
        logger.warning("[shopify-signature] webhook verification error: %s", type(exc).__name__)
        return False
