"""
Cafe Amore — Security helpers

JWT decode for AuthProvider tokens (shared secret) and PayMongo webhook
signature verification.
"""
import hashlib
import hmac
import logging
import time
from typing import Any

from jose import jwt

from cafe_amore.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

SIGNATURE_KEYS = ("v1", "te", "li")


class SignatureError(Exception):
    """Webhook signature header missing, malformed or not matching the body."""


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT. Raises JWTError on failure."""
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def parse_signature_header(header: str) -> dict[str, str]:
    """Split ``t=…,v1=…`` into a dict. Unknown or empty parts are dropped."""
    parts: dict[str, str] = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep and key.strip() and value.strip():
            parts[key.strip()] = value.strip()
    return parts


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    signed_payload = timestamp.encode() + b"." + raw_body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    header: str, raw_body: bytes, secret: str | None = None, now: float | None = None
) -> bool:
    """
    Verify a PayMongo-style signature header against the raw request body.

    Returns False when no secret is configured (verification skipped).
    Raises SignatureError when a secret is configured and the check fails,
    or when the signed timestamp is more than PAYMONGO_WEBHOOK_TOLERANCE_SECONDS
    away from now.
    """
    secret = settings.PAYMONGO_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        logger.warning("PAYMONGO_WEBHOOK_SECRET is not set, skipping signature verification")
        return False

    parts = parse_signature_header(header or "")
    timestamp = parts.get("t")
    received = next((parts[k] for k in SIGNATURE_KEYS if k in parts), None)
    if not timestamp or not received:
        raise SignatureError("Missing timestamp (t) or signature (v1/te/li) in signature header.")

    expected = compute_signature(secret, timestamp, raw_body)
    if not hmac.compare_digest(expected, received):
        raise SignatureError("Signature mismatch.")

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise SignatureError("Signature timestamp is not a Unix time.") from None
    tolerance = settings.PAYMONGO_WEBHOOK_TOLERANCE_SECONDS
    now = time.time() if now is None else now
    if tolerance and abs(now - signed_at) > tolerance:
        raise SignatureError(f"Signature timestamp outside the {tolerance}s tolerance.")
    return True
