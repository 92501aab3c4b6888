"""HMAC-SHA256 signature checks for inbound webhooks.

The sender signs the raw request body, or ``"<timestamp>." + body`` when it
also sends a timestamp header. Signatures are lowercase hex digests, with
an optional ``sha256=`` prefix.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_signature(secret: str, payload: bytes, timestamp: str | None = None) -> str:
    message = f"{timestamp}.".encode("utf-8") + payload if timestamp else payload
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: str | None, max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """Reject stale or malformed timestamps; an absent timestamp is accepted."""

    if not timestamp:
        return True
    try:
        age = abs(int(time.time()) - int(timestamp))
    except (TypeError, ValueError):
        logger.warning("Invalid webhook timestamp format: %s", timestamp)
        return False
    if age > max_age:
        logger.warning("Webhook timestamp too old: %ss (max: %ss)", age, max_age)
        return False
    return True


async def verify_signed_request(
    request: Request, secret: str | None, *, max_age: int = MAX_WEBHOOK_AGE_SECONDS
) -> bytes:
    """Return the raw body of *request* once its signature checks out."""

    if not secret:
        logger.error("Webhook received but no signing secret is configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook is not configured")

    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "").strip()
    timestamp = request.headers.get(TIMESTAMP_HEADER)
    if not signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")
    if not verify_timestamp(timestamp, max_age):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook timestamp expired")

    received = signature.removeprefix("sha256=")
    expected = compute_signature(secret, raw_body, timestamp)
    if not constant_time_compare(expected, received):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    return raw_body


__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "compute_signature",
    "constant_time_compare",
    "verify_signed_request",
    "verify_timestamp",
]
