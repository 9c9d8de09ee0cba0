"""Webhook payload signing.

Receivers verify authenticity by recomputing the signature over the exact
request body. The signing scheme is a pluggable strategy: the executor only
relies on ``sign`` returning the headers to attach to the request.
"""
import hashlib
import hmac
import time
from typing import Protocol

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


class WebhookSigner(Protocol):
    """Strategy that produces signature headers for an outbound body."""

    def sign(self, body: bytes, secret: str, timestamp: int) -> dict[str, str]:
        ...


class HmacSha256Signer:
    """
    HMAC-SHA256 over ``"{timestamp}.{body}"``.

    Binding the timestamp into the signed content lets receivers reject
    replays outside their tolerance window.
    """

    def sign(self, body: bytes, secret: str, timestamp: int) -> dict[str, str]:
        return {
            SIGNATURE_HEADER: f"sha256={compute_signature(body, secret, timestamp)}",
            TIMESTAMP_HEADER: str(timestamp),
        }


def compute_signature(body: bytes, secret: str, timestamp: int) -> str:
    """Return the hex HMAC-SHA256 digest for a body/timestamp pair."""
    signed_content = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_content, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    secret: str,
    timestamp: int,
    signature: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """
    Verify a signature header produced by ``HmacSha256Signer``.

    Args:
        body: Raw request body as received
        secret: Endpoint signing secret
        timestamp: Value of the timestamp header
        signature: Value of the signature header (``sha256=<hex>``)
        tolerance_seconds: Maximum accepted age of the timestamp
        now: Current epoch seconds (defaults to ``time.time()``)

    Returns:
        True if the signature matches and the timestamp is fresh
    """
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False

    expected = f"sha256={compute_signature(body, secret, timestamp)}"
    return hmac.compare_digest(expected, signature)
