"""HMAC signature validation for Replicate webhooks.

Replicate signs deliveries following the Standard Webhooks scheme: the signed
content is ``{webhook-id}.{webhook-timestamp}.{raw body}``, signed with
HMAC-SHA256 using the base64 key that follows the ``whsec_`` prefix of the
webhook secret. The ``webhook-signature`` header carries one or more
space-separated ``v1,<base64 signature>`` entries.
"""

import base64
import hashlib
import hmac
import time

SECRET_PREFIX = "whsec_"


def compute_replicate_signature(
    raw_body: bytes, webhook_id: str, webhook_timestamp: str, secret: str
) -> str:
    """Compute the base64 HMAC-SHA256 signature for a delivery."""
    key_b64 = secret[len(SECRET_PREFIX) :] if secret.startswith(SECRET_PREFIX) else secret
    key = base64.b64decode(key_b64)
    signed_content = f"{webhook_id}.{webhook_timestamp}.".encode("utf-8") + raw_body
    digest = hmac.new(key=key, msg=signed_content, digestmod=hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_replicate_signature(
    raw_body: bytes,
    webhook_id: str,
    webhook_timestamp: str,
    signature_header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Validate a Replicate webhook delivery.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON)
        webhook_id: Value of the webhook-id header
        webhook_timestamp: Value of the webhook-timestamp header (unix seconds)
        signature_header: Value of the webhook-signature header
        secret: Webhook signing secret (``whsec_...``)
        tolerance_seconds: Maximum allowed clock skew (replay protection)
        now: Current unix time (defaults to time.time())

    Returns:
        True if any signature in the header matches and the timestamp is fresh.
    """
    try:
        timestamp = int(webhook_timestamp)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        return False

    try:
        expected = compute_replicate_signature(raw_body, webhook_id, webhook_timestamp, secret)
    except (ValueError, TypeError):
        return False

    for entry in signature_header.split():
        _, _, candidate = entry.partition(",")
        # Constant-time comparison
        if candidate and hmac.compare_digest(expected, candidate):
            return True
    return False
