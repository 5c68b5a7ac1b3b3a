"""MercadoPago webhook signature verification.

The x-signature header looks like ``ts=<unix seconds>,v1=<hex digest>``; the
digest is HMAC-SHA256 over ``id=<data.id>&type=<type>&ts=<ts>`` keyed with the
shared webhook secret.
"""

import hashlib
import hmac
import logging
import time

from studio_billing.constants import WEBHOOK_SIGNATURE_MAX_AGE
from studio_billing.errors import WebhookSignatureError

logger = logging.getLogger(__name__)


def build_manifest(data_id: str, event_type: str, timestamp: str) -> str:
    return f"id={data_id}&type={event_type}&ts={timestamp}"


def compute_signature(secret: str, manifest: str) -> str:
    """Compute the hex HMAC-SHA256 of a manifest string."""
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str, str]:
    """Split ``ts=...,v1=...`` into (timestamp, digest)."""
    timestamp = digest = None
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            timestamp = value
        elif key == "v1":
            digest = value
    if not timestamp or not digest:
        raise WebhookSignatureError("Invalid signature format")
    return timestamp, digest


def verify_signature(
    header: str | None,
    data_id: str,
    event_type: str,
    secret: str,
    now: float | None = None,
    max_age: int = WEBHOOK_SIGNATURE_MAX_AGE,
) -> None:
    """Verify a webhook signature, raising WebhookSignatureError when it is not valid."""
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not header:
        raise WebhookSignatureError("Missing x-signature header")

    timestamp, digest = parse_signature_header(header)

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Invalid signature timestamp")

    current = time.time() if now is None else now
    age = current - signed_at
    if age > max_age:
        raise WebhookSignatureError(f"Signature too old: {int(age)}s")

    expected = compute_signature(secret, build_manifest(data_id, event_type, timestamp))
    if not hmac.compare_digest(expected, digest):
        logger.warning("Signature mismatch for resource %s (%s)", data_id, event_type)
        raise WebhookSignatureError("Signature mismatch")


def should_skip_validation(secret: str, debug: bool) -> bool:
    """Local development may run without a secret; production never does."""
    return debug and not secret
