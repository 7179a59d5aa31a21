"""
Webhook signature validation - verify incoming Stripe deliveries are authentic.

Stripe signs "<timestamp>.<raw body>" with HMAC-SHA256 and sends it as
Stripe-Signature: t=<timestamp>,v1=<hex digest>[,v1=...]
Verification runs over the exact bytes received. Re-serializing the JSON
before checking breaks legitimate signatures.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Optional

import stripe

from webhook_ingest.errors import InvalidSignatureError, MalformedEventError
from webhook_ingest.schemas.webhook_events import VerifiedEvent

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerifiedEvent:
    """
    Check the Stripe-Signature header against the raw body and parse the event.
    Raises InvalidSignatureError on any verification failure and
    MalformedEventError if a correctly signed body is not an event object.
    """
    if not signature_header:
        raise InvalidSignatureError("Missing Stripe-Signature header")
    if not secret:
        logger.error("No signing secret configured for this channel - rejecting webhook")
        raise InvalidSignatureError("No signing secret configured")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidSignatureError("Request body is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(
            payload, signature_header, secret, tolerance_seconds
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignatureError(f"Webhook signature verification failed: {e}")

    try:
        document = json.loads(payload)
    except ValueError:
        raise MalformedEventError("Webhook body is not valid JSON")

    if not isinstance(document, dict) or not document.get("id") or not document.get("type"):
        raise MalformedEventError("Webhook body is missing event id or type")

    return VerifiedEvent(
        id=str(document["id"]),
        type=str(document["type"]),
        account=document.get("account"),
        api_version=document.get("api_version"),
        created=document.get("created"),
        payload=document,
        raw_body=payload,
    )


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit and replay."""
    return hashlib.sha256(body).hexdigest()


def sign_payload(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for body. Used by tooling and tests."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
