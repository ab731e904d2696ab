"""Webhook signature verification.

The signature covers the exact request bytes, so verification runs on the raw
body and JSON is decoded only afterwards.
"""

import json
from typing import Optional

import stripe

from subsync.errors import InvalidSignature
from subsync.payments.events import VerifiedEvent

DEFAULT_TOLERANCE_SECONDS = 300


class MalformedPayload(InvalidSignature):
    """Signed body is not a well-formed event."""
    pass


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerifiedEvent:
    """Verify a webhook delivery and decode it.

    Args:
        raw_body: Request body exactly as received
        signature_header: ``t=<unix>,v1=<hex hmac>`` signature header
        secret: Shared webhook signing secret
        tolerance: Maximum signature age in seconds (0 disables the check)

    Returns:
        VerifiedEvent decoded from the body

    Raises:
        InvalidSignature: Missing header or secret, stale timestamp, or
            signature mismatch
        MalformedPayload: Signature is valid but the body is not an event
    """
    if not signature_header:
        raise InvalidSignature("Missing signature header")
    if not secret:
        raise InvalidSignature("Webhook signing secret not configured")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidSignature("Body is not valid UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature("Signature verification failed") from e

    try:
        return VerifiedEvent.from_payload(json.loads(payload))
    except (ValueError, KeyError, TypeError) as e:
        raise MalformedPayload(f"Invalid event payload: {e}") from e
