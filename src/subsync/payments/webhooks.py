"""Webhook ingress: verification, routing and the provider-facing response."""

import logging
from typing import Optional

from aiohttp import web

from subsync.errors import InvalidSignature
from subsync.payments.router import EventRouter, Outcome
from subsync.payments.signature import DEFAULT_TOLERANCE_SECONDS, MalformedPayload, verify

logger = logging.getLogger(__name__)


async def handle_webhook(
    payload: bytes,
    sig_header: Optional[str],
    router: EventRouter,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> web.Response:
    """Handle and verify a provider webhook delivery.

    Nothing reaches the router, and so nothing reaches the store, unless the
    signature matches the raw payload.

    Args:
        payload: Raw request body bytes
        sig_header: Signature header value
        router: Event router
        secret: Webhook signing secret
        tolerance: Maximum signature age in seconds

    Returns:
        aiohttp.web.Response: 200 processed or acknowledged, 400 bad
        signature, 500 when the provider should redeliver
    """
    try:
        event = verify(payload, sig_header, secret, tolerance)
    except MalformedPayload as e:
        # Authentic but unusable; redelivery would bring the same bytes
        logger.error(f"Signed webhook payload is not an event: {e}")
        return web.json_response({"received": True, "outcome": Outcome.REJECTED.value})
    except InvalidSignature as e:
        logger.error(f"Invalid webhook signature: {e}")
        return web.Response(status=400, text="Invalid signature")

    logger.info(f"Received webhook: {event.type} ({event.id})")

    result = await router.route(event)
    return web.json_response(
        {"received": True, "outcome": result.outcome.value},
        status=result.http_status,
    )
