"""HTTP server: webhook ingress, subscription-status query, checkout and resync."""

import asyncio
import logging
import signal
from dataclasses import asdict, dataclass
from functools import partial
from typing import Awaitable, Callable, Optional

import asyncpg
import stripe
from aiohttp import web

from subsync.config import AppConfig, get_config
from subsync.db.models import BillingPeriod, PlanType
from subsync.db.pool import close_pool, get_pool
from subsync.errors import TransientStoreFailure
from subsync.payments.checkout import CheckoutInitiator, CheckoutRefused
from subsync.payments.entitlements import EntitlementResolver
from subsync.payments.gateway import StripeGateway
from subsync.payments.handlers import TransitionHandlers
from subsync.payments.router import EventRouter
from subsync.payments.store import MemberStore, SubscriptionStateStore
from subsync.payments.sync import ResyncReport, resync_member
from subsync.payments.webhooks import handle_webhook

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/billing"
STATUS_PATH = "/subscription-status/{member_id}"
HEALTH_PATH = "/health"
CHECKOUT_PATH = "/checkout/{member_id}"
PORTAL_PATH = "/billing-portal/{member_id}"
RESYNC_PATH = "/subscription-sync/{member_id}"

# CheckoutRefused.reason -> HTTP status
REFUSAL_STATUS = {
    "member_not_found": 404,
    "no_customer": 404,
    "has_subscription": 409,
}

# First header present wins; the provider's native name is accepted too
SIGNATURE_HEADERS = ("X-Signature", "Stripe-Signature")


@dataclass
class BillingEngine:
    """Wired-up engine components shared by the request handlers."""

    router: EventRouter
    resolver: EntitlementResolver
    webhook_secret: str
    signature_tolerance: int
    checkout: CheckoutInitiator
    resync: Callable[[str], Awaitable[ResyncReport]]

    @classmethod
    def build(cls, config: AppConfig, pool: asyncpg.Pool) -> "BillingEngine":
        """Wire the engine from configuration.

        Raises:
            ConfigurationError: If billing secrets are missing
        """
        config.require_billing()
        store = SubscriptionStateStore(pool)
        members = MemberStore(pool)
        gateway = StripeGateway.from_config(config)
        handlers = TransitionHandlers(store=store, members=members, gateway=gateway)
        return cls(
            router=EventRouter(handlers, config.retry_unknown_subscriptions),
            resolver=EntitlementResolver(store),
            webhook_secret=config.stripe_webhook_secret.get_secret_value(),
            signature_tolerance=config.signature_tolerance_seconds,
            checkout=CheckoutInitiator(gateway, members, store, config),
            resync=partial(resync_member, store=store, members=members, gateway=gateway),
        )


ENGINE_KEY = web.AppKey("engine", BillingEngine)


def _signature_header(request: web.Request) -> Optional[str]:
    for name in SIGNATURE_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return None


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/billing."""
    sig_header = _signature_header(request)
    if not sig_header:
        logger.error("Missing signature header")
        return web.Response(status=400, text="Missing signature")

    # Signature covers these exact bytes
    payload = await request.read()

    engine = request.app[ENGINE_KEY]
    return await handle_webhook(
        payload,
        sig_header,
        engine.router,
        engine.webhook_secret,
        engine.signature_tolerance,
    )


async def subscription_status_endpoint(request: web.Request) -> web.Response:
    """Handle GET /subscription-status/{member_id}."""
    member_id = request.match_info["member_id"]
    engine = request.app[ENGINE_KEY]
    try:
        body = await engine.resolver.subscription_status(member_id)
    except TransientStoreFailure as e:
        logger.error(f"Subscription status unavailable for {member_id}: {e}")
        return web.json_response({"error": "Service temporarily unavailable"}, status=503)
    return web.json_response(body)


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _refused(e: CheckoutRefused) -> web.Response:
    return web.json_response(
        {"error": e.message, "reason": e.reason},
        status=REFUSAL_STATUS.get(e.reason, 400),
    )


async def checkout_endpoint(request: web.Request) -> web.Response:
    """Handle POST /checkout/{member_id} with ``plan_type`` and ``billing_period``."""
    member_id = request.match_info["member_id"]
    engine = request.app[ENGINE_KEY]
    body = await _json_body(request)
    try:
        plan_type = PlanType(str(body.get("plan_type", "")).strip().capitalize())
        billing_period = BillingPeriod(str(body.get("billing_period", "")).strip().capitalize())
    except ValueError:
        return web.json_response(
            {"error": "plan_type and billing_period are required"}, status=400
        )

    try:
        session = await engine.checkout.create_checkout_url(member_id, plan_type, billing_period)
    except CheckoutRefused as e:
        return _refused(e)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    except stripe.StripeError as e:
        logger.error(f"Checkout failed for member {member_id}: {e}")
        return web.json_response({"error": "Payment provider error"}, status=502)
    except TransientStoreFailure as e:
        logger.error(f"Checkout unavailable for {member_id}: {e}")
        return web.json_response({"error": "Service temporarily unavailable"}, status=503)

    return web.json_response({"session_id": session.session_id, "url": session.url})


async def portal_endpoint(request: web.Request) -> web.Response:
    """Handle POST /billing-portal/{member_id}."""
    member_id = request.match_info["member_id"]
    engine = request.app[ENGINE_KEY]
    body = await _json_body(request)
    try:
        url = await engine.checkout.create_portal_url(member_id, body.get("return_url"))
    except CheckoutRefused as e:
        return _refused(e)
    except stripe.StripeError as e:
        logger.error(f"Portal session failed for member {member_id}: {e}")
        return web.json_response({"error": "Payment provider error"}, status=502)
    except TransientStoreFailure as e:
        logger.error(f"Portal unavailable for {member_id}: {e}")
        return web.json_response({"error": "Service temporarily unavailable"}, status=503)

    return web.json_response({"url": url})


async def resync_endpoint(request: web.Request) -> web.Response:
    """Handle POST /subscription-sync/{member_id}."""
    member_id = request.match_info["member_id"]
    engine = request.app[ENGINE_KEY]
    try:
        report = await engine.resync(member_id)
    except LookupError as e:
        return web.json_response({"error": str(e)}, status=404)
    except stripe.StripeError as e:
        logger.error(f"Resync failed for member {member_id}: {e}")
        return web.json_response({"error": "Payment provider error"}, status=502)
    except TransientStoreFailure as e:
        logger.error(f"Resync unavailable for {member_id}: {e}")
        return web.json_response({"error": "Service temporarily unavailable"}, status=503)

    return web.json_response(asdict(report))


async def health_endpoint(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def create_app(engine: BillingEngine) -> web.Application:
    """Create aiohttp application with billing routes."""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_post(WEBHOOK_PATH, webhook_endpoint)
    app.router.add_get(STATUS_PATH, subscription_status_endpoint)
    app.router.add_post(CHECKOUT_PATH, checkout_endpoint)
    app.router.add_post(PORTAL_PATH, portal_endpoint)
    app.router.add_post(RESYNC_PATH, resync_endpoint)
    app.router.add_get(HEALTH_PATH, health_endpoint)
    return app


async def run_server(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """Run the server until shutdown is signalled.

    Configuration and the database are validated before the port opens.
    """
    config = get_config()
    pool = await get_pool()
    engine = BillingEngine.build(config, pool)
    app = await create_app(engine)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.webhook_server_host, config.webhook_server_port)
    await site.start()

    logger.info(
        f"Billing server listening on {config.webhook_server_host}:{config.webhook_server_port}"
    )

    try:
        if shutdown_event:
            await shutdown_event.wait()
        else:
            await asyncio.Event().wait()
    finally:
        logger.info("Shutting down billing server...")
        await runner.cleanup()
        await close_pool()


def main() -> None:
    """Run the billing server as a standalone process.

    Blocks until SIGTERM/SIGINT received.
    """
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        loop.run_until_complete(run_server(shutdown_event=shutdown_event))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.close()
        logger.info("Billing server stopped")


if __name__ == "__main__":
    main()
