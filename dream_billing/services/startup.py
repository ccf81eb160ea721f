"""
Application wiring and lifespan.

Builds the billing services once per process and hangs them on
``app.state.billing`` so routes receive them through a dependency.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Request

from dream_billing.config import Config
from dream_billing.config.supabase_config import SupabaseConnection
from dream_billing.db.subscriptions import SubscriptionStore
from dream_billing.db.webhook_events import WebhookEventLedger
from dream_billing.services.checkout import CheckoutService
from dream_billing.services.checkout_verifier import CheckoutVerifier
from dream_billing.services.promo_codes import PromoCodeService
from dream_billing.services.reconciliation import ReconciliationService
from dream_billing.services.scheduled_sweep import start_scheduler, stop_scheduler
from dream_billing.services.stripe_adapter import StripeBillingAdapter
from dream_billing.services.subscription_state import SubscriptionStateMachine
from dream_billing.services.webhook_processor import WebhookProcessor
from dream_billing.utils.exceptions import APIExceptions

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    connection: SupabaseConnection
    store: SubscriptionStore
    ledger: WebhookEventLedger
    adapter: StripeBillingAdapter
    state_machine: SubscriptionStateMachine
    verifier: CheckoutVerifier
    webhooks: WebhookProcessor
    reconciliation: ReconciliationService
    promo_codes: PromoCodeService
    checkout: CheckoutService


def build_services(
    connection: SupabaseConnection | None = None,
    adapter: StripeBillingAdapter | None = None,
) -> BillingServices:
    """Wire the billing subsystem from a database connection and a Stripe adapter."""
    connection = connection or SupabaseConnection()
    adapter = adapter or StripeBillingAdapter()

    store = SubscriptionStore(connection)
    ledger = WebhookEventLedger(connection)
    state_machine = SubscriptionStateMachine(store)
    promo_codes = PromoCodeService(adapter)

    return BillingServices(
        connection=connection,
        store=store,
        ledger=ledger,
        adapter=adapter,
        state_machine=state_machine,
        verifier=CheckoutVerifier(adapter, state_machine),
        webhooks=WebhookProcessor(adapter, state_machine, ledger),
        reconciliation=ReconciliationService(state_machine, adapter),
        promo_codes=promo_codes,
        checkout=CheckoutService(adapter, state_machine, promo_codes),
    )


@asynccontextmanager
async def lifespan(app):
    """
    Application lifespan manager for startup and shutdown events
    """
    services: BillingServices | None = getattr(app.state, "billing", None)

    if services is None:
        is_valid, missing_vars = Config.validate_critical_env_vars()
        if not is_valid:
            logger.error(f"CRITICAL: Missing required environment variables: {missing_vars}")
            raise RuntimeError(f"Missing required environment variables: {missing_vars}")
        logger.info("All critical environment variables validated")

        services = build_services()
        app.state.billing = services

    try:
        services.connection.get()
        logger.info("Supabase client initialized")
    except Exception as e:
        # Requests fail with 503 until the database comes back
        logger.warning(f"Supabase client initialization failed, starting in degraded mode: {e}")

    start_scheduler(services.reconciliation, services.ledger)

    yield

    logger.info("Shutting down billing services")
    stop_scheduler()
    services.connection.close()


def get_billing_services(request: Request) -> BillingServices:
    """FastAPI dependency returning the services built by the lifespan."""
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise APIExceptions.service_unavailable("Billing service")
    return services
