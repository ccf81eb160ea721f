"""
Billing Routes
Endpoints consumed by the front end and by Stripe webhooks
"""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from dream_billing.config import Config
from dream_billing.schemas.billing import (
    CheckoutRequest,
    PortalRequest,
    PromoValidateRequest,
    SessionUrlResponse,
    SubscriptionView,
    VerifyCheckoutResult,
    VerifyPaymentRequest,
    WebhookProcessingResult,
)
from dream_billing.services.checkout import (
    InvalidPromoCodeError,
    MissingCustomerError,
    UnknownPlanError,
)
from dream_billing.services.startup import BillingServices, get_billing_services
from dream_billing.utils.exceptions import (
    APIExceptions,
    BillingError,
    ProviderError,
    ProviderTransientError,
    StoreError,
    WebhookSignatureError,
)
from dream_billing.utils.sentry_context import capture_billing_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["Billing"])

RETRY_AFTER_SECONDS = 5


def http_error_for(error: BillingError, operation: str, hint: str | None = None) -> HTTPException:
    """Map a billing error onto the HTTP status the caller should see."""
    if isinstance(error, ProviderTransientError | StoreError):
        logger.warning(f"{operation} unavailable: {error}")
        return APIExceptions.service_unavailable("Billing", retry_after=RETRY_AFTER_SECONDS, hint=hint)
    if isinstance(error, ProviderError):
        return APIExceptions.provider_error(operation, error)
    capture_billing_error(error, operation=operation)
    return APIExceptions.internal_error(operation, error)


# ==================== Webhook Endpoint ====================


@router.post("/webhook", response_model=WebhookProcessingResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Stripe webhook endpoint.

    Handled events: checkout.session.completed, customer.subscription.*,
    invoice.paid / invoice.payment_succeeded / invoice.payment_failed.
    Everything else is acknowledged and ignored.

    Returns 400 for a bad signature (Stripe does not retry) and 503 when the
    event could not be applied (Stripe redelivers it later).
    """
    payload = await request.body()

    try:
        return await asyncio.to_thread(services.webhooks.handle_webhook, payload, stripe_signature)
    except WebhookSignatureError:
        raise APIExceptions.invalid_signature() from None
    except BillingError as e:
        raise http_error_for(e, "webhook processing") from e


# ==================== Checkout Confirmation ====================


@router.post("/verify-payment", response_model=VerifyCheckoutResult)
async def verify_payment(
    body: VerifyPaymentRequest,
    services: BillingServices = Depends(get_billing_services),
):
    """
    Confirm a just-completed checkout for the returning user.

    A 503 with hint ``confirming`` means Stripe could not be reached in time;
    the front end keeps showing "confirming your payment" and the webhook
    finishes the job.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(services.verifier.verify_checkout, body.user_id, body.session_id),
            timeout=Config.VERIFY_TIMEOUT_SECONDS,
        )
    except TimeoutError:
        logger.warning(
            f"Checkout verification for user {body.user_id} (session {body.session_id}) timed out"
        )
        raise APIExceptions.service_unavailable(
            "Billing", retry_after=RETRY_AFTER_SECONDS, hint="confirming"
        ) from None
    except BillingError as e:
        raise http_error_for(e, "checkout verification", hint="confirming") from e


# ==================== Promotion Codes ====================


@router.post("/promo/validate", response_model=dict[str, Any])
async def validate_promo_code(
    body: PromoValidateRequest,
    services: BillingServices = Depends(get_billing_services),
):
    try:
        result = await asyncio.to_thread(services.promo_codes.validate, body.code)
    except BillingError as e:
        raise http_error_for(e, "promo code validation") from e
    return result.model_dump(mode="json", exclude_none=True, exclude={"promotion_code_id"})


# ==================== Checkout & Portal Sessions ====================


@router.post("/checkout", response_model=SessionUrlResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    services: BillingServices = Depends(get_billing_services),
):
    try:
        url = await asyncio.to_thread(
            services.checkout.create_checkout_session,
            body.user_id,
            body.plan_id,
            body.return_url,
            body.promo_code,
        )
    except (UnknownPlanError, InvalidPromoCodeError) as e:
        raise APIExceptions.bad_request(str(e)) from None
    except BillingError as e:
        raise http_error_for(e, "checkout session creation") from e
    return SessionUrlResponse(url=url)


@router.post("/portal", response_model=SessionUrlResponse)
async def create_portal_session(
    body: PortalRequest,
    services: BillingServices = Depends(get_billing_services),
):
    try:
        url = await asyncio.to_thread(services.checkout.create_portal_session, body.user_id, body.return_url)
    except MissingCustomerError:
        raise APIExceptions.not_found("Stripe customer for user", body.user_id) from None
    except BillingError as e:
        raise http_error_for(e, "billing portal session creation") from e
    return SessionUrlResponse(url=url)


# ==================== Subscription Status ====================


@router.get("/subscription/{user_id}", response_model=SubscriptionView)
async def get_subscription(
    user_id: str,
    refresh: bool = Query(False, description="Pull the live state from Stripe before answering"),
    services: BillingServices = Depends(get_billing_services),
):
    try:
        return await asyncio.to_thread(services.checkout.get_subscription, user_id, refresh)
    except BillingError as e:
        raise http_error_for(e, "subscription lookup") from e
