"""
Billing administration routes (admin API key required).

Manual sweep and drift audit, plus coupon and promotion code management.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Query

from dream_billing.routes.billing import http_error_for
from dream_billing.schemas.billing import (
    AuditReport,
    AuditRequest,
    CreateCouponRequest,
    CreatePromotionCodeRequest,
    ProviderCoupon,
    ProviderPromotionCode,
    SweepReport,
)
from dream_billing.security.deps import get_admin_key
from dream_billing.services.scheduled_sweep import get_sweep_status
from dream_billing.services.startup import BillingServices, get_billing_services
from dream_billing.utils.exceptions import APIExceptions, BillingError, ProviderNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/billing",
    tags=["Billing Admin"],
    dependencies=[Depends(get_admin_key)],
)


# ==================== Reconciliation ====================


@router.post("/sweep", response_model=SweepReport)
async def run_sweep(services: BillingServices = Depends(get_billing_services)):
    """Run the expired-cancellation sweep now instead of waiting for the scheduler."""
    logger.info("Manual subscription sweep requested")
    try:
        return await asyncio.to_thread(services.reconciliation.run_sweep)
    except BillingError as e:
        raise http_error_for(e, "subscription sweep") from e


@router.get("/sweep/status")
async def sweep_status():
    return get_sweep_status()


@router.post("/audit", response_model=AuditReport)
async def audit_subscriptions(
    body: AuditRequest,
    services: BillingServices = Depends(get_billing_services),
):
    """
    Compare stored subscription records with Stripe.

    ``fix`` repairs the drift found; ``simulate`` only logs what would be
    repaired and takes precedence over ``fix``.
    """
    try:
        return await asyncio.to_thread(
            lambda: services.reconciliation.audit(fix=body.fix, simulate=body.simulate, user_id=body.user_id)
        )
    except BillingError as e:
        raise http_error_for(e, "subscription audit") from e


# ==================== Coupons & Promotion Codes ====================


@router.post("/coupons", response_model=ProviderCoupon)
async def create_coupon(
    body: CreateCouponRequest,
    services: BillingServices = Depends(get_billing_services),
):
    try:
        return await asyncio.to_thread(services.promo_codes.create_coupon, body)
    except ValueError as e:
        raise APIExceptions.bad_request(str(e)) from None
    except BillingError as e:
        raise http_error_for(e, "coupon creation") from e


@router.post("/promotion-codes", response_model=ProviderPromotionCode)
async def create_promotion_code(
    body: CreatePromotionCodeRequest,
    services: BillingServices = Depends(get_billing_services),
):
    try:
        return await asyncio.to_thread(services.promo_codes.create_promotion_code, body)
    except ValueError as e:
        raise APIExceptions.bad_request(str(e)) from None
    except ProviderNotFoundError:
        raise APIExceptions.not_found("Coupon", body.coupon_id) from None
    except BillingError as e:
        raise http_error_for(e, "promotion code creation") from e


@router.get("/promotion-codes", response_model=list[ProviderPromotionCode])
async def list_promotion_codes(
    active: bool | None = None,
    code: str | None = None,
    coupon: str | None = None,
    customer: str | None = None,
    limit: int = Query(10, ge=1, le=100),
    services: BillingServices = Depends(get_billing_services),
):
    try:
        return await asyncio.to_thread(
            lambda: services.promo_codes.list_promotion_codes(
                active=active, code=code, coupon=coupon, customer=customer, limit=limit
            )
        )
    except BillingError as e:
        raise http_error_for(e, "promotion code listing") from e


@router.post("/promotion-codes/{promotion_code_id}/deactivate", response_model=ProviderPromotionCode)
async def deactivate_promotion_code(
    promotion_code_id: str,
    services: BillingServices = Depends(get_billing_services),
):
    try:
        return await asyncio.to_thread(services.promo_codes.deactivate_promotion_code, promotion_code_id)
    except ProviderNotFoundError:
        raise APIExceptions.not_found("Promotion code", promotion_code_id) from None
    except BillingError as e:
        raise http_error_for(e, "promotion code deactivation") from e
