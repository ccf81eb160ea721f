"""
Promotion Code Validator and administration.

Validation is read-only: it tells the front end (and checkout creation) what
discount a code would give, it never touches subscription records.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from dream_billing.schemas.billing import (
    CreateCouponRequest,
    CreatePromotionCodeRequest,
    DiscountInfo,
    ProviderCoupon,
    ProviderPromotionCode,
    PromoValidationResult,
)
from dream_billing.services.stripe_adapter import StripeBillingAdapter
from dream_billing.utils.exceptions import ProviderNotFoundError

logger = logging.getLogger(__name__)

INVALID_CODE_MESSAGE = "Invalid or expired promo code"
EXHAUSTED_CODE_MESSAGE = "Promo code has expired or reached maximum redemptions"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def canonicalize_code(code: str) -> str:
    return code.strip().upper()


def discount_from_coupon(coupon: ProviderCoupon) -> DiscountInfo:
    """Percent discounts carry no amount; fixed discounts carry amount and currency."""
    info: dict[str, Any] = {"duration": coupon.duration}
    if coupon.percent_off is not None:
        info["percent_off"] = coupon.percent_off
    elif coupon.amount_off is not None:
        info["amount_off"] = coupon.amount_off
        info["currency"] = coupon.currency
    if coupon.duration == "repeating":
        info["duration_in_months"] = coupon.duration_in_months
    return DiscountInfo(**info)


def _to_epoch(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value else None


class PromoCodeService:
    def __init__(self, adapter: StripeBillingAdapter, clock: Callable[[], datetime] = _utcnow):
        self.adapter = adapter
        self._clock = clock

    def validate(self, code: str) -> PromoValidationResult:
        """
        Check whether a promotion code can be redeemed right now.

        Args:
            code: Code as typed by the user (any case)

        Returns:
            PromoValidationResult with the discount shape when valid

        Raises:
            ProviderTransientError: Stripe unreachable
        """
        canonical = canonicalize_code(code or "")
        if not canonical:
            return PromoValidationResult(valid=False, error="Promo code is required")

        try:
            codes = self.adapter.list_promotion_codes(code=canonical, active=True, limit=1)
        except ProviderNotFoundError:
            codes = []

        if not codes:
            logger.info(f"Promo code {canonical} not found")
            return PromoValidationResult(valid=False, error=INVALID_CODE_MESSAGE)

        promo = codes[0]
        if not self._is_redeemable(promo):
            logger.info(f"Promo code {canonical} is no longer redeemable")
            return PromoValidationResult(valid=False, error=EXHAUSTED_CODE_MESSAGE)

        return PromoValidationResult(
            valid=True,
            discount_info=discount_from_coupon(promo.coupon),
            promotion_code_id=promo.id,
        )

    def _is_redeemable(self, promo: ProviderPromotionCode) -> bool:
        if not promo.active or not promo.coupon.valid:
            return False
        if promo.expires_at is not None and promo.expires_at < self._clock():
            return False
        if promo.max_redemptions and promo.times_redeemed >= promo.max_redemptions:
            return False
        return True

    # ==================== Administration ====================

    def create_coupon(self, request: CreateCouponRequest) -> ProviderCoupon:
        if not request.name:
            raise ValueError("Coupon name is required")
        if not request.percent_off and not request.amount_off:
            raise ValueError("Either percent_off or amount_off is required")
        if request.percent_off and request.amount_off:
            raise ValueError("Only one of percent_off or amount_off may be set")
        if request.duration == "repeating" and not request.duration_in_months:
            raise ValueError("duration_in_months is required for repeating coupons")

        params: dict[str, Any] = {"name": request.name, "duration": request.duration}
        if request.id:
            params["id"] = request.id
        if request.percent_off:
            params["percent_off"] = request.percent_off
        if request.amount_off:
            params["amount_off"] = request.amount_off
            params["currency"] = (request.currency or "usd").lower()
        if request.duration == "repeating":
            params["duration_in_months"] = request.duration_in_months
        if request.max_redemptions:
            params["max_redemptions"] = request.max_redemptions
        if request.redeem_by:
            params["redeem_by"] = _to_epoch(request.redeem_by)

        coupon = self.adapter.create_coupon(params)
        logger.info(f"Created coupon {coupon.id} ({coupon.name})")
        return coupon

    def create_promotion_code(self, request: CreatePromotionCodeRequest) -> ProviderPromotionCode:
        if not request.coupon_id:
            raise ValueError("Coupon ID is required")

        params: dict[str, Any] = {}
        if request.code:
            params["code"] = canonicalize_code(request.code)
        if request.customer:
            params["customer"] = request.customer
        if request.expires_at:
            params["expires_at"] = _to_epoch(request.expires_at)
        if request.max_redemptions:
            params["max_redemptions"] = request.max_redemptions

        restrictions: dict[str, Any] = {}
        if request.first_time_transaction is not None:
            restrictions["first_time_transaction"] = request.first_time_transaction
        if request.minimum_amount:
            restrictions["minimum_amount"] = request.minimum_amount
            restrictions["minimum_amount_currency"] = (request.minimum_amount_currency or "usd").lower()
        if restrictions:
            params["restrictions"] = restrictions

        promo = self.adapter.create_promotion_code(request.coupon_id, params)
        logger.info(f"Created promotion code {promo.code} ({promo.id}) for coupon {request.coupon_id}")
        return promo

    def list_promotion_codes(
        self,
        *,
        active: bool | None = None,
        code: str | None = None,
        coupon: str | None = None,
        customer: str | None = None,
        limit: int = 10,
    ) -> list[ProviderPromotionCode]:
        return self.adapter.list_promotion_codes(
            code=canonicalize_code(code) if code else None,
            active=active,
            coupon=coupon,
            customer=customer,
            limit=limit,
        )

    def deactivate_promotion_code(self, promotion_code_id: str) -> ProviderPromotionCode:
        promo = self.adapter.deactivate_promotion_code(promotion_code_id)
        logger.info(f"Deactivated promotion code {promo.code} ({promo.id})")
        return promo
