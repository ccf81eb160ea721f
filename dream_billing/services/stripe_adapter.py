"""
Billing Provider Adapter

Thin wrapper over an explicitly constructed ``stripe.StripeClient``. Each call
returns a normalised pydantic snapshot and raises only the provider error
taxonomy from dream_billing.utils.exceptions, so nothing above this module
touches Stripe types.
"""

import logging
from datetime import datetime
from typing import Any

import stripe

from dream_billing.config import Config
from dream_billing.schemas.billing import (
    ProviderCheckoutSession,
    ProviderCoupon,
    ProviderCustomer,
    ProviderPromotionCode,
    ProviderSubscription,
    parse_timestamp,
)
from dream_billing.utils.exceptions import (
    ProviderError,
    ProviderNotFoundError,
    ProviderTransientError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

# API versions from 2025-09-30 reference the coupon through promotion.coupon
PROMOTION_OBJECT_API_VERSION = "2025-09-30"


def get_value(obj: Any, attr: str) -> Any:
    """
    Safely extract a field from a Stripe object (dict-like or attribute-based).

    Key access is tried first so fields such as ``items`` are not shadowed by
    mapping methods.
    """
    if obj is None:
        return None

    try:
        return obj[attr]
    except (KeyError, TypeError, IndexError, AttributeError):
        pass

    return getattr(obj, attr, None)


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata object into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return metadata
    for method in ("to_dict", "to_dict_recursive"):
        to_dict = getattr(metadata, method, None)
        if callable(to_dict):
            return dict(to_dict())
    return dict(metadata)


def object_id(value: Any) -> str | None:
    """Return the id of an expandable field that may be an id string or an object."""
    if value is None or isinstance(value, str):
        return value
    return get_value(value, "id")


def translate_stripe_error(error: stripe.StripeError, operation: str) -> ProviderError:
    """
    Map a Stripe SDK error onto the billing error taxonomy.

    Not found and invalid request errors are definitive; connection, rate limit
    and provider 5xx errors are transient; the rest are fatal.
    """
    code = getattr(error, "code", None)
    http_status = getattr(error, "http_status", None)
    message = f"{operation}: {getattr(error, 'user_message', None) or str(error)}"

    if isinstance(error, stripe.InvalidRequestError) or code == "resource_missing":
        return ProviderNotFoundError(message, code=code, http_status=http_status)
    if isinstance(error, stripe.APIConnectionError | stripe.RateLimitError):
        return ProviderTransientError(message, code=code, http_status=http_status)
    if isinstance(error, stripe.APIError) and (http_status is None or http_status >= 500):
        return ProviderTransientError(message, code=code, http_status=http_status)
    if http_status is not None and http_status >= 500:
        return ProviderTransientError(message, code=code, http_status=http_status)
    return ProviderError(message, code=code, http_status=http_status)


def normalize_subscription(obj: Any) -> ProviderSubscription:
    """
    Build a ProviderSubscription from a Stripe subscription object.

    Newer API versions moved current_period_end onto the subscription items.
    """
    current_period_end = get_value(obj, "current_period_end")
    if current_period_end is None:
        items = get_value(get_value(obj, "items"), "data") or []
        if items:
            current_period_end = get_value(items[0], "current_period_end")

    metadata = metadata_to_dict(get_value(obj, "metadata"))
    return ProviderSubscription(
        id=get_value(obj, "id"),
        status=get_value(obj, "status") or "",
        customer=object_id(get_value(obj, "customer")),
        cancel_at_period_end=bool(get_value(obj, "cancel_at_period_end")),
        current_period_end=parse_timestamp(current_period_end),
        canceled_at=parse_timestamp(get_value(obj, "canceled_at")),
        created=parse_timestamp(get_value(obj, "created")),
        user_id=metadata.get("user_id") or None,
    )


def normalize_checkout_session(obj: Any) -> ProviderCheckoutSession:
    subscription = get_value(obj, "subscription")
    expanded = None
    if subscription is not None and not isinstance(subscription, str):
        expanded = normalize_subscription(subscription)

    metadata = metadata_to_dict(get_value(obj, "metadata"))
    user_id = metadata.get("user_id") or get_value(obj, "client_reference_id")
    if not user_id and expanded is not None:
        user_id = expanded.user_id

    return ProviderCheckoutSession(
        id=get_value(obj, "id"),
        mode=get_value(obj, "mode"),
        status=get_value(obj, "status"),
        payment_status=get_value(obj, "payment_status"),
        customer=object_id(get_value(obj, "customer")),
        subscription_id=object_id(subscription),
        subscription=expanded,
        user_id=user_id or None,
    )


def normalize_coupon(obj: Any) -> ProviderCoupon:
    return ProviderCoupon(
        id=get_value(obj, "id"),
        name=get_value(obj, "name"),
        percent_off=get_value(obj, "percent_off"),
        amount_off=get_value(obj, "amount_off"),
        currency=get_value(obj, "currency"),
        duration=get_value(obj, "duration"),
        duration_in_months=get_value(obj, "duration_in_months"),
        valid=get_value(obj, "valid") is not False,
    )


def normalize_customer(obj: Any) -> ProviderCustomer:
    metadata = metadata_to_dict(get_value(obj, "metadata"))
    return ProviderCustomer(
        id=get_value(obj, "id"),
        email=get_value(obj, "email"),
        deleted=bool(get_value(obj, "deleted")),
        user_id=metadata.get("user_id") or None,
    )


class StripeBillingAdapter:
    """
    Provider calls used by the billing subsystem.

    The client is built with an explicit timeout and no SDK-level retries;
    retry policy belongs to the callers, which know whether a retry is safe.
    """

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        *,
        client: stripe.StripeClient | None = None,
        timeout: float | None = None,
    ):
        self.webhook_secret = webhook_secret if webhook_secret is not None else Config.STRIPE_WEBHOOK_SECRET

        if client is not None:
            self._client = client
        else:
            api_key = api_key or Config.STRIPE_SECRET_KEY
            if not api_key:
                raise ValueError("STRIPE_SECRET_KEY not found in environment variables")
            self._client = stripe.StripeClient(
                api_key,
                http_client=stripe.HTTPXClient(timeout=timeout or Config.STRIPE_TIMEOUT_SECONDS),
                max_network_retries=0,
            )

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

        logger.info("Stripe billing adapter initialized")

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            translated = translate_stripe_error(e, operation)
            if isinstance(translated, ProviderNotFoundError):
                logger.info(f"Stripe {operation}: not found ({e})")
            else:
                logger.warning(f"Stripe {operation} failed ({type(translated).__name__}): {e}")
            raise translated from e

    # ==================== Subscriptions ====================

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        obj = self._call(
            "retrieve_subscription", self._client.v1.subscriptions.retrieve, subscription_id
        )
        return normalize_subscription(obj)

    def list_customer_subscriptions(self, customer_id: str, limit: int = 10) -> list[ProviderSubscription]:
        """All of a customer's subscriptions (any status), newest first."""
        page = self._call(
            "list_customer_subscriptions",
            self._client.v1.subscriptions.list,
            params={"customer": customer_id, "status": "all", "limit": limit},
        )
        subscriptions = [normalize_subscription(obj) for obj in get_value(page, "data") or []]
        return sorted(
            subscriptions,
            key=lambda sub: sub.created.timestamp() if sub.created else 0,
            reverse=True,
        )

    # ==================== Checkout / Portal ====================

    def retrieve_checkout_session(self, session_id: str) -> ProviderCheckoutSession:
        obj = self._call(
            "retrieve_checkout_session",
            self._client.v1.checkout.sessions.retrieve,
            session_id,
            params={"expand": ["subscription"]},
        )
        return normalize_checkout_session(obj)

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
        promotion_code_id: str | None = None,
    ) -> str:
        """
        Create a subscription-mode checkout session.

        Returns:
            The hosted checkout URL
        """
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id},
            "subscription_data": {"metadata": {"user_id": user_id}},
        }
        if promotion_code_id:
            params["discounts"] = [{"promotion_code": promotion_code_id}]
        else:
            params["allow_promotion_codes"] = True

        session = self._call(
            "create_checkout_session", self._client.v1.checkout.sessions.create, params=params
        )
        return get_value(session, "url")

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._call(
            "create_billing_portal_session",
            self._client.v1.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )
        return get_value(session, "url")

    # ==================== Customers ====================

    def create_customer(self, user_id: str, email: str | None = None) -> str:
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = self._call(
            "create_customer",
            self._client.v1.customers.create,
            params=params,
            options={"idempotency_key": f"customer-create-{user_id}"},
        )
        return get_value(customer, "id")

    def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        obj = self._call("retrieve_customer", self._client.v1.customers.retrieve, customer_id)
        return normalize_customer(obj)

    # ==================== Promotion codes ====================

    def _uses_promotion_object(self) -> bool:
        version = getattr(stripe, "api_version", "") or ""
        return version[:10] >= PROMOTION_OBJECT_API_VERSION

    def _normalize_promotion_code(self, obj: Any) -> ProviderPromotionCode:
        coupon = get_value(obj, "coupon") or get_value(get_value(obj, "promotion"), "coupon")
        if isinstance(coupon, str):
            coupon = self._call("retrieve_coupon", self._client.v1.coupons.retrieve, coupon)
        return ProviderPromotionCode(
            id=get_value(obj, "id"),
            code=get_value(obj, "code"),
            active=bool(get_value(obj, "active")),
            coupon=normalize_coupon(coupon),
            expires_at=parse_timestamp(get_value(obj, "expires_at")),
            max_redemptions=get_value(obj, "max_redemptions"),
            times_redeemed=get_value(obj, "times_redeemed") or 0,
        )

    def list_promotion_codes(
        self,
        *,
        code: str | None = None,
        active: bool | None = None,
        coupon: str | None = None,
        customer: str | None = None,
        limit: int = 10,
    ) -> list[ProviderPromotionCode]:
        params: dict[str, Any] = {"limit": limit}
        if code is not None:
            params["code"] = code
        if active is not None:
            params["active"] = active
        if coupon:
            params["coupon"] = coupon
        if customer:
            params["customer"] = customer

        page = self._call("list_promotion_codes", self._client.v1.promotion_codes.list, params=params)
        return [self._normalize_promotion_code(obj) for obj in get_value(page, "data") or []]

    def create_coupon(self, params: dict[str, Any]) -> ProviderCoupon:
        coupon = self._call("create_coupon", self._client.v1.coupons.create, params=params)
        return normalize_coupon(coupon)

    def create_promotion_code(self, coupon_id: str, params: dict[str, Any]) -> ProviderPromotionCode:
        params = dict(params)
        if self._uses_promotion_object():
            params["promotion"] = {"type": "coupon", "coupon": coupon_id}
        else:
            params["coupon"] = coupon_id
        obj = self._call(
            "create_promotion_code", self._client.v1.promotion_codes.create, params=params
        )
        return self._normalize_promotion_code(obj)

    def deactivate_promotion_code(self, promotion_code_id: str) -> ProviderPromotionCode:
        obj = self._call(
            "deactivate_promotion_code",
            self._client.v1.promotion_codes.update,
            promotion_code_id,
            params={"active": False},
        )
        return self._normalize_promotion_code(obj)

    # ==================== Webhooks ====================

    def construct_event(self, payload: bytes, signature: str | None) -> stripe.Event:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: Missing secret, missing header, bad signature or bad payload
        """
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        try:
            return self._client.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e


def event_created_at(event: Any) -> datetime | None:
    return parse_timestamp(get_value(event, "created"))
