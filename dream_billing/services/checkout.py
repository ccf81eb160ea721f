"""
Checkout and billing portal session creation, plus the subscription read path.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from dream_billing.config import Config
from dream_billing.schemas.billing import SubscriptionStatus, SubscriptionView
from dream_billing.services.promo_codes import PromoCodeService
from dream_billing.services.stripe_adapter import StripeBillingAdapter
from dream_billing.services.subscription_state import Observation, SubscriptionStateMachine
from dream_billing.utils.exceptions import ProviderError, ProviderNotFoundError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UnknownPlanError(ValueError):
    pass


class InvalidPromoCodeError(ValueError):
    pass


class MissingCustomerError(LookupError):
    pass


class CheckoutService:
    def __init__(
        self,
        adapter: StripeBillingAdapter,
        state_machine: SubscriptionStateMachine,
        promo_codes: PromoCodeService,
        price_table: dict[str, str] | None = None,
        site_url: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.adapter = adapter
        self.state_machine = state_machine
        self.promo_codes = promo_codes
        self.price_table = price_table if price_table is not None else Config.price_table()
        self.site_url = (site_url or Config.SITE_URL).rstrip("/")
        self._clock = clock

    def create_checkout_session(
        self,
        user_id: str,
        plan_id: str,
        return_url: str | None = None,
        promo_code: str | None = None,
    ) -> str:
        """
        Start a hosted checkout for one of the configured plans.

        Args:
            user_id: Purchasing user
            plan_id: Key into the operator price table ("monthly", "6-month")
            return_url: Page Stripe sends the browser back to
            promo_code: Optional promotion code typed by the user

        Returns:
            The checkout URL to redirect the browser to

        Raises:
            UnknownPlanError: plan_id is not configured
            InvalidPromoCodeError: promo_code does not validate
        """
        price_id = self.price_table.get(plan_id)
        if not price_id:
            raise UnknownPlanError(f'planId "{plan_id}" not configured')

        promotion_code_id = None
        if promo_code:
            validation = self.promo_codes.validate(promo_code)
            if not validation.valid:
                raise InvalidPromoCodeError(validation.error or "Invalid promo code")
            promotion_code_id = validation.promotion_code_id

        customer_id = self.ensure_customer(user_id)

        base_url = return_url or f"{self.site_url}/checkout-complete"
        url = self.adapter.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=f"{base_url}?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}?canceled=true",
            user_id=user_id,
            promotion_code_id=promotion_code_id,
        )
        logger.info(f"Created checkout session for user {user_id} (plan {plan_id}, customer {customer_id})")
        return url

    def ensure_customer(self, user_id: str) -> str:
        """
        Return the user's Stripe customer, creating and binding one if needed.

        The stored id is checked first and the binding is a conditional write,
        so concurrent first checkouts end up sharing whichever customer was
        bound first.
        """
        record = self.state_machine.store.get_or_create(user_id)
        if record.stripe_customer_id:
            return record.stripe_customer_id

        customer_id = self.adapter.create_customer(user_id)
        logger.info(f"Created Stripe customer {customer_id} for user {user_id}")
        record = self.state_machine.bind_customer(user_id, customer_id)
        return record.stripe_customer_id or customer_id

    def create_portal_session(self, user_id: str, return_url: str | None = None) -> str:
        """
        Open the Stripe billing portal for a user.

        Raises:
            MissingCustomerError: The user has never been bound to a customer
        """
        record = self.state_machine.store.get(user_id)
        if record is None or not record.stripe_customer_id:
            raise MissingCustomerError(f"No Stripe customer for user {user_id}")

        url = self.adapter.create_billing_portal_session(
            record.stripe_customer_id,
            return_url or f"{self.site_url}/settings?tab=subscription",
        )
        logger.info(f"Created billing portal session for user {user_id}")
        return url

    def get_subscription(self, user_id: str, refresh: bool = False) -> SubscriptionView:
        """
        Read a user's subscription, optionally pulling the live state from Stripe first.

        A refresh that cannot reach Stripe returns the stored record with
        ``refreshed=False`` rather than failing the read.
        """
        record = self.state_machine.store.get_or_create(user_id)
        if not refresh or not record.subscription_id:
            return SubscriptionView.from_record(record)

        observed_at = self._clock()
        try:
            subscription = self.adapter.retrieve_subscription(record.subscription_id)
        except ProviderNotFoundError:
            logger.warning(
                f"Subscription {record.subscription_id} for user {user_id} no longer exists; revoking"
            )
            revoked = self.state_machine.revoke(
                user_id,
                SubscriptionStatus.CANCELED,
                observed_at,
                expected_subscription_id=record.subscription_id,
            )
            return SubscriptionView.from_record(revoked or self.state_machine.store.get_or_create(user_id), True)
        except ProviderError as e:
            logger.warning(f"Could not refresh subscription for user {user_id}: {e}")
            return SubscriptionView.from_record(record)

        observation = Observation.from_subscription(subscription, observed_at, "refresh")
        result = self.state_machine.apply_observation(user_id, observation)
        return SubscriptionView.from_record(result.record, refreshed=True)
