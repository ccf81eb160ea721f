"""
Checkout Session Verifier

Synchronous confirmation of a checkout the user just completed. The front end
calls it on the success page so access is granted without waiting for the
webhook; the webhook applies the same rules later and whichever write is
newer wins.
"""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from dream_billing.schemas.billing import ProviderSubscription, VerifyCheckoutResult
from dream_billing.services.stripe_adapter import StripeBillingAdapter
from dream_billing.services.subscription_state import (
    ACTIVE_PROVIDER_STATUSES,
    Observation,
    SubscriptionStateMachine,
)
from dream_billing.utils.exceptions import ProviderNotFoundError, ProviderTransientError
from dream_billing.utils.retry import with_retry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CheckoutVerifier:
    def __init__(
        self,
        adapter: StripeBillingAdapter,
        state_machine: SubscriptionStateMachine,
        clock: Callable[[], datetime] = _utcnow,
        retry_sleep: Callable[[float], None] = time.sleep,
    ):
        self.adapter = adapter
        self.state_machine = state_machine
        self._clock = clock

        # One retry, transient failures only
        retry = with_retry(max_attempts=2, exceptions=(ProviderTransientError,), sleep=retry_sleep)
        self._retrieve_session = retry(adapter.retrieve_checkout_session)
        self._retrieve_subscription = retry(adapter.retrieve_subscription)

    def verify_checkout(self, user_id: str, session_id: str) -> VerifyCheckoutResult:
        """
        Confirm a checkout session and activate the subscription it created.

        Args:
            user_id: The user the front end claims completed the checkout
            session_id: Stripe checkout session id from the success redirect

        Returns:
            VerifyCheckoutResult. ``verified`` is False for unknown sessions,
            unpaid sessions and sessions that belong to someone else.

        Raises:
            ProviderTransientError: Stripe stayed unreachable after one retry
        """
        # Captured before the read: whatever Stripe returns was true at least this late
        observed_at = self._clock()
        logger.info(f"Verifying checkout session {session_id} for user {user_id}")

        try:
            session = self._retrieve_session(session_id)
        except ProviderNotFoundError:
            logger.info(f"Checkout session {session_id} not found; not verified")
            return VerifyCheckoutResult(verified=False, paid=False)

        paid = session.payment_status == "paid"
        verified = False
        subscription: ProviderSubscription | None = None

        if session.mode == "subscription":
            if session.subscription_id:
                subscription = session.subscription
                if subscription is None:
                    try:
                        subscription = self._retrieve_subscription(session.subscription_id)
                    except ProviderNotFoundError:
                        logger.warning(
                            f"Session {session_id} references missing subscription "
                            f"{session.subscription_id}"
                        )
                if subscription is not None:
                    verified = paid and subscription.status in ACTIVE_PROVIDER_STATUSES
        elif session.mode == "payment":
            verified = paid

        if session.user_id and session.user_id != user_id:
            logger.warning(
                f"Checkout session {session_id} was created for user {session.user_id}, "
                f"not {user_id}; refusing verification"
            )
            verified = False
        elif session.customer:
            verified = self._check_customer_binding(user_id, session.customer, session_id) and verified

        if verified and subscription is not None:
            observation = Observation(
                provider_status=subscription.status,
                subscription_id=subscription.id,
                observed_at=observed_at,
                source="verifier",
                customer_id=session.customer,
                cancel_at_period_end=False,
                current_period_end=subscription.current_period_end,
            )
            self.state_machine.apply_observation(user_id, observation)

        logger.info(
            f"Checkout session {session_id} for user {user_id}: verified={verified} paid={paid} "
            f"payment_status={session.payment_status}"
        )
        return VerifyCheckoutResult(
            verified=verified,
            paid=paid,
            subscription_id=session.subscription_id,
            status=session.status,
            payment_status=session.payment_status,
            customer=session.customer,
        )

    def _check_customer_binding(self, user_id: str, customer_id: str, session_id: str) -> bool:
        """
        Cross-check the session's customer against the stored binding.

        An unbound record adopts the session's customer. A record bound to a
        different customer fails the check and the conflicting id is flagged.
        """
        record = self.state_machine.store.get_or_create(user_id)
        if not record.stripe_customer_id:
            record = self.state_machine.bind_customer(user_id, customer_id)

        if record.stripe_customer_id == customer_id:
            return True

        logger.warning(
            f"Customer mismatch verifying session {session_id} for user {user_id}: "
            f"stored {record.stripe_customer_id}, session {customer_id}"
        )
        self.state_machine.flag_customer(user_id, customer_id)
        return False
