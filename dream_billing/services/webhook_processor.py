"""
Webhook Event Processor

Applies Stripe webhook events to subscription records. Events may arrive
late, twice or out of order, so:

- a processed event id is a no-op on redelivery;
- the event id is recorded only after the event was applied, so a failure
  (raised to the route as a 5xx) makes Stripe deliver it again;
- every observation is stamped with ``event.created`` and goes through the
  state machine's ordering check, so a late event cannot undo a newer one.
"""

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from dream_billing.db.webhook_events import WebhookEventLedger
from dream_billing.schemas.billing import ProviderSubscription, WebhookProcessingResult
from dream_billing.services.stripe_adapter import (
    StripeBillingAdapter,
    event_created_at,
    get_value,
    normalize_checkout_session,
    normalize_subscription,
    object_id,
)
from dream_billing.services.subscription_state import (
    ApplyResult,
    Observation,
    SubscriptionStateMachine,
)
from dream_billing.utils.exceptions import ProviderNotFoundError, WebhookSignatureError

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.paused",
        "customer.subscription.resumed",
    }
)
INVOICE_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def invoice_subscription_id(invoice: Any) -> str | None:
    """Subscription referenced by an invoice (top level before 2025-03-31, under parent after)."""
    subscription = get_value(invoice, "subscription")
    if subscription:
        return object_id(subscription)
    details = get_value(get_value(invoice, "parent"), "subscription_details")
    return object_id(get_value(details, "subscription"))


class WebhookProcessor:
    def __init__(
        self,
        adapter: StripeBillingAdapter,
        state_machine: SubscriptionStateMachine,
        ledger: WebhookEventLedger,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.adapter = adapter
        self.state_machine = state_machine
        self.ledger = ledger
        self._clock = clock

    def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookProcessingResult:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            WebhookSignatureError: Signature could not be verified; nothing was touched
            ProviderTransientError: Stripe unreachable while resolving the event
            StoreError: Database unavailable
        """
        try:
            event = self.adapter.construct_event(payload, signature)
        except WebhookSignatureError as e:
            logger.warning(f"Rejected webhook delivery: {e}")
            raise

        return self.process_event(event)

    def process_event(self, event: Any) -> WebhookProcessingResult:
        event_id = get_value(event, "id")
        event_type = get_value(event, "type")
        logger.info(f"Processing webhook: {event_type} (ID: {event_id})")

        if self.ledger.is_processed(event_id):
            return WebhookProcessingResult(
                event_id=event_id,
                event_type=event_type,
                duplicate=True,
                message=f"Event {event_id} already processed (duplicate)",
            )

        observed_at = event_created_at(event) or self._clock()
        obj = get_value(get_value(event, "data"), "object")

        if event_type == "checkout.session.completed":
            user_id, message = self._handle_checkout_completed(obj, event_id, observed_at)
        elif event_type in SUBSCRIPTION_EVENTS:
            user_id, message = self._handle_subscription_event(
                normalize_subscription(obj), event_id, observed_at
            )
        elif event_type in INVOICE_EVENTS:
            user_id, message = self._handle_invoice_event(obj, event_type, event_id, observed_at)
        else:
            user_id, message = None, f"Event type {event_type} ignored"
            logger.debug(message)

        self.ledger.record(
            event_id,
            event_type,
            user_id=user_id,
            metadata={"livemode": bool(get_value(event, "livemode")), "result": message},
        )
        return WebhookProcessingResult(event_id=event_id, event_type=event_type, message=message)

    # ==================== Handlers ====================

    def _handle_checkout_completed(
        self, obj: Any, event_id: str, observed_at: datetime
    ) -> tuple[str | None, str]:
        session = normalize_checkout_session(obj)

        if session.mode != "subscription" or not session.subscription_id:
            return None, f"Checkout session {session.id} has no subscription; nothing to apply"

        user_id = self._resolve_user(session.user_id, session.customer)
        if user_id is None:
            logger.warning(
                f"Checkout session {session.id} could not be matched to a user "
                f"(customer {session.customer})"
            )
            return None, f"No user for checkout session {session.id}"

        if session.payment_status != "paid":
            if session.customer:
                self.state_machine.bind_customer(user_id, session.customer)
            return user_id, f"Checkout session {session.id} not paid ({session.payment_status})"

        subscription = session.subscription
        if subscription is None:
            try:
                subscription = self.adapter.retrieve_subscription(session.subscription_id)
            except ProviderNotFoundError:
                logger.warning(
                    f"Checkout session {session.id} references missing subscription "
                    f"{session.subscription_id}"
                )
                return user_id, f"Subscription {session.subscription_id} not found"

        result = self._apply(user_id, subscription, observed_at, event_id, session.customer)
        return user_id, self._describe(result, subscription)

    def _handle_subscription_event(
        self, subscription: ProviderSubscription, event_id: str, observed_at: datetime
    ) -> tuple[str | None, str]:
        user_id = self._resolve_user(subscription.user_id, subscription.customer)
        if user_id is None:
            logger.warning(
                f"Subscription {subscription.id} could not be matched to a user "
                f"(customer {subscription.customer})"
            )
            return None, f"No user for subscription {subscription.id}"

        result = self._apply(user_id, subscription, observed_at, event_id, subscription.customer)
        return user_id, self._describe(result, subscription)

    def _handle_invoice_event(
        self, invoice: Any, event_type: str, event_id: str, observed_at: datetime
    ) -> tuple[str | None, str]:
        """
        Re-read the invoice's subscription and apply its live state.

        Recovers activations whose subscription events were missed and records
        the past_due/unpaid transitions that follow a failed payment.
        """
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None, f"Invoice {get_value(invoice, 'id')} has no subscription"

        if event_type == "invoice.payment_failed":
            logger.warning(
                f"Payment failed for invoice {get_value(invoice, 'id')} "
                f"(subscription {subscription_id})"
            )

        try:
            subscription = self.adapter.retrieve_subscription(subscription_id)
        except ProviderNotFoundError:
            return None, f"Subscription {subscription_id} not found"

        return self._handle_subscription_event(subscription, event_id, observed_at)

    # ==================== Helpers ====================

    def _apply(
        self,
        user_id: str,
        subscription: ProviderSubscription,
        observed_at: datetime,
        event_id: str,
        customer_id: str | None,
    ) -> ApplyResult:
        observation = Observation.from_subscription(subscription, observed_at, "webhook", event_id)
        if customer_id and not observation.customer_id:
            observation = replace(observation, customer_id=customer_id)
        return self.state_machine.apply_observation(user_id, observation)

    @staticmethod
    def _describe(result: ApplyResult, subscription: ProviderSubscription) -> str:
        return (
            f"Subscription {subscription.id} ({subscription.status}): {result.outcome.value}, "
            f"record status {result.record.status.value}"
        )

    def _resolve_user(self, user_id: str | None, customer_id: str | None) -> str | None:
        """
        Find the user an event belongs to.

        Tries the user_id metadata we attach at checkout, then the stored
        customer binding, then the customer's own metadata.
        """
        if user_id:
            return str(user_id)
        if not customer_id:
            return None

        record = self.state_machine.store.find_by_customer(customer_id)
        if record is not None:
            return record.user_id

        try:
            customer = self.adapter.retrieve_customer(customer_id)
        except ProviderNotFoundError:
            return None
        if customer.deleted or not customer.user_id:
            return None
        logger.info(f"Resolved customer {customer_id} to user {customer.user_id} from customer metadata")
        return customer.user_id
