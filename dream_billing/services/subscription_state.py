"""
Subscription state machine.

The pure half (``map_provider_state`` and ``plan_observation``) decides what a
provider observation means for a stored record. The ``SubscriptionStateMachine``
half applies those decisions to the store with compare-and-swap writes,
re-reading and re-deciding when another writer wins the race.

Every observation carries an ordering token (``observed_at``): the provider
side instant the observed state was true. A record never moves to a state
observed earlier than the one it already holds.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from dream_billing.db.subscriptions import SubscriptionStore
from dream_billing.schemas.billing import (
    PAID_STATUSES,
    ProviderSubscription,
    SubscriptionRecord,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3

ACTIVE_PROVIDER_STATUSES = frozenset({"active", "trialing"})
REVOKED_PROVIDER_STATUSES = frozenset({"unpaid", "incomplete_expired", "paused"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Observation:
    """One look at a provider subscription, from a webhook, a verifier read or a poll."""

    provider_status: str
    subscription_id: str
    observed_at: datetime
    source: str
    customer_id: str | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    event_id: str | None = None

    @classmethod
    def from_subscription(
        cls,
        subscription: ProviderSubscription,
        observed_at: datetime,
        source: str,
        event_id: str | None = None,
    ) -> "Observation":
        return cls(
            provider_status=subscription.status,
            subscription_id=subscription.id,
            observed_at=observed_at,
            source=source,
            customer_id=subscription.customer,
            cancel_at_period_end=subscription.cancel_at_period_end,
            current_period_end=subscription.current_period_end,
            canceled_at=subscription.canceled_at,
            event_id=event_id,
        )


@dataclass(frozen=True)
class LocalState:
    status: SubscriptionStatus
    subscription_id: str | None
    cancel_at_period_end: bool
    current_period_end: datetime | None
    canceled_at: datetime | None


class Outcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"  # older than the stored ordering token
    IGNORED = "ignored"  # status carries no local meaning (e.g. incomplete)
    SUPERSEDED = "superseded"  # refers to a subscription the record has moved past
    CUSTOMER_MISMATCH = "customer_mismatch"
    CONFLICT = "conflict"  # lost every compare-and-swap attempt


@dataclass(frozen=True)
class ApplyResult:
    outcome: Outcome
    record: SubscriptionRecord

    @property
    def applied(self) -> bool:
        return self.outcome == Outcome.APPLIED


def map_provider_state(
    observation: Observation, record: SubscriptionRecord, now: datetime
) -> LocalState | None:
    """
    Translate a provider subscription status into the local state it implies.

    Returns:
        The target LocalState, or None when the status carries no change
        (``incomplete`` and unrecognised statuses)
    """
    status = observation.provider_status

    if status in ACTIVE_PROVIDER_STATUSES:
        return LocalState(
            status=SubscriptionStatus.ACTIVE,
            subscription_id=observation.subscription_id,
            cancel_at_period_end=observation.cancel_at_period_end,
            current_period_end=observation.current_period_end,
            canceled_at=None,
        )

    if status == "past_due":
        # Grace period: keep access, leave the cancel flag as stored
        return LocalState(
            status=SubscriptionStatus.ACTIVE,
            subscription_id=observation.subscription_id,
            cancel_at_period_end=record.cancel_at_period_end,
            current_period_end=observation.current_period_end or record.current_period_end,
            canceled_at=None,
        )

    if status == "canceled":
        period_end = observation.current_period_end
        if period_end is not None and period_end > now:
            return LocalState(
                status=SubscriptionStatus.CANCELING,
                subscription_id=observation.subscription_id,
                cancel_at_period_end=True,
                current_period_end=period_end,
                canceled_at=observation.canceled_at,
            )
        return LocalState(
            status=SubscriptionStatus.CANCELED,
            subscription_id=None,
            cancel_at_period_end=False,
            current_period_end=period_end or record.current_period_end,
            canceled_at=observation.canceled_at or now,
        )

    if status in REVOKED_PROVIDER_STATUSES:
        return LocalState(
            status=SubscriptionStatus.INACTIVE,
            subscription_id=None,
            cancel_at_period_end=False,
            current_period_end=observation.current_period_end or record.current_period_end,
            canceled_at=observation.canceled_at or now,
        )

    if status != "incomplete":
        logger.warning(
            f"Unrecognised provider status '{status}' for subscription {observation.subscription_id}"
        )
    return None


def _same_state(record: SubscriptionRecord, candidate: SubscriptionRecord) -> bool:
    fields = (
        "stripe_customer_id",
        "subscription_id",
        "status",
        "cancel_at_period_end",
        "current_period_end",
        "canceled_at",
        "flagged_customer_id",
    )
    return all(getattr(record, name) == getattr(candidate, name) for name in fields)


def plan_observation(
    record: SubscriptionRecord, observation: Observation, now: datetime
) -> tuple[Outcome, SubscriptionRecord | None]:
    """
    Decide what ``observation`` does to ``record``.

    Returns:
        (outcome, candidate). The candidate is the row to write, or None when
        nothing needs writing.
    """
    if record.observed_at is not None and observation.observed_at < record.observed_at:
        return Outcome.STALE, None

    if (
        observation.customer_id
        and record.stripe_customer_id
        and observation.customer_id != record.stripe_customer_id
    ):
        if record.flagged_customer_id == observation.customer_id:
            return Outcome.CUSTOMER_MISMATCH, None
        return Outcome.CUSTOMER_MISMATCH, record.model_copy(
            update={"flagged_customer_id": observation.customer_id}
        )

    target = map_provider_state(observation, record, now)
    if target is None:
        return Outcome.IGNORED, None

    # A different subscription may only take over the record by granting access;
    # the tail end of an older subscription must not revoke a newer one.
    if (
        record.subscription_id
        and observation.subscription_id != record.subscription_id
        and target.status not in PAID_STATUSES
    ):
        return Outcome.SUPERSEDED, None

    candidate = record.model_copy(
        update={
            "stripe_customer_id": record.stripe_customer_id or observation.customer_id,
            "status": target.status,
            "subscription_id": target.subscription_id,
            "cancel_at_period_end": target.cancel_at_period_end,
            "current_period_end": target.current_period_end,
            "canceled_at": target.canceled_at,
        }
    )
    if _same_state(record, candidate):
        # Nothing to change, but a newer confirmation still moves the ordering token
        if record.observed_at is not None and observation.observed_at <= record.observed_at:
            return Outcome.UNCHANGED, None
        return Outcome.UNCHANGED, record.model_copy(update={"observed_at": observation.observed_at})

    return Outcome.APPLIED, candidate.model_copy(
        update={
            "observed_at": max(observation.observed_at, record.observed_at or observation.observed_at),
            "last_event_id": observation.event_id or record.last_event_id,
        }
    )


class SubscriptionStateMachine:
    """Applies observations and administrative transitions to stored records."""

    def __init__(self, store: SubscriptionStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    def apply_observation(self, user_id: str, observation: Observation) -> ApplyResult:
        """
        Apply a provider observation to a user's record.

        Stale, ignored and superseded observations are dropped without error.
        A lost compare-and-swap re-reads the row and decides again, up to
        MAX_WRITE_ATTEMPTS times.
        """
        record = self.store.get_or_create(user_id)

        for _attempt in range(MAX_WRITE_ATTEMPTS):
            outcome, candidate = plan_observation(record, observation, self._clock())

            if outcome == Outcome.STALE:
                logger.info(
                    f"Discarding stale {observation.source} observation for user {user_id}: "
                    f"subscription {observation.subscription_id} status={observation.provider_status} "
                    f"observed {observation.observed_at.isoformat()} precedes "
                    f"{record.observed_at.isoformat() if record.observed_at else None}"
                )
                return ApplyResult(outcome, record)

            if outcome == Outcome.CUSTOMER_MISMATCH:
                logger.warning(
                    f"Customer mismatch for user {user_id}: stored {record.stripe_customer_id}, "
                    f"{observation.source} reported {observation.customer_id}"
                )

            if candidate is None:
                logger.debug(
                    f"{observation.source} observation for user {user_id} left record "
                    f"{outcome.value} (status={observation.provider_status})"
                )
                return ApplyResult(outcome, record)

            written = self.store.compare_and_set(record, candidate)
            if written is not None:
                if outcome == Outcome.APPLIED:
                    logger.info(
                        f"Subscription for user {user_id}: {record.status.value} -> "
                        f"{written.status.value} ({observation.source}, "
                        f"provider status {observation.provider_status})"
                    )
                return ApplyResult(outcome, written)

            record = self._reload(user_id)

        logger.debug(f"Gave up applying {observation.source} observation for user {user_id}")
        return ApplyResult(Outcome.CONFLICT, record)

    def bind_customer(self, user_id: str, customer_id: str) -> SubscriptionRecord:
        """
        Attach a provider customer id to a record that has none.

        A record that already carries a customer id is returned unchanged; the
        stored id always wins.
        """
        record = self.store.get_or_create(user_id)
        for _attempt in range(MAX_WRITE_ATTEMPTS):
            if record.stripe_customer_id:
                if record.stripe_customer_id != customer_id:
                    logger.info(
                        f"User {user_id} already bound to customer {record.stripe_customer_id}; "
                        f"not binding {customer_id}"
                    )
                return record
            written = self.store.compare_and_set(
                record, record.model_copy(update={"stripe_customer_id": customer_id})
            )
            if written is not None:
                logger.info(f"Bound user {user_id} to customer {customer_id}")
                return written
            record = self._reload(user_id)
        return record

    def flag_customer(self, user_id: str, customer_id: str) -> SubscriptionRecord:
        """Record a conflicting customer id seen for this user (audit trail)."""
        record = self.store.get_or_create(user_id)
        for _attempt in range(MAX_WRITE_ATTEMPTS):
            if record.flagged_customer_id == customer_id:
                return record
            written = self.store.compare_and_set(
                record, record.model_copy(update={"flagged_customer_id": customer_id})
            )
            if written is not None:
                return written
            record = self._reload(user_id)
        return record

    def expire(self, record: SubscriptionRecord, now: datetime) -> SubscriptionRecord | None:
        """
        Finalise a cancellation whose paid period has ended.

        Single attempt against the version the caller read: if anything wrote
        the row since, that write wins and None is returned.
        """
        period_end = record.current_period_end
        token = max(filter(None, (record.observed_at, period_end)), default=now)
        candidate = record.model_copy(
            update={
                "status": SubscriptionStatus.CANCELED,
                "subscription_id": None,
                "cancel_at_period_end": False,
                "canceled_at": record.canceled_at or period_end or now,
                "observed_at": token,
            }
        )
        return self.store.compare_and_set(record, candidate)

    def revoke(
        self,
        user_id: str,
        status: SubscriptionStatus,
        observed_at: datetime,
        expected_subscription_id: str | None = None,
    ) -> SubscriptionRecord | None:
        """
        Remove access after the provider confirmed there is nothing to back it.

        Args:
            user_id: Record owner
            status: CANCELED or INACTIVE
            observed_at: When the provider was consulted
            expected_subscription_id: Abort if the record moved to another subscription

        Returns:
            The written record, or None if a newer write made the revocation moot
        """
        record = self.store.get_or_create(user_id)
        for _attempt in range(MAX_WRITE_ATTEMPTS):
            if record.subscription_id != expected_subscription_id:
                return None
            if record.observed_at is not None and record.observed_at > observed_at:
                return None
            now = self._clock()
            candidate = record.model_copy(
                update={
                    "status": status,
                    "subscription_id": None,
                    "cancel_at_period_end": False,
                    "canceled_at": record.canceled_at or now,
                    "observed_at": observed_at,
                }
            )
            written = self.store.compare_and_set(record, candidate)
            if written is not None:
                logger.info(f"Revoked subscription for user {user_id}: now {status.value}")
                return written
            record = self._reload(user_id)
        return None

    def _reload(self, user_id: str) -> SubscriptionRecord:
        record = self.store.get(user_id)
        if record is None:
            # Rows are never deleted; recreate rather than loop on None
            return self.store.get_or_create(user_id)
        return record
