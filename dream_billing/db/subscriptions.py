"""
Subscription Record Store
Durable one-row-per-user subscription state in the customer_subscriptions table.

Every write is a conditional update keyed on (user_id, version). An empty
result means another writer got there first; callers re-read and decide
again. Rows are never deleted.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from dream_billing.config.supabase_config import SupabaseConnection
from dream_billing.schemas.billing import (
    PAID_STATUSES,
    SubscriptionRecord,
    SubscriptionStatus,
    format_timestamp,
)
from dream_billing.utils.exceptions import InvariantViolation, StoreError

logger = logging.getLogger(__name__)

TABLE = "customer_subscriptions"

# PostgREST or-filter: canceling, or active with the cancel flag set
EXPIRED_CANCELLATION_FILTER = (
    f"status.eq.{SubscriptionStatus.CANCELING.value},"
    f"and(status.eq.{SubscriptionStatus.ACTIVE.value},cancel_at_period_end.is.true)"
)

_missing_table_warning_logged = False


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the customer_subscriptions table (or one
    of its reconciliation columns) is missing so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if TABLE in message or "PGRST204" in message or "PGRST205" in message:
        logger.warning(
            "customer_subscriptions is unavailable or missing columns in Supabase. Apply "
            "migration 20261019000000_customer_subscriptions.sql, then run "
            "NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def assert_invariants(candidate: SubscriptionRecord, previous: SubscriptionRecord | None = None) -> None:
    """
    Validate a candidate record before it is persisted.

    Raises:
        InvariantViolation: If the candidate breaks a record invariant
    """
    if candidate.status in PAID_STATUSES and not candidate.subscription_id:
        raise InvariantViolation(
            candidate.user_id,
            "paid-status-requires-subscription",
            f"status={candidate.status.value} without a subscription id",
        )
    if candidate.status == SubscriptionStatus.CANCELING and candidate.current_period_end is None:
        raise InvariantViolation(
            candidate.user_id,
            "canceling-requires-period-end",
            "status=canceling without current_period_end",
        )
    if (
        previous is not None
        and previous.stripe_customer_id
        and candidate.stripe_customer_id != previous.stripe_customer_id
    ):
        raise InvariantViolation(
            candidate.user_id,
            "customer-id-immutable",
            f"customer {previous.stripe_customer_id} cannot become {candidate.stripe_customer_id}",
        )
    if previous is not None and candidate.user_id != previous.user_id:
        raise InvariantViolation(candidate.user_id, "user-id-immutable", "user id changed")


class SubscriptionStore:
    """Reads and conditionally writes customer_subscriptions rows."""

    def __init__(self, connection: SupabaseConnection, clock: Callable[[], datetime] = _utcnow):
        self._connection = connection
        self._clock = clock

    def _execute(self, operation: Callable[[Any], Any], operation_name: str) -> Any:
        try:
            return self._connection.execute(operation, max_retries=2, operation_name=operation_name)
        except Exception as e:
            _maybe_log_missing_table_hint(e)
            raise StoreError(f"{operation_name} failed: {e}") from e

    def get(self, user_id: str) -> SubscriptionRecord | None:
        """
        Load the record for a user

        Returns:
            The record, or None if the user has never touched billing
        """

        def _get(client):
            return client.table(TABLE).select("*").eq("user_id", user_id).limit(1).execute()

        result = self._execute(_get, "get_subscription_record")
        if not result.data:
            return None
        return SubscriptionRecord.from_row(result.data[0])

    def get_or_create(self, user_id: str) -> SubscriptionRecord:
        """
        Load the record for a user, creating an empty one (status=none) if absent.

        Concurrent creators are harmless: the insert ignores duplicates and
        everyone re-reads the single winning row.
        """
        record = self.get(user_id)
        if record is not None:
            return record

        now = format_timestamp(self._clock())

        def _create(client):
            return (
                client.table(TABLE)
                .upsert(
                    {
                        "user_id": user_id,
                        "status": SubscriptionStatus.NONE.value,
                        "cancel_at_period_end": False,
                        "version": 0,
                        "created_at": now,
                        "updated_at": now,
                    },
                    on_conflict="user_id",
                    ignore_duplicates=True,
                )
                .execute()
            )

        self._execute(_create, "create_subscription_record")
        record = self.get(user_id)
        if record is None:
            raise StoreError(f"Subscription record for user {user_id} missing after create")
        logger.info(f"Created subscription record for user {user_id}")
        return record

    def find_by_customer(self, customer_id: str) -> SubscriptionRecord | None:
        def _find(client):
            return (
                client.table(TABLE)
                .select("*")
                .eq("stripe_customer_id", customer_id)
                .limit(1)
                .execute()
            )

        result = self._execute(_find, "find_subscription_by_customer")
        if not result.data:
            return None
        return SubscriptionRecord.from_row(result.data[0])

    def list_records(
        self, user_id: str | None = None, limit: int = 1000, offset: int = 0
    ) -> list[SubscriptionRecord]:
        """List one page of records for auditing, optionally restricted to one user."""

        def _list(client):
            query = client.table(TABLE).select("*")
            if user_id:
                query = query.eq("user_id", user_id)
            return query.order("user_id").range(offset, offset + limit - 1).execute()

        result = self._execute(_list, "list_subscription_records")
        return [SubscriptionRecord.from_row(row) for row in result.data or []]

    def list_expired_cancellations(
        self, now: datetime, limit: int = 500, offset: int = 0
    ) -> list[SubscriptionRecord]:
        """
        One page of records whose paid window has lapsed without a final cancellation.

        Selects status=canceling, or status=active with cancel_at_period_end set,
        whose current_period_end is before ``now``. The whole predicate runs in
        the database so a page never fills up with rows the sweep would skip.
        """

        def _list(client):
            return (
                client.table(TABLE)
                .select("*")
                .or_(EXPIRED_CANCELLATION_FILTER)
                .lt("current_period_end", format_timestamp(now))
                .order("current_period_end")
                .order("user_id")
                .range(offset, offset + limit - 1)
                .execute()
            )

        result = self._execute(_list, "list_expired_cancellations")
        return [SubscriptionRecord.from_row(row) for row in result.data or []]

    def compare_and_set(
        self, current: SubscriptionRecord, candidate: SubscriptionRecord
    ) -> SubscriptionRecord | None:
        """
        Write ``candidate`` only if the stored row still carries ``current.version``.

        Args:
            current: The record as read by the caller
            candidate: The full desired row

        Returns:
            The stored record on success, None if the version moved (lost race)

        Raises:
            InvariantViolation: If the candidate breaks an invariant (nothing written)
            StoreError: If the database call fails
        """
        assert_invariants(candidate, current)

        now = self._clock()
        updated_at = max(now, current.updated_at) if current.updated_at else now
        row = candidate.model_copy(
            update={
                "version": current.version + 1,
                "updated_at": updated_at,
                "created_at": current.created_at,
            }
        ).to_row()
        row.pop("user_id")
        row.pop("created_at")

        def _update(client):
            return (
                client.table(TABLE)
                .update(row)
                .eq("user_id", current.user_id)
                .eq("version", current.version)
                .execute()
            )

        result = self._execute(_update, "update_subscription_record")
        if not result.data:
            logger.debug(
                f"Lost write race for user {current.user_id} at version {current.version}"
            )
            return None
        return SubscriptionRecord.from_row(result.data[0])

    def ping(self) -> bool:
        """Cheap connectivity probe for health checks."""

        def _ping(client):
            return client.table(TABLE).select("user_id").limit(1).execute()

        self._execute(_ping, "ping_subscription_store")
        return True
