"""
Webhook Event Ledger
Processed Stripe webhook event ids, used to make redelivery a no-op.

An id is recorded only after its event has been applied, so a delivery that
failed half way is processed again when Stripe retries it.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from dream_billing.config.supabase_config import SupabaseConnection

logger = logging.getLogger(__name__)

TABLE = "stripe_webhook_events"

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the stripe_webhook_events table
    is missing from the Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if TABLE in message or "PGRST205" in message:
        logger.warning(
            "stripe_webhook_events table is unavailable in Supabase (likely migrations not applied "
            "or schema cache stale). Apply migration 20261019000000_customer_subscriptions.sql, "
            "then run NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


class WebhookEventLedger:
    def __init__(self, connection: SupabaseConnection, clock: Callable[[], datetime] | None = None):
        self._connection = connection
        self._clock = clock or (lambda: datetime.now(UTC))

    def is_processed(self, event_id: str) -> bool:
        """
        Check if a webhook event has already been processed

        Args:
            event_id: Stripe event ID (evt_xxx)

        Returns:
            True if event was already processed, False otherwise
        """
        try:

            def _check_event(client):
                return (
                    client.table(TABLE)
                    .select("event_id")
                    .eq("event_id", event_id)
                    .execute()
                )

            result = self._connection.execute(_check_event, operation_name="check_webhook_event")

            exists = bool(result.data)
            if exists:
                logger.info(f"Duplicate webhook event detected: {event_id}")

            return exists

        except Exception as e:
            _maybe_log_missing_table_hint(e)
            logger.error(f"Error checking if event is processed: {e}", exc_info=True)
            # Applying an event twice is harmless, skipping one is not
            return False

    def record(
        self,
        event_id: str,
        event_type: str,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record that a webhook event has been processed

        Args:
            event_id: Stripe event ID (evt_xxx)
            event_type: Stripe event type (e.g., customer.subscription.updated)
            user_id: User the event resolved to (if any)
            metadata: Additional event metadata for debugging

        Returns:
            True if recorded successfully, False otherwise
        """
        try:

            def _record_event(client):
                return (
                    client.table(TABLE)
                    .upsert(
                        {
                            "event_id": event_id,
                            "event_type": event_type,
                            "user_id": user_id,
                            "metadata": metadata or {},
                            "processed_at": self._clock().isoformat(),
                        },
                        on_conflict="event_id",
                        ignore_duplicates=True,
                    )
                    .execute()
                )

            self._connection.execute(_record_event, operation_name="record_webhook_event")
            logger.info(f"Recorded processed webhook event: {event_id} ({event_type})")
            return True

        except Exception as e:
            _maybe_log_missing_table_hint(e)
            logger.error(f"Error recording processed event {event_id}: {e}", exc_info=True)
            return False

    def cleanup(self, days: int = 90) -> int:
        """
        Delete ledger entries older than ``days``.

        Stripe stops redelivering after three days, so old ids are dead weight.

        Returns:
            Number of events deleted
        """
        cutoff = (self._clock() - timedelta(days=days)).isoformat()

        def _cleanup_events(client):
            return client.table(TABLE).delete().lt("processed_at", cutoff).execute()

        try:
            result = self._connection.execute(_cleanup_events, operation_name="cleanup_webhook_events")
        except Exception as e:
            _maybe_log_missing_table_hint(e)
            logger.error(f"Error cleaning up old events: {e}", exc_info=True)
            return 0

        count = len(result.data) if result.data else 0
        logger.info(f"Cleaned up {count} old webhook events (older than {days} days)")
        return count
