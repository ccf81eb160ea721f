"""
Reconciliation Sweep and drift audit.

The sweep is the only path that turns an expired grace period into revoked
access. The audit compares stored records against Stripe and reports (or
repairs) drift left behind by missed webhooks and legacy data.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from dream_billing.schemas.billing import (
    AuditIssue,
    AuditReport,
    SubscriptionRecord,
    SubscriptionStatus,
    SweepReport,
)
from dream_billing.services.stripe_adapter import StripeBillingAdapter
from dream_billing.services.subscription_state import (
    ACTIVE_PROVIDER_STATUSES,
    Observation,
    Outcome,
    SubscriptionStateMachine,
    plan_observation,
)
from dream_billing.utils.exceptions import ProviderError, ProviderNotFoundError
from dream_billing.utils.sentry_context import capture_billing_error

logger = logging.getLogger(__name__)

SWEEP_PAGE_SIZE = 500
AUDIT_PAGE_SIZE = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconciliationService:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        adapter: StripeBillingAdapter,
        clock: Callable[[], datetime] = _utcnow,
        sweep_page_size: int = SWEEP_PAGE_SIZE,
        audit_page_size: int = AUDIT_PAGE_SIZE,
    ):
        self.state_machine = state_machine
        self.store = state_machine.store
        self.adapter = adapter
        self._clock = clock
        self.sweep_page_size = sweep_page_size
        self.audit_page_size = audit_page_size

    # ==================== Sweep ====================

    def run_sweep(self) -> SweepReport:
        """
        Cancel every record whose paid-through period has ended.

        Each update is conditional on the version read here, so a renewal that
        lands mid-sweep wins and the record is counted as skipped. A failing
        record is logged and counted; the batch carries on.
        """
        now = self._clock()
        candidates = self._collect_pages(
            lambda offset: self.store.list_expired_cancellations(now, limit=self.sweep_page_size, offset=offset),
            self.sweep_page_size,
        )
        report = SweepReport(examined=len(candidates))

        for record in candidates:
            try:
                written = self.state_machine.expire(record, now)
            except Exception as e:
                report.failed += 1
                logger.error(
                    f"Sweep failed to cancel subscription record {record.user_id} "
                    f"(subscription {record.subscription_id}): {e}",
                    exc_info=True,
                )
                capture_billing_error(
                    e,
                    operation="sweep",
                    user_id=record.user_id,
                    details={"subscription_id": record.subscription_id},
                )
                continue

            if written is None:
                report.skipped += 1
                logger.debug(f"Sweep skipped user {record.user_id}: record changed since read")
            else:
                report.transitioned += 1
                logger.info(
                    f"Sweep canceled subscription {record.subscription_id} for user "
                    f"{record.user_id} (period ended {record.current_period_end.isoformat()})"
                )

        logger.info(
            f"Subscription sweep finished: examined={report.examined} "
            f"transitioned={report.transitioned} skipped={report.skipped} failed={report.failed}"
        )
        return report

    @staticmethod
    def _collect_pages(
        fetch_page: Callable[[int], list[SubscriptionRecord]], page_size: int
    ) -> list[SubscriptionRecord]:
        """Read every page before any write; sweep updates remove rows from the filtered set."""
        records: list[SubscriptionRecord] = []
        while True:
            page = fetch_page(len(records))
            records.extend(page)
            if len(page) < page_size:
                return records

    # ==================== Audit ====================

    def audit(self, *, fix: bool = False, simulate: bool = False, user_id: str | None = None) -> AuditReport:
        """
        Compare stored records with Stripe.

        Args:
            fix: Apply repairs
            simulate: Log the repairs that would be applied without writing (wins over fix)
            user_id: Restrict the audit to one user

        Returns:
            AuditReport listing every issue found and what was done about it
        """
        mode = "simulate" if simulate else ("fix" if fix else "report")
        report = AuditReport(mode=mode)
        records = self._collect_pages(
            lambda offset: self.store.list_records(user_id=user_id, limit=self.audit_page_size, offset=offset),
            self.audit_page_size,
        )
        report.examined = len(records)
        logger.info(f"Auditing {len(records)} subscription records (mode={mode})")

        for record in records:
            try:
                self._audit_record(record, mode, report)
            except ProviderError as e:
                report.failed += 1
                logger.error(f"Audit could not check user {record.user_id}: {e}")
            except Exception as e:
                report.failed += 1
                logger.error(f"Audit failed for user {record.user_id}: {e}", exc_info=True)
                capture_billing_error(e, operation="audit", user_id=record.user_id)

        report.fixed = sum(1 for issue in report.issues if issue.applied)
        logger.info(
            f"Audit finished: {len(report.issues)} issues, {report.fixed} fixed, {report.failed} failed"
        )
        if report.issues and mode == "report":
            logger.info("Run with fix enabled to repair these issues")
        return report

    def _audit_record(self, record: SubscriptionRecord, mode: str, report: AuditReport) -> None:
        if not record.stripe_customer_id and (record.is_paid or record.subscription_id):
            logger.warning(f"User {record.user_id} has no Stripe customer ID")
            report.issues.append(
                AuditIssue(
                    user_id=record.user_id,
                    issue="missing_customer_id",
                    detail=f"status={record.status.value} without a customer id",
                )
            )

        if record.subscription_id:
            self._audit_subscription(record, mode, report)
        elif record.is_paid:
            self._audit_missing_subscription(record, mode, report)

    def _audit_subscription(self, record: SubscriptionRecord, mode: str, report: AuditReport) -> None:
        observed_at = self._clock()
        try:
            subscription = self.adapter.retrieve_subscription(record.subscription_id)
        except ProviderNotFoundError:
            issue = AuditIssue(
                user_id=record.user_id,
                issue="invalid_subscription_id",
                detail=f"subscription {record.subscription_id} does not exist in Stripe",
                action="revoke: status canceled, clear subscription id",
            )
            logger.warning(f"User {record.user_id} has invalid subscription_id {record.subscription_id}")
            if self._should_write(mode, issue):
                issue.applied = (
                    self.state_machine.revoke(
                        record.user_id,
                        SubscriptionStatus.CANCELED,
                        observed_at,
                        expected_subscription_id=record.subscription_id,
                    )
                    is not None
                )
            report.issues.append(issue)
            return

        observation = Observation.from_subscription(subscription, observed_at, "audit")
        outcome, candidate = plan_observation(record, observation, self._clock())
        if outcome != Outcome.APPLIED or candidate is None:
            return

        issue = AuditIssue(
            user_id=record.user_id,
            issue="provider_status_mismatch",
            detail=(
                f"Stripe status {subscription.status} (cancel_at_period_end="
                f"{subscription.cancel_at_period_end}) but stored {record.status.value} "
                f"(cancel_at_period_end={record.cancel_at_period_end})"
            ),
            action=f"set status {candidate.status.value}",
        )
        logger.warning(f"User {record.user_id}: {issue.detail}")
        if self._should_write(mode, issue):
            issue.applied = self.state_machine.apply_observation(record.user_id, observation).applied
        report.issues.append(issue)

    def _audit_missing_subscription(self, record: SubscriptionRecord, mode: str, report: AuditReport) -> None:
        observed_at = self._clock()
        candidates = []
        if record.stripe_customer_id:
            candidates = self.adapter.list_customer_subscriptions(record.stripe_customer_id)
        latest = candidates[0] if candidates else None

        if latest is not None and (
            latest.status in ACTIVE_PROVIDER_STATUSES or latest.status in {"past_due", "canceled"}
        ):
            issue = AuditIssue(
                user_id=record.user_id,
                issue="active_without_subscription_id",
                detail=f"status={record.status.value} without subscription id; Stripe has {latest.id} ({latest.status})",
                action=f"recover subscription {latest.id}",
            )
            logger.warning(f"User {record.user_id}: {issue.detail}")
            if self._should_write(mode, issue):
                observation = Observation.from_subscription(latest, observed_at, "audit")
                issue.applied = self.state_machine.apply_observation(record.user_id, observation).applied
        else:
            issue = AuditIssue(
                user_id=record.user_id,
                issue="active_without_subscription_id",
                detail=f"status={record.status.value} without subscription id; nothing in Stripe backs it",
                action="revoke: status inactive",
            )
            logger.warning(f"User {record.user_id}: {issue.detail}")
            if self._should_write(mode, issue):
                issue.applied = (
                    self.state_machine.revoke(record.user_id, SubscriptionStatus.INACTIVE, observed_at)
                    is not None
                )
        report.issues.append(issue)

    @staticmethod
    def _should_write(mode: str, issue: AuditIssue) -> bool:
        if mode == "simulate":
            logger.info(f"[SIMULATE] Would {issue.action} for user {issue.user_id}")
            return False
        return mode == "fix"
