"""
Scheduled Subscription Sweep

Background job that periodically runs the reconciliation sweep (expired
cancellations become canceled) and prunes old webhook ledger rows.

Features:
- APScheduler-based job scheduling
- Configurable sweep interval
- Overlapping runs prevented
- Health monitoring integration
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dream_billing.config.config import Config
from dream_billing.db.webhook_events import WebhookEventLedger
from dream_billing.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_RETENTION_DAYS = 90

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None

# Track last sweep status for health monitoring
_last_sweep_status: dict[str, Any] = {
    "last_run_time": None,
    "last_success_time": None,
    "last_error": None,
    "total_runs": 0,
    "successful_runs": 0,
    "failed_runs": 0,
    "last_duration_seconds": None,
    "last_report": None,
}


def reset_sweep_status() -> None:
    _last_sweep_status.update(
        {
            "last_run_time": None,
            "last_success_time": None,
            "last_error": None,
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "last_duration_seconds": None,
            "last_report": None,
        }
    )


async def run_scheduled_sweep(
    reconciliation: ReconciliationService, ledger: WebhookEventLedger | None = None
) -> None:
    """
    Run one sweep pass. Called by APScheduler at the configured interval.

    Per-record failures are handled inside the sweep; anything raised here
    means the pass as a whole failed and is recorded for /health.
    """
    start_time = datetime.now(UTC)
    _last_sweep_status["last_run_time"] = start_time
    _last_sweep_status["total_runs"] += 1

    logger.info("Starting scheduled subscription sweep")

    try:
        report = await asyncio.to_thread(reconciliation.run_sweep)
        if ledger is not None:
            removed = await asyncio.to_thread(ledger.cleanup, WEBHOOK_EVENT_RETENTION_DAYS)
            if removed:
                logger.info(f"Pruned {removed} webhook ledger rows older than {WEBHOOK_EVENT_RETENTION_DAYS} days")

        end_time = datetime.now(UTC)
        duration = (end_time - start_time).total_seconds()

        _last_sweep_status["successful_runs"] += 1
        _last_sweep_status["last_success_time"] = end_time
        _last_sweep_status["last_error"] = None
        _last_sweep_status["last_duration_seconds"] = duration
        _last_sweep_status["last_report"] = report.model_dump()

        logger.info(
            f"Scheduled sweep finished in {duration:.2f}s "
            f"(transitioned {report.transitioned}, failed {report.failed})"
        )

    except Exception as e:
        duration = (datetime.now(UTC) - start_time).total_seconds()
        _last_sweep_status["failed_runs"] += 1
        _last_sweep_status["last_error"] = str(e)
        _last_sweep_status["last_duration_seconds"] = duration
        logger.exception(f"Scheduled subscription sweep failed after {duration:.2f}s: {e}")


def start_scheduler(reconciliation: ReconciliationService, ledger: WebhookEventLedger | None = None) -> None:
    """
    Start the APScheduler for the subscription sweep.

    Called during application startup (in app lifespan).
    Only starts if ENABLE_SUBSCRIPTION_SWEEP is enabled.
    """
    global _scheduler

    if not Config.ENABLE_SUBSCRIPTION_SWEEP:
        logger.info("Scheduled subscription sweep DISABLED: ENABLE_SUBSCRIPTION_SWEEP=false")
        return

    interval_minutes = Config.SUBSCRIPTION_SWEEP_INTERVAL_MINUTES
    logger.info(f"Starting scheduled subscription sweep (interval: {interval_minutes} minutes)")

    try:
        _scheduler = AsyncIOScheduler()
        _scheduler.add_job(
            run_scheduled_sweep,
            trigger=IntervalTrigger(minutes=interval_minutes),
            args=[reconciliation, ledger],
            id="subscription_sweep",
            name="Subscription Sweep Job",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,  # Combine missed runs
        )
        _scheduler.start()
        logger.info("Scheduled subscription sweep started")

    except Exception as e:
        logger.error(f"Failed to start scheduled subscription sweep: {e}", exc_info=True)
        _scheduler = None


def stop_scheduler() -> None:
    """
    Stop the APScheduler gracefully.

    Called during application shutdown (in app lifespan).
    """
    global _scheduler

    if _scheduler is None:
        return

    logger.info("Stopping scheduled subscription sweep...")

    try:
        _scheduler.shutdown(wait=True)
        logger.info("Scheduled subscription sweep stopped")
    except Exception as e:
        logger.error(f"Error stopping scheduled subscription sweep: {e}")
    finally:
        _scheduler = None


def get_sweep_status() -> dict[str, Any]:
    """
    Get the current status of the scheduled sweep (for health monitoring).

    Returns:
        Dictionary with sweep status metrics
    """
    total_runs = _last_sweep_status["total_runs"]
    successful_runs = _last_sweep_status["successful_runs"]

    last_success = _last_sweep_status["last_success_time"]
    minutes_since_last_sweep = None
    if last_success:
        minutes_since_last_sweep = (datetime.now(UTC) - last_success).total_seconds() / 60

    interval = Config.SUBSCRIPTION_SWEEP_INTERVAL_MINUTES
    is_healthy = True
    health_reason = "Healthy"

    if not Config.ENABLE_SUBSCRIPTION_SWEEP:
        health_reason = "Disabled"
    elif total_runs == 0:
        health_reason = "No sweeps run yet"
    elif minutes_since_last_sweep is None or minutes_since_last_sweep > interval * 2:
        is_healthy = False
        health_reason = f"No successful sweep in the last {interval * 2} minutes"

    last_run = _last_sweep_status["last_run_time"]
    return {
        "is_healthy": is_healthy,
        "health_reason": health_reason,
        "enabled": Config.ENABLE_SUBSCRIPTION_SWEEP,
        "running": _scheduler is not None,
        "interval_minutes": interval,
        "last_run_time": last_run.isoformat() if last_run else None,
        "last_success_time": last_success.isoformat() if last_success else None,
        "minutes_since_last_sweep": (
            round(minutes_since_last_sweep, 1) if minutes_since_last_sweep is not None else None
        ),
        "total_runs": total_runs,
        "successful_runs": successful_runs,
        "failed_runs": _last_sweep_status["failed_runs"],
        "last_error": _last_sweep_status["last_error"],
        "last_duration_seconds": _last_sweep_status["last_duration_seconds"],
        "last_report": _last_sweep_status["last_report"],
    }
