"""
Sentry error context utilities.

Helpers that attach structured billing context to errors captured by Sentry.
All helpers are no-ops when the SDK has not been initialised (sentry_sdk
drops events without a client).
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Type of context for the error
        context_data: Additional context information
        tags: Dictionary of tags for filtering

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_billing_error(
    exception: Exception,
    operation: str,
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a billing-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Billing operation (e.g., 'verify_checkout', 'webhook', 'sweep')
        user_id: User ID if applicable
        details: Additional details (customer ID, subscription ID, event ID, ...)
    """
    context_data: dict[str, Any] = {"operation": operation, "provider": "stripe"}
    if user_id:
        context_data["user_id"] = user_id
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="billing",
        context_data=context_data,
        tags={"operation": operation, "provider": "stripe"},
    )
