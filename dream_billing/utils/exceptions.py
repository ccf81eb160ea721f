"""
Billing error taxonomy and HTTP exception factories.

Provider failures are classified once, at the adapter boundary, so callers
decide on retry vs. definitive answers without inspecting Stripe types:

- ProviderNotFoundError: the referenced object does not exist (definitive)
- ProviderTransientError: network, rate limiting, provider 5xx (retryable)
- ProviderError: everything else (authentication, permission): fatal

Usage:
    from dream_billing.utils.exceptions import APIExceptions

    raise APIExceptions.bad_request("Unknown plan: yearly")
"""

import logging
from typing import Any

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing subsystem errors."""


class ProviderError(BillingError):
    """Billing provider call failed and should not be retried."""

    def __init__(self, message: str, *, code: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class ProviderNotFoundError(ProviderError):
    """Referenced provider object does not exist or the reference is invalid."""


class ProviderTransientError(ProviderError):
    """Network failure, rate limiting or provider-side 5xx."""


class WebhookSignatureError(BillingError):
    """Webhook payload failed signature verification."""


class InvariantViolation(BillingError):
    """A candidate subscription record breaks a record invariant."""

    def __init__(self, user_id: str, rule: str, message: str):
        super().__init__(f"{rule} violated for user {user_id}: {message}")
        self.user_id = user_id
        self.rule = rule


class StoreError(BillingError):
    """Subscription store could not complete an operation."""


class APIExceptions:
    """Factory class for creating standardized HTTP exceptions."""

    @staticmethod
    def invalid_admin_key() -> HTTPException:
        return HTTPException(status_code=401, detail="Invalid admin API key")

    @staticmethod
    def not_found(resource: str = "Resource", resource_id: Any | None = None) -> HTTPException:
        """
        404 Not Found - Resource doesn't exist.

        Args:
            resource: Type of resource (e.g., "Subscription", "Customer")
            resource_id: Optional ID of the resource

        Returns:
            HTTPException with status 404
        """
        detail = f"{resource} not found"
        if resource_id is not None:
            detail += f": {resource_id}"
        return HTTPException(status_code=404, detail=detail)

    @staticmethod
    def bad_request(
        detail: str = "Bad request", errors: dict[str, Any] | None = None
    ) -> HTTPException:
        """
        400 Bad Request - Invalid request data.

        Args:
            detail: Error message
            errors: Optional validation errors dict

        Returns:
            HTTPException with status 400
        """
        if errors:
            return HTTPException(status_code=400, detail={"message": detail, "errors": errors})
        return HTTPException(status_code=400, detail=detail)

    @staticmethod
    def invalid_signature() -> HTTPException:
        """400 Bad Request - Webhook signature verification failed."""
        return HTTPException(status_code=400, detail="Invalid webhook signature")

    @staticmethod
    def internal_error(
        operation: str = "operation", error: Exception | None = None, include_details: bool = False
    ) -> HTTPException:
        """
        500 Internal Server Error - Server-side error.

        Args:
            operation: Name of the operation that failed
            error: Optional exception that caused the error
            include_details: Whether to include error details (dev mode only)
        """
        detail = f"Internal error during {operation}"

        if error and include_details:
            detail += f": {str(error)}"

        if error:
            logger.error(f"Internal error in {operation}: {error}", exc_info=True)

        return HTTPException(status_code=500, detail=detail)

    @staticmethod
    def provider_error(operation: str, error: Exception | None = None) -> HTTPException:
        """502 Bad Gateway - The billing provider rejected the call."""
        if error:
            logger.error(f"Billing provider error during {operation}: {error}")
        return HTTPException(status_code=502, detail=f"Billing provider error during {operation}")

    @staticmethod
    def service_unavailable(
        service: str = "service", retry_after: int | None = None, hint: str | None = None
    ) -> HTTPException:
        """
        503 Service Unavailable - Service temporarily unavailable.

        Args:
            service: Name of the unavailable service
            retry_after: Optional seconds to wait before retry
            hint: Optional machine-readable hint for the client (e.g. "confirming")
        """
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        detail: Any = f"{service} is temporarily unavailable"
        if hint:
            detail = {"message": detail, "hint": hint}
        return HTTPException(status_code=503, detail=detail, headers=headers)
