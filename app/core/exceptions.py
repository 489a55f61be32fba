"""
Subscription and entitlement exceptions.

Each error carries the HTTP status the API layer should answer with, so
routes can translate them without knowing every subclass.
"""

from typing import Any, Optional


class SubscriptionError(Exception):
    """Base error for the subscription lifecycle and entitlement engine"""

    error_code = "SUBSCRIPTION_ERROR"
    status_code = 400

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class StateTransitionError(SubscriptionError):
    """Illegal status transition. Always a logic/data bug, never retried."""

    error_code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"INVALID_STATE_TRANSITION: {from_status} -> {to_status}",
            context={"from": from_status, "to": to_status},
        )


class ConflictError(SubscriptionError):
    error_code = "CONFLICT"
    status_code = 409


class ForbiddenError(SubscriptionError):
    error_code = "FORBIDDEN"
    status_code = 403


class ExpiredError(SubscriptionError):
    error_code = "EXPIRED"
    status_code = 410


class UnauthenticatedError(SubscriptionError):
    error_code = "UNAUTHENTICATED"
    status_code = 401


class NotFoundError(SubscriptionError):
    error_code = "NOT_FOUND"
    status_code = 404


class ProviderError(SubscriptionError):
    """Payment provider rejected a call"""

    error_code = "PROVIDER_ERROR"
    status_code = 502


class RetryableProviderError(ProviderError):
    """Transient provider failure (network, timeout, 429, 5xx)"""

    error_code = "PROVIDER_UNAVAILABLE"
    status_code = 503
