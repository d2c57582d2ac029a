"""
Entitlement error taxonomy.

Validation, conflict and not-found errors are returned to callers for
display. Billing errors are absorbed by the service and degrade the
decision to the local fallback instead of failing the request.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base class for entitlement engine errors."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class ValidationError(EntitlementError):
    """Malformed promo code or missing required field. Never retried."""

    default_user_message = "That promo code is not valid."


class ConflictError(EntitlementError):
    """Promo code already claimed by another party."""

    default_user_message = "This promo code is already taken. Please choose another."


class NotFoundError(EntitlementError):
    """Referenced promo code or account does not exist."""

    default_user_message = "We couldn't find that promo code."


class BillingUnavailableError(EntitlementError):
    """Billing provider timed out, errored, or returned unusable data."""

    default_user_message = "Billing details are temporarily unavailable."


class SyncDriftError(EntitlementError):
    """Advisory drift between local status and billing status.

    Carried on drift reports for the reconciliation job; request paths
    never raise it.
    """

    default_user_message = "Your subscription status is being refreshed."
