"""
Billing-specific exceptions.

Every exception carries an HTTP status and a ``kind`` through
core.exceptions, so views render them as ``{kind, message}`` without
per-view mapping.

Exception Hierarchy:
    BillingError (base for billing domain)
    ItemNotFound - Unknown or inactive catalog item (404)
    ItemNotPurchasable - Item cannot be bought (400)
    PaymentNotFound - No payment record for a session reference (404)
    PaymentAccessDenied - Session or subscription belongs to another user (403)
    SubscriptionNotFound - Unknown subscription id (404)
    SubscriptionNotActive - Subscription already ended at Stripe (409)
    BillingAccountNotFound - No Stripe customer for the user (404)
    AlreadyOwned - Payer already has access to the item (409)
    InvalidRefundTarget - Refund signal for a payment that never settled (409)
    InvalidStateTransitionError - FSM transition not allowed (409)
    SignatureInvalid - Webhook authentication failure (400)
    ProcessorUnavailable - Stripe still failing after bounded retry (503)
    StripeError - Base for translated Stripe SDK errors
        ├── StripeInvalidRequestError - Invalid request params (permanent)
        ├── StripeAuthenticationError - Bad API key (permanent)
        ├── StripeRateLimitError - Rate limited (transient, retry)
        ├── StripeAPIUnavailableError - API unavailable (transient, retry)
        └── StripeTimeoutError - Request timeout (transient, retry)

Usage:
    from billing.exceptions import AlreadyOwned, ProcessorUnavailable

    if EntitlementGrantor.has_access(payer, item_kind, item_id):
        raise AlreadyOwned(
            "You already have access to this item",
            details={"item_kind": item_kind, "item_id": item_id},
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Billing Domain Exceptions
# =============================================================================


class BillingError(BaseApplicationError):
    """Base exception for billing operations that fit no narrower class."""

    default_error_code: str = "BILLING_ERROR"
    kind: str = "BillingError"


class ItemNotFound(NotFoundError):
    """
    Raised when the purchased item does not exist or is no longer sold.

    Example:
        raise ItemNotFound(
            f"Course {item_id} not found",
            details={"item_kind": "course", "item_id": item_id},
        )
    """

    default_error_code: str = "ITEM_NOT_FOUND"
    kind: str = "ItemNotFound"


class ItemNotPurchasable(ValidationError):
    """Raised when an item exists but cannot be bought (free, unpriced)."""

    default_error_code: str = "ITEM_NOT_PURCHASABLE"
    kind: str = "Validation"


class PaymentNotFound(NotFoundError):
    """Raised when a verify call references a session we never created."""

    default_error_code: str = "PAYMENT_NOT_FOUND"
    kind: str = "PaymentNotFound"


class PaymentAccessDenied(PermissionDeniedError):
    """Raised when a user acts on someone else's checkout or subscription."""

    default_error_code: str = "PAYMENT_ACCESS_DENIED"
    kind: str = "PermissionDenied"


class SubscriptionNotFound(NotFoundError):
    """Raised when a subscription id does not match any local record."""

    default_error_code: str = "SUBSCRIPTION_NOT_FOUND"
    kind: str = "SubscriptionNotFound"


class SubscriptionNotActive(ConflictError):
    """Raised when changing a subscription Stripe has already ended."""

    default_error_code: str = "SUBSCRIPTION_NOT_ACTIVE"
    kind: str = "SubscriptionNotActive"


class BillingAccountNotFound(NotFoundError):
    """Raised when the user has never checked out, so Stripe has no customer."""

    default_error_code: str = "BILLING_ACCOUNT_NOT_FOUND"
    kind: str = "BillingAccountNotFound"


class AlreadyOwned(ConflictError):
    """
    Raised when the payer already has access to the item.

    This is a fast pre-check at checkout time. Duplicate grants are
    prevented by the settlement transition, not by this error.
    """

    default_error_code: str = "ALREADY_OWNED"
    kind: str = "AlreadyOwned"


class InvalidRefundTarget(ConflictError):
    """
    Raised when a refund or chargeback references a payment that is not
    completed.

    On the webhook path this fails the stored event, so the retry sweep
    picks it up again once the completion has been applied.
    """

    default_error_code: str = "INVALID_REFUND_TARGET"
    kind: str = "InvalidRefundTarget"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed in the standard error format.
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"
    kind: str = "Conflict"


class SignatureInvalid(ValidationError):
    """
    Raised when a webhook payload fails signature or timestamp checks.

    Never retried: the request is rejected with no side effects.
    """

    default_error_code: str = "SIGNATURE_INVALID"
    kind: str = "SignatureInvalid"


class ProcessorUnavailable(ExternalServiceError):
    """Raised once bounded retries against Stripe are exhausted."""

    default_error_code: str = "PROCESSOR_UNAVAILABLE"
    kind: str = "ProcessorUnavailable"


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(ExternalServiceError):
    """
    Base exception for all Stripe-related errors.

    Provides common attributes for Stripe error handling:
    - stripe_code: Stripe's internal error code
    - is_retryable: Whether the operation can be retried

    Use is_retryable to determine retry behavior:
    - True: Transient error, safe to retry with backoff and the same
      idempotency key
    - False: Permanent error, do not retry
    """

    default_error_code: str = "STRIPE_ERROR"
    kind: str = "ProcessorError"
    status_code: int = 502
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class StripeInvalidRequestError(StripeError):
    """
    Invalid request parameters sent to Stripe, or an unknown object id.

    This usually indicates a bug in our code, not a user error.
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"
    is_retryable: bool = False


class StripeAuthenticationError(StripeError):
    """Stripe rejected the API key. Operational issue, never retried."""

    default_error_code: str = "STRIPE_AUTHENTICATION_FAILED"
    is_retryable: bool = False


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(StripeError):
    """Rate limited by Stripe API."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """
    Stripe API is temporarily unavailable.

    This covers network connectivity issues and Stripe server errors (5xx).
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True


class StripeTimeoutError(StripeError):
    """
    Stripe API call timed out.

    The operation may have succeeded on Stripe's side. Retrying with the
    same idempotency key returns the original response if it did.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Billing domain
    "BillingError",
    "ItemNotFound",
    "ItemNotPurchasable",
    "PaymentNotFound",
    "PaymentAccessDenied",
    "AlreadyOwned",
    "InvalidRefundTarget",
    "InvalidStateTransitionError",
    "SignatureInvalid",
    "ProcessorUnavailable",
    # Stripe-specific
    "StripeError",
    "StripeInvalidRequestError",
    "StripeAuthenticationError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
]
