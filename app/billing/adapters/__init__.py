"""
External service adapters for billing.

Usage:
    from billing.adapters import StripeAdapter, CreateCheckoutSessionParams
"""

from billing.adapters.stripe_adapter import (
    CheckoutSessionResult,
    CreateCheckoutSessionParams,
    CustomerResult,
    IdempotencyKeyGenerator,
    PortalSessionResult,
    StripeAdapter,
    SubscriptionSnapshot,
    backoff_delay,
    call_with_retry,
    expandable_id,
    is_retryable_stripe_error,
)

__all__ = [
    "CheckoutSessionResult",
    "CreateCheckoutSessionParams",
    "CustomerResult",
    "IdempotencyKeyGenerator",
    "PortalSessionResult",
    "StripeAdapter",
    "SubscriptionSnapshot",
    "backoff_delay",
    "call_with_retry",
    "expandable_id",
    "is_retryable_stripe_error",
]
