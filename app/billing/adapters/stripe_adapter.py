"""
Stripe API adapter for billing operations.

This module provides the StripeAdapter class which encapsulates all
Stripe API interactions. All Stripe calls should go through this
adapter to ensure consistent error handling, timeouts, idempotency,
and observability.

Features:
- Configurable timeouts on all API calls
- Automatic error translation to domain exceptions
- Structured logging with timing metrics
- Idempotency support for safe retries
- Bounded retry with exponential backoff (call_with_retry)

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_WEBHOOK_TOLERANCE_SECONDS: Max age of a signed webhook (default: 300)
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: Attempts per logical call (default: 3)

Usage:
    from billing.adapters import StripeAdapter, call_with_retry

    session = call_with_retry(
        StripeAdapter.retrieve_checkout_session,
        "cs_test_123",
        operation="retrieve_checkout_session",
    )
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from billing.exceptions import (
    ProcessorUnavailable,
    SignatureInvalid,
    StripeAPIUnavailableError,
    StripeAuthenticationError,
    StripeError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


# =============================================================================
# Payload Helpers
# =============================================================================


def expandable_id(value: Any) -> str | None:
    """Return the id of a Stripe field that may be expanded or a bare id."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class CreateCheckoutSessionParams:
    """
    Parameters for creating a Stripe Checkout Session.

    Attributes:
        mode: 'payment' for one-time purchases, 'subscription' for recurring
        line_items: Stripe line items (price id or inline price_data)
        success_url: Redirect after payment; must contain {CHECKOUT_SESSION_ID}
        cancel_url: Redirect when the payer backs out
        idempotency_key: Key reused across retries of the same checkout
        client_reference_id: Our attempt id (PaymentRecord.id)
        customer_id: Stripe Customer ID
        metadata: Attached to the session
        subscription_metadata: Attached to the created subscription
    """

    mode: str
    line_items: list[dict[str, Any]]
    success_url: str
    cancel_url: str
    idempotency_key: str
    client_reference_id: str | None = None
    customer_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    subscription_metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate parameters after initialization."""
        if self.mode not in ("payment", "subscription"):
            raise ValueError("mode must be 'payment' or 'subscription'")
        if not self.line_items:
            raise ValueError("line_items must not be empty")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")

    def to_stripe_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "mode": self.mode,
            "line_items": self.line_items,
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "metadata": self.metadata,
        }
        if self.client_reference_id:
            kwargs["client_reference_id"] = self.client_reference_id
        if self.customer_id:
            kwargs["customer"] = self.customer_id
        if self.mode == "subscription" and self.subscription_metadata:
            kwargs["subscription_data"] = {"metadata": self.subscription_metadata}
        return kwargs


@dataclass
class CheckoutSessionResult:
    """
    A Stripe Checkout Session, from the API or a webhook payload.

    Attributes:
        id: Checkout Session ID (cs_xxx)
        status: open, complete or expired
        payment_status: paid, unpaid or no_payment_required
        url: Hosted checkout URL (only while open)
        payment_intent_id/subscription_id/invoice_id/customer_id: Linked objects
        raw_response: Full Stripe response dict (for debugging)
    """

    id: str
    status: str | None
    payment_status: str | None
    mode: str | None = None
    url: str | None = None
    payment_intent_id: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    customer_id: str | None = None
    client_reference_id: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> CheckoutSessionResult:
        return cls(
            id=data["id"],
            status=data.get("status"),
            payment_status=data.get("payment_status"),
            mode=data.get("mode"),
            url=data.get("url"),
            payment_intent_id=expandable_id(data.get("payment_intent")),
            subscription_id=expandable_id(data.get("subscription")),
            invoice_id=expandable_id(data.get("invoice")),
            customer_id=expandable_id(data.get("customer")),
            client_reference_id=data.get("client_reference_id"),
            amount_total=data.get("amount_total"),
            currency=data.get("currency"),
            metadata=dict(data.get("metadata") or {}),
            raw_response=data,
        )

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"


@dataclass
class SubscriptionSnapshot:
    """
    Authoritative state of a Stripe Subscription.

    Attributes:
        id: Subscription ID (sub_xxx)
        status: Stripe status (active, past_due, canceled, ...)
        current_period_start/end: Current billing period
        cancel_at_period_end: Whether cancellation is scheduled
        metadata: Subscription metadata (carries our item reference)
    """

    id: str
    status: str
    customer_id: str | None = None
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> SubscriptionSnapshot:
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}
        # Newer API versions report the period on the subscription item
        period_start = data.get("current_period_start") or first_item.get(
            "current_period_start"
        )
        period_end = data.get("current_period_end") or first_item.get(
            "current_period_end"
        )
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            customer_id=expandable_id(data.get("customer")),
            price_id=expandable_id(price) if price else None,
            current_period_start=_timestamp(period_start),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=_timestamp(data.get("canceled_at")),
            metadata=dict(data.get("metadata") or {}),
            raw_response=data,
        )


@dataclass
class CustomerResult:
    """Result from Stripe Customer operations."""

    id: str
    email: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class PortalSessionResult:
    """A Stripe Billing Portal session; ``url`` is single use and short lived."""

    id: str
    url: str
    customer_id: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Key Generation
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for Stripe API calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The attempt number identifies a logical operation, not a network try:
    every retry of the same checkout creation reuses attempt 1, so Stripe
    returns the original session instead of opening a second one.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="create_checkout_session",
            entity_id=payment_record.id,
        )
        # Result: "create_checkout_session:550e8400-...:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_stripe_error(error: Exception) -> bool:
    """
    Check if a Stripe error is retryable.

    Returns:
        True if the error is a transient Stripe error that can be retried
    """
    if isinstance(error, StripeError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Jitter prevents thundering herd when multiple workers retry simultaneously.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 1: 2.0 - 2.5 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    operation: str,
    max_attempts: int | None = None,
    **kwargs: Any,
) -> Any:
    """
    Call a StripeAdapter operation with bounded retry.

    Transient Stripe errors are retried with backoff_delay() up to
    STRIPE_MAX_RETRIES attempts. Permanent errors propagate immediately.
    Callers pass the same idempotency key on every attempt (it is part of
    ``args``/``kwargs``), so a retry after a lost response is safe.

    Raises:
        ProcessorUnavailable: Transient errors persisted through every attempt
        StripeError: A permanent Stripe error
    """
    attempts = max_attempts or settings.STRIPE_MAX_RETRIES
    last_error: StripeError | None = None

    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except StripeError as e:
            if not is_retryable_stripe_error(e):
                raise
            last_error = e
            if attempt + 1 >= attempts:
                break
            delay = backoff_delay(
                attempt,
                base=settings.STRIPE_RETRY_BASE_DELAY_SECONDS,
                max_delay=settings.STRIPE_RETRY_MAX_DELAY_SECONDS,
            )
            logger.warning(
                "Retrying Stripe operation",
                extra={
                    "operation": operation,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_seconds": round(delay, 3),
                    "error_code": e.error_code,
                },
            )
            time.sleep(delay)

    logger.error(
        "Stripe operation failed after retries",
        extra={"operation": operation, "max_attempts": attempts},
    )
    raise ProcessorUnavailable(
        "Payment processor is temporarily unavailable. Please try again.",
        details={
            "operation": operation,
            "attempts": attempts,
            "last_error": last_error.error_code if last_error else None,
        },
    ) from last_error


# =============================================================================
# Stripe Adapter
# =============================================================================


class StripeAdapter:
    """
    Adapter for Stripe API operations.

    All methods are class methods - no instance state is maintained.
    Thread-safe for use from Celery workers.

    Usage:
        result = StripeAdapter.create_checkout_session(params)
        session = StripeAdapter.retrieve_checkout_session("cs_xxx")
        snapshot = StripeAdapter.update_subscription("sub_xxx", cancel_at_period_end=True, idempotency_key=key)
        event = StripeAdapter.verify_webhook_signature(body, header)
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key and timeout."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Customers
    # =========================================================================

    @classmethod
    def create_customer(
        cls,
        email: str | None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> CustomerResult:
        """
        Create a Stripe Customer.

        Raises:
            StripeInvalidRequestError: Invalid parameters
            StripeAPIUnavailableError: Stripe service unavailable
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "create_customer",
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            customer = stripe.Customer.create(
                email=email or None,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "customer_id": customer.id,
                    "duration_ms": duration_ms,
                },
            )

            return CustomerResult(
                id=customer.id,
                email=customer.get("email"),
                raw_response=customer.to_dict(),
            )

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise  # Never reached, but satisfies type checker

    # =========================================================================
    # Checkout Sessions
    # =========================================================================

    @classmethod
    def create_checkout_session(
        cls,
        params: CreateCheckoutSessionParams,
    ) -> CheckoutSessionResult:
        """
        Create a Stripe Checkout Session.

        Returns:
            CheckoutSessionResult including the hosted checkout URL

        Raises:
            StripeInvalidRequestError: Invalid parameters
            StripeRateLimitError: Rate limited
            StripeAPIUnavailableError: Stripe service unavailable
            StripeTimeoutError: Request timed out
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "create_checkout_session",
            "mode": params.mode,
            "client_reference_id": params.client_reference_id,
            "idempotency_key": params.idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            session = stripe.checkout.Session.create(
                **params.to_stripe_kwargs(),
                idempotency_key=params.idempotency_key,
            )

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "session_id": session.id,
                    "duration_ms": duration_ms,
                },
            )

            return CheckoutSessionResult.from_payload(session.to_dict())

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    @classmethod
    def retrieve_checkout_session(cls, session_id: str) -> CheckoutSessionResult:
        """
        Retrieve a Checkout Session by ID.

        Raises:
            StripeInvalidRequestError: Session not found
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "retrieve_checkout_session",
            "session_id": session_id,
        }

        start_time = time.time()
        logger.debug("Starting Stripe operation", extra=log_context)

        try:
            session = stripe.checkout.Session.retrieve(session_id)

            duration_ms = (time.time() - start_time) * 1000
            logger.debug(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "status": session.status,
                    "payment_status": session.payment_status,
                    "duration_ms": duration_ms,
                },
            )

            return CheckoutSessionResult.from_payload(session.to_dict())

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @classmethod
    def retrieve_subscription(cls, subscription_id: str) -> SubscriptionSnapshot:
        """
        Retrieve a Subscription by ID.

        Raises:
            StripeInvalidRequestError: Subscription not found
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "retrieve_subscription",
            "subscription_id": subscription_id,
        }

        start_time = time.time()
        logger.debug("Starting Stripe operation", extra=log_context)

        try:
            subscription = stripe.Subscription.retrieve(subscription_id)

            duration_ms = (time.time() - start_time) * 1000
            logger.debug(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "status": subscription.status,
                    "duration_ms": duration_ms,
                },
            )

            return SubscriptionSnapshot.from_payload(subscription.to_dict())

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    @classmethod
    def update_subscription(
        cls,
        subscription_id: str,
        *,
        cancel_at_period_end: bool,
        idempotency_key: str,
    ) -> SubscriptionSnapshot:
        """
        Schedule or withdraw cancellation at the end of the current period.

        Returns:
            SubscriptionSnapshot of the subscription after the update

        Raises:
            StripeInvalidRequestError: Subscription not found or already canceled
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "update_subscription",
            "subscription_id": subscription_id,
            "cancel_at_period_end": cancel_at_period_end,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=cancel_at_period_end,
                idempotency_key=idempotency_key,
            )

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "status": subscription.status,
                    "duration_ms": duration_ms,
                },
            )

            return SubscriptionSnapshot.from_payload(subscription.to_dict())

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    # =========================================================================
    # Billing Portal
    # =========================================================================

    @classmethod
    def create_billing_portal_session(
        cls,
        customer_id: str,
        return_url: str,
        idempotency_key: str,
    ) -> PortalSessionResult:
        """
        Create a Billing Portal session where the customer manages payment
        methods, invoices and subscriptions.

        Raises:
            StripeInvalidRequestError: Unknown customer or portal not configured
        """
        cls._configure_stripe()
        logger = cls.get_logger()

        log_context = {
            "operation": "create_billing_portal_session",
            "customer_id": customer_id,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
                idempotency_key=idempotency_key,
            )

            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                "Stripe operation completed",
                extra={
                    **log_context,
                    "portal_session_id": session.id,
                    "duration_ms": duration_ms,
                },
            )

            return PortalSessionResult(
                id=session.id,
                url=session.url,
                customer_id=expandable_id(session.get("customer")),
                raw_response=session.to_dict(),
            )

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            cls._handle_stripe_error(e, log_context, duration_ms)
            raise

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(
        cls,
        payload: bytes,
        signature: str,
    ) -> dict[str, Any]:
        """
        Verify and parse a Stripe webhook event.

        Checks the HMAC signature and rejects payloads whose signed timestamp
        is older than STRIPE_WEBHOOK_TOLERANCE_SECONDS.

        Args:
            payload: Raw webhook payload bytes
            signature: Stripe-Signature header value

        Returns:
            Parsed event data dict

        Raises:
            SignatureInvalid: Bad signature, stale timestamp or unparsable body
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
            event_data = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(
                "Invalid webhook signature",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise SignatureInvalid(
                "Invalid webhook payload",
                details={"error": str(e)},
            ) from e

        if not isinstance(event_data, dict):
            raise SignatureInvalid("Invalid webhook payload")
        return event_data

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to domain exceptions.

        Maps Stripe SDK errors to appropriate domain exceptions
        with proper error categorization for retry decisions.

        Raises:
            StripeInvalidRequestError: Invalid request parameters
            StripeAuthenticationError: Invalid API key
            StripeRateLimitError: Rate limited
            StripeAPIUnavailableError: API unavailable
            StripeTimeoutError: Request timed out
        """
        logger = cls.get_logger()

        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, StripeError):
            raise error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise StripeInvalidRequestError(
                str(error),
                stripe_code=error.code,
            ) from error

        elif isinstance(error, stripe.RateLimitError):
            logger.warning(
                "Rate limited by Stripe",
                extra=log_context,
            )
            raise StripeRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                stripe_code="rate_limit",
            ) from error

        elif isinstance(error, stripe.APIConnectionError):
            logger.error(
                "Connection error to Stripe",
                extra=log_context,
                exc_info=True,
            )
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                raise StripeTimeoutError(
                    "Stripe request timed out. Please retry.",
                    stripe_code="timeout",
                ) from error
            raise StripeAPIUnavailableError(
                "Could not connect to Stripe. Please retry.",
                stripe_code="api_connection_error",
            ) from error

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise StripeAuthenticationError(
                "Stripe authentication failed",
                stripe_code="authentication_error",
            ) from error

        elif isinstance(error, stripe.APIError):
            logger.error(
                "Stripe API error",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                "Stripe service error. Please retry.",
                stripe_code="api_error",
            ) from error

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise StripeAPIUnavailableError(
                f"Unexpected Stripe error: {error}",
                stripe_code="unknown_error",
            ) from error
