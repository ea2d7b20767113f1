"""
Webhook event handlers for Stripe events.

This module provides a handler registry and implementations for
processing the Stripe events billing subscribes to. Each handler turns
the event payload into a service call; all idempotency lives in the
services (PaymentRecord compare-and-set, cumulative refund deltas,
ordered subscription snapshots), so replaying any event is harmless.

Usage:
    from billing.webhooks.handlers import dispatch_webhook, register_handler

    @register_handler("custom.event")
    def handle_custom_event(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult

from billing.adapters import CheckoutSessionResult, SubscriptionSnapshot, expandable_id
from billing.exceptions import InvalidRefundTarget
from billing.models import WebhookEvent
from billing.services import (
    ConfirmationReconciler,
    RefundProcessor,
    RefundSignal,
    SubscriptionSynchronizer,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps event type strings to handler functions
WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(*event_types: str) -> Callable:
    """
    Decorator to register a webhook event handler for one or more types.

    Usage:
        @register_handler("checkout.session.completed")
        def handle_checkout_completed(webhook_event: WebhookEvent) -> ServiceResult:
            ...
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        for event_type in event_types:
            WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Dispatch a webhook event to the appropriate handler.

    Unknown event types succeed without doing anything, so Stripe stops
    redelivering them.
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"stripe_event_id": webhook_event.stripe_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )

    return handler(webhook_event)


def _invalid_payload(webhook_event: WebhookEvent, field_name: str) -> ServiceResult:
    logger.error(
        f"{webhook_event.event_type}: Could not extract {field_name}",
        extra={"stripe_event_id": webhook_event.stripe_event_id},
    )
    return ServiceResult.failure(
        f"Could not extract {field_name} from webhook",
        error_code="INVALID_WEBHOOK_PAYLOAD",
    )


# =============================================================================
# Checkout Session Handlers
# =============================================================================


@register_handler(
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)
def handle_checkout_session_completed(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Settle the payment behind a completed Checkout Session.

    checkout.session.completed also fires for delayed payment methods
    before funds arrive (payment_status "unpaid"); the record then stays
    pending until async_payment_succeeded or async_payment_failed.
    """
    data_object = webhook_event.get_object()
    if not data_object.get("id"):
        return _invalid_payload(webhook_event, "session_id")

    session = CheckoutSessionResult.from_payload(data_object)
    logger.info(
        f"Processing {webhook_event.event_type}",
        extra={
            "stripe_event_id": webhook_event.stripe_event_id,
            "session_id": session.id,
            "payment_status": session.payment_status,
        },
    )

    result = ConfirmationReconciler.apply_session(session, source="webhook")
    return ServiceResult.success(result)


@register_handler(
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
)
def handle_checkout_session_failed(webhook_event: WebhookEvent) -> ServiceResult:
    """Fail the payment behind an expired session or a failed async payment."""
    session_id = webhook_event.get_object_id()
    if not session_id:
        return _invalid_payload(webhook_event, "session_id")

    reason = (
        "checkout_session_expired"
        if webhook_event.event_type == "checkout.session.expired"
        else "async_payment_failed"
    )
    result = ConfirmationReconciler.fail_session(session_id, reason, source="webhook")
    return ServiceResult.success(result)


# =============================================================================
# Invoice Handlers
# =============================================================================


@register_handler("invoice.paid")
def handle_invoice_paid(webhook_event: WebhookEvent) -> ServiceResult:
    """Record subscription renewals as completed payments."""
    invoice = webhook_event.get_object()
    if not invoice.get("id"):
        return _invalid_payload(webhook_event, "invoice_id")

    result = ConfirmationReconciler.record_renewal(invoice)
    return ServiceResult.success(result)


# =============================================================================
# Refund and Dispute Handlers
# =============================================================================


def _apply_refund(webhook_event: WebhookEvent, signal: RefundSignal) -> ServiceResult:
    """
    Refunds for a payment that has not completed yet fail the event, so
    the retry sweep replays it once the settlement lands.
    """
    try:
        result = RefundProcessor.apply_refund(signal)
    except InvalidRefundTarget as e:
        logger.warning(
            f"{webhook_event.event_type}: {e.message}",
            extra={"stripe_event_id": webhook_event.stripe_event_id, "details": e.details},
        )
        return ServiceResult.from_exception(e)
    return ServiceResult.success(result)


@register_handler("charge.refunded")
def handle_charge_refunded(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Apply a (possibly partial) refund.

    amount_refunded is cumulative, so the charge id plus that amount
    identifies this refund state.
    """
    charge = webhook_event.get_object()
    charge_id = charge.get("id")
    if not charge_id:
        return _invalid_payload(webhook_event, "charge_id")

    amount_refunded = charge.get("amount_refunded") or 0
    signal = RefundSignal(
        source_reference=f"{charge_id}:{amount_refunded}",
        payment_intent_id=expandable_id(charge.get("payment_intent")),
        invoice_id=expandable_id(charge.get("invoice")),
        refunded_total_cents=amount_refunded,
        reason="refund",
    )

    logger.info(
        "Processing charge.refunded",
        extra={
            "stripe_event_id": webhook_event.stripe_event_id,
            "charge_id": charge_id,
            "amount_refunded": amount_refunded,
        },
    )

    return _apply_refund(webhook_event, signal)


@register_handler("charge.dispute.closed")
def handle_dispute_closed(webhook_event: WebhookEvent) -> ServiceResult:
    """A lost dispute is a chargeback of the whole payment."""
    dispute = webhook_event.get_object()
    dispute_id = dispute.get("id")
    if not dispute_id:
        return _invalid_payload(webhook_event, "dispute_id")

    if dispute.get("status") != "lost":
        logger.info(
            "Dispute closed in merchant's favor",
            extra={"dispute_id": dispute_id, "status": dispute.get("status")},
        )
        return ServiceResult.success(None)

    signal = RefundSignal(
        source_reference=dispute_id,
        payment_intent_id=expandable_id(dispute.get("payment_intent")),
        refunded_total_cents=None,
        reason="chargeback",
    )
    return _apply_refund(webhook_event, signal)


# =============================================================================
# Subscription Handlers
# =============================================================================


@register_handler(
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
def handle_subscription_changed(webhook_event: WebhookEvent) -> ServiceResult:
    """Mirror the subscription state carried by the event."""
    data_object = webhook_event.get_object()
    if not data_object.get("id") or not data_object.get("status"):
        return _invalid_payload(webhook_event, "subscription")

    snapshot = SubscriptionSnapshot.from_payload(data_object)
    result = SubscriptionSynchronizer.apply_processor_state(
        snapshot,
        event_created_at=webhook_event.get_created_at(),
        source="webhook",
    )
    return ServiceResult.success(result)
