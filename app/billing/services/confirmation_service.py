"""
Confirmation reconciler: applies settlement signals to PaymentRecords.

Two paths report that a checkout finished: the payer's redirect back to the
app (verify) and Stripe's webhook. Both end up in settle_record(), which
performs a compare-and-set on the record's status. Exactly one caller wins
the PENDING -> COMPLETED transition; only the winner runs the fan-out
(entitlement, commission, revenue, subscription record) and it does so in
the same transaction as the transition, so a crash leaves either all of it
or none of it.

Losers get an ALREADY_SETTLED result; they never raise.

Usage:
    from billing.services import ConfirmationReconciler

    result = ConfirmationReconciler.verify_session(request.user, session_id)
    result.payment.status  # "completed"
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.utils import timezone
from django_fsm import ConcurrentTransition, can_proceed

from core.services import BaseService

from billing.adapters import (
    CheckoutSessionResult,
    StripeAdapter,
    call_with_retry,
    expandable_id,
)
from billing.exceptions import (
    PaymentAccessDenied,
    PaymentNotFound,
    ProcessorUnavailable,
    StripeError,
)
from billing.models import PaymentRecord, SubscriptionRecord
from billing.services.commission_service import CommissionCalculator
from billing.services.entitlement_service import EntitlementGrantor
from billing.services.revenue_service import RevenueService
from billing.services.subscription_service import SubscriptionSynchronizer
from billing.services.types import SettlementOutcome, SettlementResult, VerifyResult
from billing.state_machines import PaymentStatus

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

SETTLE_COMPLETE = "complete"
SETTLE_FAIL = "fail"

RENEWAL_BILLING_REASONS = frozenset({"subscription_cycle"})


class ConfirmationReconciler(BaseService):
    """
    Settles pending payments from verify, webhook and sweep signals.
    """

    # ==========================================================================
    # Core Settlement
    # ==========================================================================

    @classmethod
    def settle_record(
        cls,
        record: PaymentRecord,
        outcome: str,
        *,
        source: str,
        reason: str | None = None,
        payment_intent_id: str | None = None,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
        customer_id: str | None = None,
    ) -> SettlementResult:
        """
        Apply a terminal outcome to a pending record.

        Args:
            record: Record as loaded by the caller (may already be stale)
            outcome: SETTLE_COMPLETE or SETTLE_FAIL
            source: "verify", "webhook" or "sweep", stored in metadata
            reason: Failure reason for SETTLE_FAIL

        Returns:
            SettlementResult with APPLIED if this call performed the
            transition, ALREADY_SETTLED otherwise
        """
        transition = record.complete if outcome == SETTLE_COMPLETE else record.fail
        log_context = {
            "payment_id": str(record.id),
            "outcome": outcome,
            "source": source,
        }

        if not can_proceed(transition):
            cls.get_logger().info(
                "Settlement skipped: payment already settled",
                extra={**log_context, "status": record.status},
            )
            return SettlementResult(SettlementOutcome.ALREADY_SETTLED, record)

        if outcome == SETTLE_COMPLETE:
            record.complete(
                payment_intent_id=payment_intent_id,
                invoice_id=invoice_id,
                subscription_id=subscription_id,
            )
        else:
            record.fail(reason=reason)
        record.metadata = {**(record.metadata or {}), "settled_via": source}

        try:
            with cls.atomic():
                record.save()
                if outcome == SETTLE_COMPLETE:
                    cls._fan_out(record, customer_id=customer_id)
        except ConcurrentTransition:
            winner = PaymentRecord.objects.get(pk=record.pk)
            cls.get_logger().info(
                "Settlement lost race: payment settled concurrently",
                extra={**log_context, "status": winner.status},
            )
            return SettlementResult(SettlementOutcome.ALREADY_SETTLED, winner)

        cls.get_logger().info(
            "Payment settled",
            extra={**log_context, "status": record.status, "amount_cents": record.amount_cents},
        )
        return SettlementResult(SettlementOutcome.APPLIED, record)

    @classmethod
    def _fan_out(cls, record: PaymentRecord, customer_id: str | None = None) -> None:
        """Side effects of a completed payment; runs inside the winning transaction."""
        if record.is_renewal:
            RevenueService.record_completion(record)
            return

        EntitlementGrantor.grant_for_payment(record)
        CommissionCalculator.credit_for_payment(record)
        RevenueService.record_completion(record)
        if record.processor_subscription_id:
            SubscriptionSynchronizer.register_from_checkout(record, customer_id=customer_id)

    # ==========================================================================
    # Checkout Sessions (verify, webhook, sweep)
    # ==========================================================================

    @classmethod
    def apply_session(
        cls,
        session: CheckoutSessionResult,
        *,
        source: str,
        record: PaymentRecord | None = None,
    ) -> SettlementResult:
        """
        Settle the record behind a Stripe Checkout Session.

        A paid session completes the record, an expired one fails it, and
        anything else leaves it pending.
        """
        if record is None:
            record = PaymentRecord.objects.filter(external_transaction_id=session.id).first()
        if record is None:
            cls.get_logger().warning(
                "Settlement signal for unknown checkout session",
                extra={"session_id": session.id, "source": source},
            )
            return SettlementResult(SettlementOutcome.UNKNOWN_TRANSACTION, detail=session.id)

        if session.is_paid:
            return cls.settle_record(
                record,
                SETTLE_COMPLETE,
                source=source,
                payment_intent_id=session.payment_intent_id,
                invoice_id=session.invoice_id,
                subscription_id=session.subscription_id,
                customer_id=session.customer_id,
            )
        if session.is_expired:
            return cls.settle_record(
                record,
                SETTLE_FAIL,
                source=source,
                reason="checkout_session_expired",
            )
        return SettlementResult(SettlementOutcome.STILL_PENDING, record)

    @classmethod
    def fail_session(cls, session_id: str, reason: str, *, source: str) -> SettlementResult:
        """Fail the record behind a session Stripe reports as failed or expired."""
        record = PaymentRecord.objects.filter(external_transaction_id=session_id).first()
        if record is None:
            cls.get_logger().warning(
                "Failure signal for unknown checkout session",
                extra={"session_id": session_id, "source": source},
            )
            return SettlementResult(SettlementOutcome.UNKNOWN_TRANSACTION, detail=session_id)
        return cls.settle_record(record, SETTLE_FAIL, source=source, reason=reason)

    @classmethod
    def verify_session(cls, payer: AbstractBaseUser, session_id: str) -> VerifyResult:
        """
        Client-initiated confirmation after the redirect back from Stripe.

        Raises:
            PaymentNotFound: No record for this session
            PaymentAccessDenied: The record belongs to another user
            ProcessorUnavailable: Stripe unreachable after retries
        """
        record = PaymentRecord.objects.filter(external_transaction_id=session_id).first()
        if record is None:
            raise PaymentNotFound(
                message="Payment not found",
                details={"session_id": session_id},
            )
        if record.payer_id != payer.pk:
            raise PaymentAccessDenied(
                message="This payment belongs to another user",
                details={"session_id": session_id},
            )

        if record.status != PaymentStatus.PENDING:
            settlement = SettlementResult(SettlementOutcome.ALREADY_SETTLED, record)
        else:
            session = call_with_retry(
                StripeAdapter.retrieve_checkout_session,
                session_id,
                operation="retrieve_checkout_session",
            )
            settlement = cls.apply_session(session, source="verify", record=record)

        payment = PaymentRecord.objects.get(pk=record.pk)
        return VerifyResult(
            settlement=settlement,
            payment=payment,
            entitlement=EntitlementGrantor.summary_for(payer, payment.item_kind, payment.item_id),
        )

    # ==========================================================================
    # Subscription Renewals
    # ==========================================================================

    @classmethod
    def record_renewal(cls, invoice: dict[str, Any]) -> SettlementResult:
        """
        Record a paid renewal invoice as its own completed payment.

        The first invoice of a subscription is settled through its checkout
        session and is skipped here. Renewals credit revenue only.
        """
        invoice_id = invoice.get("id")
        billing_reason = invoice.get("billing_reason")
        if billing_reason not in RENEWAL_BILLING_REASONS:
            return SettlementResult(SettlementOutcome.IGNORED, detail=billing_reason)

        subscription_details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = expandable_id(invoice.get("subscription")) or expandable_id(
            subscription_details.get("subscription")
        )
        amount_paid = invoice.get("amount_paid") or 0
        subscription = (
            SubscriptionRecord.objects.filter(external_subscription_id=subscription_id).first()
            if subscription_id
            else None
        )
        if subscription is None:
            cls.get_logger().warning(
                "Renewal invoice for unknown subscription",
                extra={"invoice_id": invoice_id, "subscription_id": subscription_id},
            )
            return SettlementResult(SettlementOutcome.UNKNOWN_TRANSACTION, detail=invoice_id)
        if amount_paid <= 0:
            return SettlementResult(SettlementOutcome.IGNORED, detail="zero_amount")

        owner_type, owner_id = RevenueService.owner_for(subscription.item_kind, subscription.item_id)
        record, created = PaymentRecord.objects.get_or_create(
            external_transaction_id=invoice_id,
            defaults={
                "payer": subscription.subscriber,
                "item_kind": subscription.item_kind,
                "item_id": subscription.item_id,
                "amount_cents": amount_paid,
                "currency": (invoice.get("currency") or settings.BILLING_DEFAULT_CURRENCY).lower(),
                "revenue_owner_type": owner_type,
                "revenue_owner_id": owner_id,
                "metadata": {"renewal": True, "billing_reason": billing_reason},
            },
        )
        if created:
            cls.get_logger().info(
                "Renewal payment recorded",
                extra={
                    "payment_id": str(record.id),
                    "invoice_id": invoice_id,
                    "subscription_id": subscription_id,
                },
            )

        return cls.settle_record(
            record,
            SETTLE_COMPLETE,
            source="webhook",
            payment_intent_id=expandable_id(invoice.get("payment_intent")),
            invoice_id=invoice_id,
            subscription_id=subscription_id,
        )

    # ==========================================================================
    # Sweep
    # ==========================================================================

    @classmethod
    def reconcile_stale(cls, older_than_minutes: int | None = None) -> dict[str, int]:
        """
        Settle pending records whose signals never arrived.

        Records that reached Stripe are looked up and settled through the
        same path as verify. Records that never got a session are canceled.
        """
        minutes = older_than_minutes or settings.BILLING_PENDING_RECONCILE_AFTER_MINUTES
        cutoff = timezone.now() - timedelta(minutes=minutes)
        stale = PaymentRecord.objects.filter(
            status=PaymentStatus.PENDING,
            created_at__lt=cutoff,
        ).order_by("created_at")

        counts = {"settled": 0, "still_pending": 0, "canceled": 0, "errors": 0}
        for record in stale.iterator():
            if not record.external_transaction_id:
                result = cls._cancel_orphan(record)
                counts["canceled" if result else "still_pending"] += 1
                continue

            try:
                session = call_with_retry(
                    StripeAdapter.retrieve_checkout_session,
                    record.external_transaction_id,
                    operation="retrieve_checkout_session",
                )
            except (ProcessorUnavailable, StripeError) as e:
                counts["errors"] += 1
                cls.get_logger().warning(
                    "Stale checkout lookup failed",
                    extra={"payment_id": str(record.id), "error": str(e)},
                )
                continue

            result = cls.apply_session(session, source="sweep", record=record)
            if result.outcome == SettlementOutcome.STILL_PENDING:
                counts["still_pending"] += 1
            else:
                counts["settled"] += 1

        cls.get_logger().info("Stale checkout sweep finished", extra=counts)
        return counts

    @classmethod
    def _cancel_orphan(cls, record: PaymentRecord) -> bool:
        """Cancel a record that never got a Stripe session."""
        if not can_proceed(record.cancel):
            return False
        record.cancel(reason="checkout_session_never_created")
        try:
            record.save()
        except ConcurrentTransition:
            return False
        cls.get_logger().info(
            "Orphaned checkout canceled",
            extra={"payment_id": str(record.id)},
        )
        return True
