"""
Tests for webhook event handlers.

Tests cover:
- Handler registry and dispatch
- Checkout session settlement and failure
- Renewal invoices
- Refunds and disputes
- Subscription state changes
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from billing.models import AffiliateLedgerEntry, Entitlement, PaymentRecord, SubscriptionRecord
from billing.services import SettlementOutcome
from billing.state_machines import (
    CommissionStatus,
    ItemKind,
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing.tests.factories import (
    PaymentRecordFactory,
    SubscriptionRecordFactory,
    checkout_session_payload,
    subscription_payload,
)
from billing.webhooks.handlers import WEBHOOK_HANDLERS, dispatch_webhook


def charge_payload(payment_intent_id: str, amount_refunded: int, charge_id: str = "ch_test_hook"):
    return {
        "id": charge_id,
        "object": "charge",
        "payment_intent": payment_intent_id,
        "amount_refunded": amount_refunded,
    }


# =============================================================================
# Dispatch Tests
# =============================================================================


@pytest.mark.django_db
class TestDispatch:
    """Tests for the handler registry."""

    def test_handlers_registered(self):
        for event_type in (
            "checkout.session.completed",
            "checkout.session.async_payment_succeeded",
            "checkout.session.async_payment_failed",
            "checkout.session.expired",
            "invoice.paid",
            "charge.refunded",
            "charge.dispute.closed",
            "customer.subscription.updated",
            "customer.subscription.deleted",
        ):
            assert event_type in WEBHOOK_HANDLERS

    def test_unknown_event_type_succeeds(self, make_webhook_event):
        event = make_webhook_event("payment_method.attached", {"id": "pm_test"})

        result = dispatch_webhook(event)

        assert result.success
        assert result.data is None

    def test_missing_object_id_fails(self, make_webhook_event):
        event = make_webhook_event("checkout.session.completed", {})

        result = dispatch_webhook(event)

        assert not result.success
        assert result.error_code == "INVALID_WEBHOOK_PAYLOAD"


# =============================================================================
# Checkout Session Tests
# =============================================================================


@pytest.mark.django_db
class TestCheckoutSessionHandlers:
    """Tests for checkout.session.* events."""

    def test_completed_settles_payment(self, checkout_completed_event, pending_payment, payer, course):
        result = dispatch_webhook(checkout_completed_event)

        assert result.success
        assert result.data.outcome == SettlementOutcome.APPLIED
        payment = PaymentRecord.objects.get(pk=pending_payment.pk)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.processor_payment_intent_id == "pi_test_webhook"
        assert Entitlement.objects.get(user=payer, item_id=str(course.id)).is_active

    def test_redelivered_completion_is_harmless(self, checkout_completed_event, pending_payment):
        dispatch_webhook(checkout_completed_event)

        result = dispatch_webhook(checkout_completed_event)

        assert result.success
        assert result.data.outcome == SettlementOutcome.ALREADY_SETTLED

    def test_unpaid_completion_stays_pending(self, make_webhook_event, pending_payment):
        event = make_webhook_event(
            "checkout.session.completed",
            checkout_session_payload(
                pending_payment.external_transaction_id,
                payment_status="unpaid",
                payment_intent=None,
            ),
        )

        result = dispatch_webhook(event)

        assert result.data.outcome == SettlementOutcome.STILL_PENDING
        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.PENDING

    def test_expired_session_fails_payment(self, make_webhook_event, pending_payment):
        event = make_webhook_event(
            "checkout.session.expired",
            checkout_session_payload(
                pending_payment.external_transaction_id,
                status="expired",
                payment_status="unpaid",
            ),
        )

        dispatch_webhook(event)

        payment = PaymentRecord.objects.get(pk=pending_payment.pk)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "checkout_session_expired"

    def test_unknown_session(self, make_webhook_event):
        event = make_webhook_event(
            "checkout.session.completed", checkout_session_payload("cs_test_nobody")
        )

        result = dispatch_webhook(event)

        assert result.success
        assert result.data.outcome == SettlementOutcome.UNKNOWN_TRANSACTION


# =============================================================================
# Invoice Tests
# =============================================================================


@pytest.mark.django_db
class TestInvoicePaid:
    """Tests for renewal invoices."""

    @pytest.fixture
    def subscription(self, payer, community):
        return SubscriptionRecordFactory(
            subscriber=payer,
            community=community,
            external_subscription_id="sub_test_hook",
        )

    def test_renewal_creates_completed_payment(self, make_webhook_event, subscription):
        event = make_webhook_event(
            "invoice.paid",
            {
                "id": "in_test_renewal",
                "object": "invoice",
                "billing_reason": "subscription_cycle",
                "subscription": "sub_test_hook",
                "amount_paid": 2000,
                "payment_intent": "pi_test_renewal",
            },
        )

        result = dispatch_webhook(event)

        assert result.data.outcome == SettlementOutcome.APPLIED
        payment = PaymentRecord.objects.get(external_transaction_id="in_test_renewal")
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.is_renewal

    def test_first_invoice_is_ignored(self, make_webhook_event, subscription):
        event = make_webhook_event(
            "invoice.paid",
            {
                "id": "in_test_first",
                "billing_reason": "subscription_create",
                "subscription": "sub_test_hook",
                "amount_paid": 2000,
            },
        )

        result = dispatch_webhook(event)

        assert result.data.outcome == SettlementOutcome.IGNORED
        assert not PaymentRecord.objects.filter(external_transaction_id="in_test_first").exists()


# =============================================================================
# Refund and Dispute Tests
# =============================================================================


@pytest.mark.django_db
class TestRefundHandlers:
    """Tests for charge.refunded and charge.dispute.closed."""

    def test_partial_refund(self, make_webhook_event, completed_attributed_payment):
        event = make_webhook_event("charge.refunded", charge_payload("pi_test_attributed", 1000))

        result = dispatch_webhook(event)

        assert result.success
        payment = PaymentRecord.objects.get(pk=completed_attributed_payment.pk)
        assert payment.refunded_amount_cents == 1000
        assert payment.status == PaymentStatus.COMPLETED

    def test_full_refund(self, make_webhook_event, completed_attributed_payment):
        event = make_webhook_event("charge.refunded", charge_payload("pi_test_attributed", 5000))

        dispatch_webhook(event)

        assert PaymentRecord.objects.get(pk=completed_attributed_payment.pk).status == (
            PaymentStatus.REFUNDED
        )
        commission = AffiliateLedgerEntry.objects.get(payment=completed_attributed_payment)
        assert commission.status == CommissionStatus.REFUNDED

    def test_refund_before_settlement_fails_event(self, make_webhook_event, payer, course):
        PaymentRecordFactory(payer=payer, course=course, processor_payment_intent_id="pi_test_early")
        event = make_webhook_event("charge.refunded", charge_payload("pi_test_early", 1000))

        result = dispatch_webhook(event)

        assert not result.success
        assert result.error_code == "INVALID_REFUND_TARGET"

    def test_lost_dispute(self, make_webhook_event, completed_payment, payer, course):
        event = make_webhook_event(
            "charge.dispute.closed",
            {"id": "dp_test_lost", "status": "lost", "payment_intent": "pi_test_pending"},
        )

        dispatch_webhook(event)

        assert PaymentRecord.objects.get(pk=completed_payment.pk).status == PaymentStatus.REFUNDED
        entitlement = Entitlement.objects.get(user=payer, item_id=str(course.id))
        assert entitlement.revoke_reason == "chargeback"

    def test_won_dispute_changes_nothing(self, make_webhook_event, completed_payment):
        event = make_webhook_event(
            "charge.dispute.closed",
            {"id": "dp_test_won", "status": "won", "payment_intent": "pi_test_pending"},
        )

        result = dispatch_webhook(event)

        assert result.success
        assert PaymentRecord.objects.get(pk=completed_payment.pk).status == PaymentStatus.COMPLETED


# =============================================================================
# Subscription Tests
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionHandlers:
    """Tests for customer.subscription.* events."""

    @pytest.fixture
    def subscription(self, payer, community):
        return SubscriptionRecordFactory(
            subscriber=payer,
            community=community,
            external_subscription_id="sub_test_events",
        )

    def test_deleted_subscription_revokes_access(self, make_webhook_event, subscription, payer):
        Entitlement.objects.create(
            user=payer,
            item_kind=ItemKind.COMMUNITY,
            item_id=subscription.item_id,
            tier=SubscriptionTier.STANDARD,
        )
        event = make_webhook_event(
            "customer.subscription.deleted",
            subscription_payload("sub_test_events", SubscriptionStatus.CANCELED),
        )

        result = dispatch_webhook(event)

        assert result.data.outcome == SettlementOutcome.APPLIED
        record = SubscriptionRecord.objects.get(pk=subscription.pk)
        assert record.status == SubscriptionStatus.CANCELED
        assert Entitlement.objects.get(user=payer, item_id=subscription.item_id).revoked_at

    def test_out_of_order_events(self, make_webhook_event, subscription):
        now = timezone.now()
        newer = make_webhook_event(
            "customer.subscription.updated",
            subscription_payload("sub_test_events", SubscriptionStatus.PAST_DUE),
            created=now,
        )
        older = make_webhook_event(
            "customer.subscription.updated",
            subscription_payload("sub_test_events", SubscriptionStatus.ACTIVE),
            created=now - timedelta(minutes=10),
        )

        dispatch_webhook(newer)
        result = dispatch_webhook(older)

        assert result.data.outcome == SettlementOutcome.IGNORED
        assert SubscriptionRecord.objects.get(pk=subscription.pk).status == (
            SubscriptionStatus.PAST_DUE
        )
