"""
Tests for ConfirmationReconciler.

Covers the settlement compare-and-set shared by the verify, webhook and
sweep paths:
1. Exactly one caller wins the PENDING -> COMPLETED transition
2. The winner's fan-out (entitlement, revenue) runs once
3. Verify authorization and processor failures
4. Renewal invoices and the stale checkout sweep
"""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from django.utils import timezone

from billing.exceptions import (
    PaymentAccessDenied,
    PaymentNotFound,
    ProcessorUnavailable,
    StripeAPIUnavailableError,
)
from billing.models import Entitlement, PaymentRecord, RevenueAggregate
from billing.services import (
    SETTLE_COMPLETE,
    SETTLE_FAIL,
    ConfirmationReconciler,
    SettlementOutcome,
)
from billing.state_machines import ItemKind, PaymentStatus, RevenueOwnerType
from billing.tests.factories import (
    PaymentRecordFactory,
    SubscriptionRecordFactory,
    UserFactory,
    checkout_session,
)


def seller_revenue(course):
    return RevenueAggregate.objects.get(
        owner_type=RevenueOwnerType.SELLER,
        owner_id=str(course.owner_id),
    )


# =============================================================================
# Test Class: Settlement Compare-and-Set
# =============================================================================


@pytest.mark.django_db
class TestSettleRecord:
    """Tests for the single settlement transition."""

    def test_complete_applies_fan_out(self, pending_payment, payer, course):
        result = ConfirmationReconciler.settle_record(
            pending_payment,
            SETTLE_COMPLETE,
            source="webhook",
            payment_intent_id="pi_test_1",
        )

        assert result.outcome == SettlementOutcome.APPLIED
        payment = PaymentRecord.objects.get(pk=pending_payment.pk)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.processor_payment_intent_id == "pi_test_1"
        assert payment.completed_at is not None
        assert payment.metadata["settled_via"] == "webhook"

        entitlement = Entitlement.objects.get(user=payer, item_id=str(course.id))
        assert entitlement.is_active
        assert entitlement.source_payment_id == payment.id

        revenue = seller_revenue(course)
        assert revenue.gross_cents == 5000
        assert revenue.completed_count == 1

    def test_second_signal_is_already_settled(self, completed_payment, course):
        result = ConfirmationReconciler.settle_record(
            completed_payment,
            SETTLE_COMPLETE,
            source="verify",
        )

        assert result.outcome == SettlementOutcome.ALREADY_SETTLED
        assert result.applied is False
        assert seller_revenue(course).completed_count == 1

    def test_stale_copy_loses_race(self, pending_payment, payer, course):
        """Two callers that both loaded the pending record: one wins."""
        first = PaymentRecord.objects.get(pk=pending_payment.pk)
        second = PaymentRecord.objects.get(pk=pending_payment.pk)

        winner = ConfirmationReconciler.settle_record(first, SETTLE_COMPLETE, source="verify")
        loser = ConfirmationReconciler.settle_record(second, SETTLE_COMPLETE, source="webhook")

        assert winner.outcome == SettlementOutcome.APPLIED
        assert loser.outcome == SettlementOutcome.ALREADY_SETTLED
        assert loser.payment.status == PaymentStatus.COMPLETED
        assert loser.payment.metadata["settled_via"] == "verify"

        assert Entitlement.objects.filter(user=payer, item_id=str(course.id)).count() == 1
        assert seller_revenue(course).completed_count == 1

    def test_fail_after_complete_is_ignored(self, pending_payment):
        stale = PaymentRecord.objects.get(pk=pending_payment.pk)
        ConfirmationReconciler.settle_record(pending_payment, SETTLE_COMPLETE, source="webhook")

        result = ConfirmationReconciler.settle_record(
            stale, SETTLE_FAIL, source="webhook", reason="checkout_session_expired"
        )

        assert result.outcome == SettlementOutcome.ALREADY_SETTLED
        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.COMPLETED

    def test_fail_records_reason_without_fan_out(self, pending_payment, payer):
        result = ConfirmationReconciler.settle_record(
            pending_payment, SETTLE_FAIL, source="webhook", reason="async_payment_failed"
        )

        assert result.outcome == SettlementOutcome.APPLIED
        payment = PaymentRecord.objects.get(pk=pending_payment.pk)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "async_payment_failed"
        assert not Entitlement.objects.filter(user=payer).exists()
        assert not RevenueAggregate.objects.exists()


@pytest.mark.django_db
class TestSettleRecordWithInfoLogging:
    """Settlement with the billing logger at INFO, the production default."""

    @pytest.fixture
    def billing_logs(self, caplog):
        # "billing" does not propagate to root, so attach the capture handler directly
        logger = logging.getLogger("billing")
        caplog.set_level(logging.INFO, logger="billing")
        logger.addHandler(caplog.handler)
        yield caplog
        logger.removeHandler(caplog.handler)

    def test_course_completion_commits(self, billing_logs, pending_payment, payer, course):
        result = ConfirmationReconciler.settle_record(
            pending_payment, SETTLE_COMPLETE, source="verify"
        )

        assert result.outcome == SettlementOutcome.APPLIED
        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.COMPLETED
        assert Entitlement.objects.get(user=payer, item_id=str(course.id)).is_active

        granted = [r for r in billing_logs.records if r.getMessage() == "Entitlement granted"]
        assert len(granted) == 1
        assert granted[0].entitlement_created is True

    def test_community_and_plan_completions_commit(self, billing_logs, payer, community, plan):
        community_payment = PaymentRecordFactory(
            payer=payer,
            item_kind=ItemKind.COMMUNITY,
            item_id=str(community.id),
            amount_cents=community.monthly_price_cents,
            revenue_owner_type=RevenueOwnerType.COMMUNITY,
            revenue_owner_id=str(community.id),
        )
        plan_payment = PaymentRecordFactory(
            payer=payer,
            item_kind=ItemKind.PLAN,
            item_id=str(plan.id),
            amount_cents=plan.price_cents,
            revenue_owner_type=RevenueOwnerType.PLATFORM,
            revenue_owner_id="platform",
        )

        for payment in (community_payment, plan_payment):
            result = ConfirmationReconciler.settle_record(payment, SETTLE_COMPLETE, source="webhook")

            assert result.outcome == SettlementOutcome.APPLIED
            assert PaymentRecord.objects.get(pk=payment.pk).status == PaymentStatus.COMPLETED

        assert Entitlement.objects.filter(user=payer).count() == 2


# =============================================================================
# Test Class: Checkout Sessions
# =============================================================================


@pytest.mark.django_db
class TestApplySession:
    """Tests for mapping Checkout Session state onto records."""

    def test_paid_session_completes(self, pending_payment):
        result = ConfirmationReconciler.apply_session(
            checkout_session("cs_test_pending", payment_intent="pi_abc"),
            source="webhook",
        )

        assert result.applied
        assert result.payment.processor_payment_intent_id == "pi_abc"

    def test_unpaid_session_stays_pending(self, pending_payment):
        result = ConfirmationReconciler.apply_session(
            checkout_session("cs_test_pending", payment_status="unpaid"),
            source="webhook",
        )

        assert result.outcome == SettlementOutcome.STILL_PENDING
        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.PENDING

    def test_expired_session_fails(self, pending_payment):
        result = ConfirmationReconciler.apply_session(
            checkout_session("cs_test_pending", status="expired", payment_status="unpaid"),
            source="sweep",
        )

        assert result.applied
        payment = PaymentRecord.objects.get(pk=pending_payment.pk)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "checkout_session_expired"

    def test_unknown_session(self, db):
        result = ConfirmationReconciler.apply_session(
            checkout_session("cs_test_nobody"), source="webhook"
        )

        assert result.outcome == SettlementOutcome.UNKNOWN_TRANSACTION
        assert result.payment is None

    def test_fail_session_unknown(self, db):
        result = ConfirmationReconciler.fail_session(
            "cs_test_nobody", "checkout_session_expired", source="webhook"
        )

        assert result.outcome == SettlementOutcome.UNKNOWN_TRANSACTION


# =============================================================================
# Test Class: Verify
# =============================================================================


@pytest.mark.django_db
class TestVerifySession:
    """Tests for the client-initiated confirmation path."""

    def test_verify_settles_and_reports_access(self, pending_payment, payer, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_checkout_session.return_value = checkout_session(
            "cs_test_pending"
        )

        result = ConfirmationReconciler.verify_session(payer, "cs_test_pending")

        mock_stripe_adapter.retrieve_checkout_session.assert_called_once_with("cs_test_pending")
        assert result.settlement.outcome == SettlementOutcome.APPLIED
        assert result.payment.status == PaymentStatus.COMPLETED
        assert result.payment.metadata["settled_via"] == "verify"
        assert result.entitlement["has_access"] is True
        assert result.entitlement["reason"] == "entitled"

    def test_verify_after_webhook_skips_stripe(self, completed_payment, payer, mock_stripe_adapter):
        result = ConfirmationReconciler.verify_session(payer, "cs_test_pending")

        mock_stripe_adapter.retrieve_checkout_session.assert_not_called()
        assert result.settlement.outcome == SettlementOutcome.ALREADY_SETTLED
        assert result.entitlement["has_access"] is True

    def test_webhook_after_verify_is_noop(self, pending_payment, payer, course, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_checkout_session.return_value = checkout_session(
            "cs_test_pending"
        )
        ConfirmationReconciler.verify_session(payer, "cs_test_pending")

        result = ConfirmationReconciler.apply_session(
            checkout_session("cs_test_pending"), source="webhook"
        )

        assert result.outcome == SettlementOutcome.ALREADY_SETTLED
        assert seller_revenue(course).completed_count == 1

    def test_unknown_session_raises_not_found(self, payer):
        with pytest.raises(PaymentNotFound):
            ConfirmationReconciler.verify_session(payer, "cs_test_missing")

    def test_other_users_session_is_denied(self, pending_payment, mock_stripe_adapter):
        intruder = UserFactory()

        with pytest.raises(PaymentAccessDenied):
            ConfirmationReconciler.verify_session(intruder, "cs_test_pending")

        mock_stripe_adapter.retrieve_checkout_session.assert_not_called()

    def test_processor_unavailable_leaves_record_pending(
        self, pending_payment, payer, mock_stripe_adapter
    ):
        mock_stripe_adapter.retrieve_checkout_session.side_effect = StripeAPIUnavailableError(
            "Stripe is down"
        )

        with pytest.raises(ProcessorUnavailable):
            ConfirmationReconciler.verify_session(payer, "cs_test_pending")

        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.PENDING


# =============================================================================
# Test Class: Renewals
# =============================================================================


@pytest.mark.django_db
class TestRecordRenewal:
    """Tests for invoice.paid renewals."""

    @pytest.fixture
    def subscription(self, payer, community):
        return SubscriptionRecordFactory(
            subscriber=payer,
            community=community,
            external_subscription_id="sub_test_renew",
        )

    def renewal_invoice(self, **overrides):
        invoice = {
            "id": "in_test_renew_1",
            "billing_reason": "subscription_cycle",
            "subscription": "sub_test_renew",
            "amount_paid": 2000,
            "currency": "usd",
            "payment_intent": "pi_test_renew_1",
        }
        invoice.update(overrides)
        return invoice

    def test_renewal_credits_revenue_only(self, subscription, community, payer):
        result = ConfirmationReconciler.record_renewal(self.renewal_invoice())

        assert result.outcome == SettlementOutcome.APPLIED
        payment = result.payment
        assert payment.is_renewal
        assert payment.external_transaction_id == "in_test_renew_1"
        assert payment.processor_invoice_id == "in_test_renew_1"
        assert payment.amount_cents == 2000

        revenue = RevenueAggregate.objects.get(
            owner_type=RevenueOwnerType.COMMUNITY, owner_id=str(community.id)
        )
        assert revenue.completed_count == 1
        assert revenue.total_cents == 2000
        assert not Entitlement.objects.filter(user=payer, source_payment=payment).exists()

    def test_replayed_invoice_is_already_settled(self, subscription):
        ConfirmationReconciler.record_renewal(self.renewal_invoice())

        result = ConfirmationReconciler.record_renewal(self.renewal_invoice())

        assert result.outcome == SettlementOutcome.ALREADY_SETTLED
        assert PaymentRecord.objects.filter(external_transaction_id="in_test_renew_1").count() == 1

    def test_first_invoice_is_ignored(self, subscription):
        result = ConfirmationReconciler.record_renewal(
            self.renewal_invoice(billing_reason="subscription_create")
        )

        assert result.outcome == SettlementOutcome.IGNORED
        assert not PaymentRecord.objects.exists()

    def test_unknown_subscription(self, db):
        result = ConfirmationReconciler.record_renewal(
            self.renewal_invoice(subscription="sub_test_unknown")
        )

        assert result.outcome == SettlementOutcome.UNKNOWN_TRANSACTION

    def test_zero_amount_is_ignored(self, subscription):
        result = ConfirmationReconciler.record_renewal(self.renewal_invoice(amount_paid=0))

        assert result.outcome == SettlementOutcome.IGNORED

    def test_subscription_id_from_invoice_parent(self, subscription):
        invoice = self.renewal_invoice(subscription=None)
        invoice["parent"] = {"subscription_details": {"subscription": "sub_test_renew"}}

        result = ConfirmationReconciler.record_renewal(invoice)

        assert result.outcome == SettlementOutcome.APPLIED


# =============================================================================
# Test Class: Stale Checkout Sweep
# =============================================================================


@pytest.mark.django_db
class TestReconcileStale:
    """Tests for the sweep that settles records whose signals were lost."""

    def age(self, record, minutes=60):
        PaymentRecord.objects.filter(pk=record.pk).update(
            created_at=timezone.now() - timedelta(minutes=minutes)
        )

    def test_paid_session_is_settled(self, pending_payment, mock_stripe_adapter):
        self.age(pending_payment)
        mock_stripe_adapter.retrieve_checkout_session.return_value = checkout_session(
            "cs_test_pending"
        )

        counts = ConfirmationReconciler.reconcile_stale()

        assert counts["settled"] == 1
        payment = PaymentRecord.objects.get(pk=pending_payment.pk)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.metadata["settled_via"] == "sweep"

    def test_open_session_stays_pending(self, pending_payment, mock_stripe_adapter):
        self.age(pending_payment)
        mock_stripe_adapter.retrieve_checkout_session.return_value = checkout_session(
            "cs_test_pending", status="open", payment_status="unpaid"
        )

        counts = ConfirmationReconciler.reconcile_stale()

        assert counts["still_pending"] == 1
        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.PENDING

    def test_recent_records_are_left_alone(self, pending_payment, mock_stripe_adapter):
        counts = ConfirmationReconciler.reconcile_stale()

        assert counts == {"settled": 0, "still_pending": 0, "canceled": 0, "errors": 0}
        mock_stripe_adapter.retrieve_checkout_session.assert_not_called()

    def test_record_without_session_is_canceled(self, payer, course, mock_stripe_adapter):
        orphan = PaymentRecordFactory(payer=payer, course=course, external_transaction_id=None)
        self.age(orphan)

        counts = ConfirmationReconciler.reconcile_stale()

        assert counts["canceled"] == 1
        assert PaymentRecord.objects.get(pk=orphan.pk).status == PaymentStatus.CANCELED

    def test_lookup_errors_are_counted(self, pending_payment, mock_stripe_adapter):
        self.age(pending_payment)
        mock_stripe_adapter.retrieve_checkout_session.side_effect = StripeAPIUnavailableError(
            "Stripe is down"
        )

        counts = ConfirmationReconciler.reconcile_stale()

        assert counts["errors"] == 1
        assert PaymentRecord.objects.get(pk=pending_payment.pk).status == PaymentStatus.PENDING
