"""
Tests for SubscriptionSynchronizer and SubscriptionManager.

Covers mirroring Stripe subscription state, the past_due grace period,
out-of-order events, the periodic refresh and subscriber-initiated
cancel, resume and billing portal requests.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone
from freezegun import freeze_time

from billing.adapters import PortalSessionResult
from billing.exceptions import (
    BillingAccountNotFound,
    PaymentAccessDenied,
    ProcessorUnavailable,
    StripeAPIUnavailableError,
    SubscriptionNotActive,
    SubscriptionNotFound,
)
from billing.models import BillingAccount, Entitlement, SubscriptionRecord
from billing.services import (
    SETTLE_COMPLETE,
    ConfirmationReconciler,
    EntitlementGrantor,
    SettlementOutcome,
    SubscriptionManager,
    SubscriptionSynchronizer,
)
from billing.state_machines import (
    ItemKind,
    RevenueOwnerType,
    SubscriptionStatus,
    SubscriptionTier,
)
from billing.tests.factories import (
    BillingAccountFactory,
    PaymentRecordFactory,
    SubscriptionRecordFactory,
    subscription_snapshot,
)


@pytest.fixture
def subscription(payer, community):
    """Active community subscription with its entitlement granted."""
    record = SubscriptionRecordFactory(
        subscriber=payer,
        community=community,
        external_subscription_id="sub_test_sync",
    )
    EntitlementGrantor.apply_subscription_tier(record)
    return record


def entitlement_for(record):
    return Entitlement.objects.get(
        user=record.subscriber, item_kind=record.item_kind, item_id=record.item_id
    )


# =============================================================================
# Test Class: State Mirroring
# =============================================================================


@pytest.mark.django_db
class TestApplyProcessorState:
    """Tests for applying Stripe-reported subscription states."""

    def test_past_due_keeps_tier_during_grace(self, subscription):
        event_at = timezone.now()

        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.PAST_DUE),
            event_created_at=event_at,
        )

        assert result.outcome == SettlementOutcome.APPLIED
        record = result.record
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.past_due_since == event_at
        assert record.effective_tier == SubscriptionTier.STANDARD
        assert EntitlementGrantor.has_access(record.subscriber, record.item_kind, record.item_id)

    def test_canceled_revokes_entitlement(self, subscription):
        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.CANCELED),
            event_created_at=timezone.now(),
        )

        record = result.record
        assert record.effective_tier == SubscriptionTier.FREE
        assert record.canceled_at is not None
        entitlement = entitlement_for(record)
        assert entitlement.revoked_at is not None
        assert entitlement.revoke_reason == "subscription_canceled"

    def test_stale_event_is_ignored(self, subscription):
        now = timezone.now()
        SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.CANCELED),
            event_created_at=now,
        )

        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.ACTIVE),
            event_created_at=now - timedelta(minutes=5),
        )

        assert result.outcome == SettlementOutcome.IGNORED
        record = SubscriptionRecord.objects.get(pk=subscription.pk)
        assert record.status == SubscriptionStatus.CANCELED
        assert entitlement_for(record).revoked_at is not None

    def test_recovery_clears_past_due(self, subscription):
        now = timezone.now()
        SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.PAST_DUE),
            event_created_at=now,
        )

        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.ACTIVE),
            event_created_at=now + timedelta(days=1),
        )

        assert result.record.past_due_since is None
        assert result.record.effective_tier == SubscriptionTier.STANDARD

    def test_unknown_subscription_creates_record_from_metadata(self, payer, community):
        snapshot = subscription_snapshot(
            "sub_test_new",
            SubscriptionStatus.ACTIVE,
            metadata={
                "payer_id": str(payer.pk),
                "item_kind": ItemKind.COMMUNITY,
                "item_id": str(community.id),
            },
        )

        result = SubscriptionSynchronizer.apply_processor_state(snapshot, timezone.now())

        assert result.outcome == SettlementOutcome.APPLIED
        record = result.record
        assert record.subscriber == payer
        assert record.item_id == str(community.id)
        assert record.effective_tier == SubscriptionTier.STANDARD
        assert EntitlementGrantor.has_access(payer, ItemKind.COMMUNITY, str(community.id))

    def test_plan_subscription_sets_account_tier(self, payer, plan):
        account = BillingAccountFactory(user=payer, stripe_customer_id="cus_test_plan")

        SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot(
                "sub_test_plan",
                SubscriptionStatus.ACTIVE,
                customer="cus_test_plan",
                price_id=plan.stripe_price_id,
            ),
            event_created_at=timezone.now(),
        )
        account.refresh_from_db()
        assert account.subscription_tier == SubscriptionTier.PREMIUM

        SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot(
                "sub_test_plan",
                SubscriptionStatus.CANCELED,
                customer="cus_test_plan",
                price_id=plan.stripe_price_id,
            ),
            event_created_at=timezone.now() + timedelta(minutes=1),
        )
        account.refresh_from_db()
        assert account.subscription_tier == SubscriptionTier.FREE

    def test_unresolvable_subscription(self, db):
        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_orphan", customer="cus_test_nobody"),
            event_created_at=timezone.now(),
        )

        assert result.outcome == SettlementOutcome.UNKNOWN_TRANSACTION
        assert not SubscriptionRecord.objects.exists()


# =============================================================================
# Test Class: Grace Period
# =============================================================================


@pytest.mark.django_db
class TestGracePeriod:
    """Tests for demotion once past_due outlasts the grace period."""

    @pytest.fixture
    def past_due(self, subscription):
        SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.PAST_DUE),
            event_created_at=timezone.now(),
        )
        return SubscriptionRecord.objects.get(pk=subscription.pk)

    def test_not_demoted_within_grace(self, past_due):
        with freeze_time(timezone.now() + timedelta(days=6)):
            assert SubscriptionSynchronizer.enforce_grace_periods() == 0

        assert SubscriptionRecord.objects.get(pk=past_due.pk).effective_tier == SubscriptionTier.STANDARD

    def test_demoted_after_grace(self, past_due):
        with freeze_time(timezone.now() + timedelta(days=8)):
            assert SubscriptionSynchronizer.enforce_grace_periods() == 1

        record = SubscriptionRecord.objects.get(pk=past_due.pk)
        assert record.effective_tier == SubscriptionTier.FREE
        assert record.demoted_at is not None

        entitlement = entitlement_for(record)
        assert entitlement.revoked_at is None
        assert entitlement.tier == SubscriptionTier.FREE
        assert not EntitlementGrantor.has_access(record.subscriber, record.item_kind, record.item_id)

    def test_recovery_after_demotion_restores_tier(self, past_due):
        later = timezone.now() + timedelta(days=8)
        SubscriptionSynchronizer.enforce_grace_periods(now=later)

        SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.ACTIVE),
            event_created_at=later + timedelta(hours=1),
        )

        record = SubscriptionRecord.objects.get(pk=past_due.pk)
        assert record.effective_tier == SubscriptionTier.STANDARD
        assert record.demoted_at is None
        assert entitlement_for(record).tier == SubscriptionTier.STANDARD

    def test_late_past_due_event_demotes_immediately(self, subscription):
        """A past_due stretch already longer than the grace period."""
        SubscriptionRecord.objects.filter(pk=subscription.pk).update(
            status=SubscriptionStatus.PAST_DUE,
            past_due_since=timezone.now() - timedelta(days=10),
        )

        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.PAST_DUE),
            event_created_at=timezone.now(),
        )

        assert result.record.effective_tier == SubscriptionTier.FREE


# =============================================================================
# Test Class: Checkout Registration and Refresh
# =============================================================================


@pytest.mark.django_db
class TestRegistrationAndRefresh:
    """Tests for records created at checkout and the periodic pull."""

    def test_subscription_checkout_registers_record(self, payer, community):
        payment = PaymentRecordFactory(
            payer=payer,
            item_kind=ItemKind.COMMUNITY,
            item_id=str(community.id),
            amount_cents=community.monthly_price_cents,
            revenue_owner_type=RevenueOwnerType.COMMUNITY,
            revenue_owner_id=str(community.id),
        )

        ConfirmationReconciler.settle_record(
            payment,
            SETTLE_COMPLETE,
            source="webhook",
            subscription_id="sub_test_checkout",
            customer_id="cus_test_checkout",
        )

        record = SubscriptionRecord.objects.get(external_subscription_id="sub_test_checkout")
        assert record.subscriber == payer
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.stripe_customer_id == "cus_test_checkout"
        assert record.effective_tier == SubscriptionTier.STANDARD
        assert EntitlementGrantor.has_access(payer, ItemKind.COMMUNITY, str(community.id))
        assert record.last_event_at is None

    def test_event_sent_before_settlement_still_applies(self, payer, community):
        """customer.subscription.* events predate the checkout settling."""
        event_at = timezone.now() - timedelta(seconds=5)
        payment = PaymentRecordFactory(
            payer=payer,
            item_kind=ItemKind.COMMUNITY,
            item_id=str(community.id),
            amount_cents=community.monthly_price_cents,
            revenue_owner_type=RevenueOwnerType.COMMUNITY,
            revenue_owner_id=str(community.id),
        )
        ConfirmationReconciler.settle_record(
            payment, SETTLE_COMPLETE, source="verify", subscription_id="sub_test_trial"
        )

        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_trial", SubscriptionStatus.TRIALING),
            event_created_at=event_at,
        )

        assert result.outcome == SettlementOutcome.APPLIED
        record = SubscriptionRecord.objects.get(external_subscription_id="sub_test_trial")
        assert record.status == SubscriptionStatus.TRIALING
        assert record.current_period_end is not None
        assert record.last_event_at == event_at

    def test_refresh_blocks_older_queued_events(self, subscription, mock_stripe_adapter):
        queued_at = timezone.now() - timedelta(minutes=5)
        mock_stripe_adapter.retrieve_subscription.return_value = subscription_snapshot(
            "sub_test_sync", SubscriptionStatus.ACTIVE, cancel_at_period_end=True
        )

        SubscriptionSynchronizer.refresh_from_processor()
        result = SubscriptionSynchronizer.apply_processor_state(
            subscription_snapshot("sub_test_sync", SubscriptionStatus.PAST_DUE),
            event_created_at=queued_at,
        )

        assert result.outcome == SettlementOutcome.IGNORED
        record = SubscriptionRecord.objects.get(pk=subscription.pk)
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.cancel_at_period_end is True
        assert record.last_event_at > queued_at

    def test_refresh_pulls_state(self, subscription, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_subscription.return_value = subscription_snapshot(
            "sub_test_sync", SubscriptionStatus.PAST_DUE
        )

        counts = SubscriptionSynchronizer.refresh_from_processor()

        assert counts == {"synced": 1, "errors": 0}
        record = SubscriptionRecord.objects.get(pk=subscription.pk)
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.last_synced_at is not None

    def test_refresh_skips_terminal_records(self, subscription, mock_stripe_adapter):
        SubscriptionRecord.objects.filter(pk=subscription.pk).update(
            status=SubscriptionStatus.CANCELED
        )

        counts = SubscriptionSynchronizer.refresh_from_processor()

        assert counts["synced"] == 0
        mock_stripe_adapter.retrieve_subscription.assert_not_called()

    def test_refresh_counts_errors(self, subscription, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_subscription.side_effect = StripeAPIUnavailableError(
            "Stripe is down"
        )

        counts = SubscriptionSynchronizer.refresh_from_processor()

        assert counts == {"synced": 0, "errors": 1}

    def test_billing_account_created_on_demand(self, payer):
        assert not BillingAccount.objects.filter(user=payer).exists()

        account = BillingAccount.for_user(payer)

        assert account.subscription_tier == SubscriptionTier.FREE
        assert BillingAccount.for_user(payer) == account


# =============================================================================
# Test Class: Subscriber Actions
# =============================================================================


@pytest.mark.django_db
class TestSubscriptionManager:
    """Tests for cancel at period end, resume, details and the billing portal."""

    def test_schedule_cancellation_mirrors_stripe(self, payer, subscription, mock_stripe_adapter):
        mock_stripe_adapter.update_subscription.return_value = subscription_snapshot(
            "sub_test_sync", SubscriptionStatus.ACTIVE, cancel_at_period_end=True
        )

        record = SubscriptionManager.schedule_cancellation(payer, subscription.id)

        assert record.cancel_at_period_end is True
        assert record.effective_tier == SubscriptionTier.STANDARD
        assert entitlement_for(record).is_active
        call = mock_stripe_adapter.update_subscription.call_args
        assert call.args == ("sub_test_sync",)
        assert call.kwargs["cancel_at_period_end"] is True
        assert call.kwargs["idempotency_key"].startswith("cancel_subscription:")

    def test_resume_withdraws_cancellation(self, payer, subscription, mock_stripe_adapter):
        SubscriptionRecord.objects.filter(pk=subscription.pk).update(cancel_at_period_end=True)
        mock_stripe_adapter.update_subscription.return_value = subscription_snapshot(
            "sub_test_sync", SubscriptionStatus.ACTIVE, cancel_at_period_end=False
        )

        record = SubscriptionManager.resume(payer, subscription.id)

        assert record.cancel_at_period_end is False
        call = mock_stripe_adapter.update_subscription.call_args
        assert call.kwargs["cancel_at_period_end"] is False
        assert call.kwargs["idempotency_key"].startswith("resume_subscription:")

    def test_repeated_toggles_use_fresh_keys(self, payer, subscription, mock_stripe_adapter):
        mock_stripe_adapter.update_subscription.side_effect = [
            subscription_snapshot("sub_test_sync", cancel_at_period_end=True),
            subscription_snapshot("sub_test_sync", cancel_at_period_end=False),
            subscription_snapshot("sub_test_sync", cancel_at_period_end=True),
        ]

        with freeze_time("2026-03-01 12:00:00") as frozen:
            SubscriptionManager.schedule_cancellation(payer, subscription.id)
            frozen.tick(timedelta(seconds=1))
            SubscriptionManager.resume(payer, subscription.id)
            frozen.tick(timedelta(seconds=1))
            record = SubscriptionManager.schedule_cancellation(payer, subscription.id)

        keys = [
            call.kwargs["idempotency_key"]
            for call in mock_stripe_adapter.update_subscription.call_args_list
        ]
        assert len(set(keys)) == 3
        assert record.cancel_at_period_end is True

    def test_webhook_after_request_still_wins(self, payer, subscription, mock_stripe_adapter):
        mock_stripe_adapter.update_subscription.return_value = subscription_snapshot(
            "sub_test_sync", cancel_at_period_end=True
        )

        with freeze_time("2026-03-01 12:00:00") as frozen:
            requested_at = timezone.now()
            SubscriptionManager.schedule_cancellation(payer, subscription.id)
            frozen.tick(timedelta(seconds=30))

            older = SubscriptionSynchronizer.apply_processor_state(
                subscription_snapshot("sub_test_sync", cancel_at_period_end=False),
                event_created_at=requested_at - timedelta(seconds=1),
            )
            newer = SubscriptionSynchronizer.apply_processor_state(
                subscription_snapshot("sub_test_sync", cancel_at_period_end=False),
                event_created_at=requested_at + timedelta(seconds=10),
            )

        assert older.outcome == SettlementOutcome.IGNORED
        assert newer.outcome == SettlementOutcome.APPLIED
        assert SubscriptionRecord.objects.get(pk=subscription.pk).cancel_at_period_end is False

    def test_ended_subscription_cannot_change(self, payer, subscription, mock_stripe_adapter):
        SubscriptionRecord.objects.filter(pk=subscription.pk).update(
            status=SubscriptionStatus.CANCELED
        )

        with pytest.raises(SubscriptionNotActive):
            SubscriptionManager.schedule_cancellation(payer, subscription.id)

        mock_stripe_adapter.update_subscription.assert_not_called()

    def test_other_users_subscription(self, seller, subscription, mock_stripe_adapter):
        with pytest.raises(PaymentAccessDenied):
            SubscriptionManager.resume(seller, subscription.id)

        mock_stripe_adapter.update_subscription.assert_not_called()

    def test_unknown_subscription(self, payer, mock_stripe_adapter):
        with pytest.raises(SubscriptionNotFound):
            SubscriptionManager.details(payer, uuid4())

    def test_stripe_down_leaves_record_untouched(
        self, payer, subscription, mock_stripe_adapter, settings
    ):
        settings.STRIPE_MAX_RETRIES = 2
        mock_stripe_adapter.update_subscription.side_effect = StripeAPIUnavailableError(
            "Stripe is down"
        )

        with pytest.raises(ProcessorUnavailable):
            SubscriptionManager.schedule_cancellation(payer, subscription.id)

        assert mock_stripe_adapter.update_subscription.call_count == 2
        keys = {
            call.kwargs["idempotency_key"]
            for call in mock_stripe_adapter.update_subscription.call_args_list
        }
        assert len(keys) == 1
        assert SubscriptionRecord.objects.get(pk=subscription.pk).cancel_at_period_end is False

    def test_details_pulls_current_state(self, payer, subscription, mock_stripe_adapter):
        mock_stripe_adapter.retrieve_subscription.return_value = subscription_snapshot(
            "sub_test_sync", SubscriptionStatus.PAST_DUE
        )

        record = SubscriptionManager.details(payer, subscription.id)

        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.past_due_since is not None
        assert record.last_synced_at is not None

    def test_details_served_locally_when_stripe_down(
        self, payer, subscription, mock_stripe_adapter, settings
    ):
        settings.STRIPE_MAX_RETRIES = 1
        mock_stripe_adapter.retrieve_subscription.side_effect = StripeAPIUnavailableError(
            "Stripe is down"
        )

        record = SubscriptionManager.details(payer, subscription.id)

        assert record.pk == subscription.pk
        assert record.status == SubscriptionStatus.ACTIVE

    def test_details_of_ended_subscription_not_pulled(
        self, payer, subscription, mock_stripe_adapter
    ):
        SubscriptionRecord.objects.filter(pk=subscription.pk).update(
            status=SubscriptionStatus.CANCELED
        )

        record = SubscriptionManager.details(payer, subscription.id)

        assert record.status == SubscriptionStatus.CANCELED
        mock_stripe_adapter.retrieve_subscription.assert_not_called()

    def test_list_for_returns_own_records(self, payer, seller, subscription):
        SubscriptionRecordFactory(subscriber=seller)

        assert list(SubscriptionManager.list_for(payer)) == [subscription]

    def test_portal_session(self, payer, mock_stripe_adapter, settings):
        settings.BILLING_FRONTEND_URL = "https://app.example.com/"
        BillingAccountFactory(user=payer, stripe_customer_id="cus_test_portal")
        mock_stripe_adapter.create_billing_portal_session.return_value = PortalSessionResult(
            id="bps_test_1", url="https://billing.stripe.com/p/session/bps_test_1"
        )

        session = SubscriptionManager.portal_session(payer)

        assert session.url == "https://billing.stripe.com/p/session/bps_test_1"
        call = mock_stripe_adapter.create_billing_portal_session.call_args
        assert call.args[:2] == ("cus_test_portal", "https://app.example.com/account/billing")
        assert call.args[2].startswith("create_billing_portal_session:")

    def test_portal_requires_stripe_customer(self, payer, mock_stripe_adapter):
        BillingAccount.for_user(payer)

        with pytest.raises(BillingAccountNotFound):
            SubscriptionManager.portal_session(payer)

        mock_stripe_adapter.create_billing_portal_session.assert_not_called()
