"""
Tests for CheckoutService.

Stripe is mocked; tests cover item checks, the PENDING record written
before the session, affiliate snapshots and session failures.
"""

from __future__ import annotations

import pytest

from billing.adapters import CustomerResult
from billing.exceptions import (
    AlreadyOwned,
    ItemNotFound,
    ItemNotPurchasable,
    ProcessorUnavailable,
    StripeAPIUnavailableError,
    StripeInvalidRequestError,
)
from billing.models import BillingAccount, PaymentRecord
from billing.services import CheckoutService
from billing.state_machines import (
    ItemKind,
    PaymentStatus,
    RevenueOwnerType,
    SubscriptionStatus,
)
from billing.tests.factories import (
    BillingAccountFactory,
    CourseFactory,
    EntitlementFactory,
    SubscriptionRecordFactory,
    checkout_session,
)


@pytest.fixture
def stripe_ok(mock_stripe_adapter):
    """Stripe accepting customer and session creation."""
    mock_stripe_adapter.create_customer.return_value = CustomerResult(id="cus_test_new")
    mock_stripe_adapter.create_checkout_session.return_value = checkout_session(
        "cs_test_new",
        status="open",
        payment_status="unpaid",
        payment_intent=None,
        url="https://checkout.stripe.com/c/pay/cs_test_new",
    )
    return mock_stripe_adapter


# =============================================================================
# Test Class: Item Resolution
# =============================================================================


@pytest.mark.django_db
class TestResolveItem:
    """Tests for catalog lookups."""

    def test_course(self, course):
        item = CheckoutService.resolve_item(ItemKind.COURSE, str(course.id))

        assert item.amount_cents == 5000
        assert item.revenue_owner_type == RevenueOwnerType.SELLER
        assert item.revenue_owner_id == str(course.owner_id)
        assert item.checkout_mode == "payment"

    def test_community_is_subscription(self, community):
        item = CheckoutService.resolve_item(ItemKind.COMMUNITY, str(community.id))

        assert item.is_subscription
        assert item.checkout_mode == "subscription"
        assert item.revenue_owner_id == str(community.id)

    def test_unpublished_course(self, seller):
        course = CourseFactory(owner=seller, is_published=False)

        with pytest.raises(ItemNotFound):
            CheckoutService.resolve_item(ItemKind.COURSE, str(course.id))

    def test_malformed_id(self, db):
        with pytest.raises(ItemNotFound):
            CheckoutService.resolve_item(ItemKind.COURSE, "not-a-uuid")

    def test_unknown_kind(self, course):
        with pytest.raises(ItemNotFound):
            CheckoutService.resolve_item("bundle", str(course.id))

    def test_free_item(self, seller):
        course = CourseFactory(owner=seller, price_cents=0)

        with pytest.raises(ItemNotPurchasable):
            CheckoutService.resolve_item(ItemKind.COURSE, str(course.id))


# =============================================================================
# Test Class: Start Checkout
# =============================================================================


@pytest.mark.django_db
class TestStartCheckout:
    """Tests for opening a checkout."""

    def test_creates_pending_record_and_session(self, payer, course, stripe_ok):
        result = CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        assert result.session_id == "cs_test_new"
        assert result.redirect_url == "https://checkout.stripe.com/c/pay/cs_test_new"

        record = PaymentRecord.objects.get(pk=result.attempt_id)
        assert record.status == PaymentStatus.PENDING
        assert record.external_transaction_id == "cs_test_new"
        assert record.amount_cents == 5000
        assert record.revenue_owner_id == str(course.owner_id)
        assert record.affiliate is None

    def test_session_params(self, payer, course, stripe_ok):
        result = CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        params = stripe_ok.create_checkout_session.call_args.args[0]
        assert params.mode == "payment"
        assert params.client_reference_id == str(result.attempt_id)
        assert params.customer_id == "cus_test_new"
        assert params.metadata["item_id"] == str(course.id)
        assert params.idempotency_key.startswith(f"create_checkout_session:{result.attempt_id}:1:")
        assert params.line_items[0]["price_data"]["unit_amount"] == 5000

    def test_subscription_session_carries_metadata(self, payer, community, stripe_ok):
        CheckoutService.start_checkout(payer, ItemKind.COMMUNITY, str(community.id))

        params = stripe_ok.create_checkout_session.call_args.args[0]
        assert params.mode == "subscription"
        assert params.line_items == [{"price": community.stripe_price_id, "quantity": 1}]
        assert params.subscription_metadata["payer_id"] == str(payer.pk)

    def test_affiliate_snapshot_is_stored(self, payer, course, affiliate, stripe_ok):
        result = CheckoutService.start_checkout(
            payer, ItemKind.COURSE, str(course.id), affiliate_code="ALICE10"
        )

        record = result.payment
        assert record.affiliate == affiliate
        assert record.commission_rate_bps == 1000
        assert record.referral_attribution is not None
        assert record.attribution_expires_at == record.referral_attribution.expires_at

    def test_existing_customer_is_reused(self, payer, course, stripe_ok):
        BillingAccountFactory(user=payer, stripe_customer_id="cus_test_existing")

        CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        stripe_ok.create_customer.assert_not_called()
        params = stripe_ok.create_checkout_session.call_args.args[0]
        assert params.customer_id == "cus_test_existing"

    def test_customer_id_is_saved(self, payer, course, stripe_ok):
        CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        assert BillingAccount.objects.get(user=payer).stripe_customer_id == "cus_test_new"

    def test_currency_mismatch(self, payer, course, stripe_ok):
        with pytest.raises(ItemNotPurchasable):
            CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id), currency="eur")

        assert not PaymentRecord.objects.exists()


# =============================================================================
# Test Class: Ownership
# =============================================================================


@pytest.mark.django_db
class TestAlreadyOwned:
    """Purchases of items the payer can already use are rejected."""

    def test_owner_cannot_buy_own_course(self, seller, course, stripe_ok):
        with pytest.raises(AlreadyOwned):
            CheckoutService.start_checkout(seller, ItemKind.COURSE, str(course.id))

    def test_entitled_payer(self, payer, course, stripe_ok):
        EntitlementFactory(user=payer, item_kind=ItemKind.COURSE, item_id=str(course.id))

        with pytest.raises(AlreadyOwned):
            CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        stripe_ok.create_checkout_session.assert_not_called()

    def test_live_subscription(self, payer, community, stripe_ok):
        SubscriptionRecordFactory(
            subscriber=payer,
            community=community,
            status=SubscriptionStatus.PAST_DUE,
        )

        with pytest.raises(AlreadyOwned):
            CheckoutService.start_checkout(payer, ItemKind.COMMUNITY, str(community.id))

    def test_canceled_subscription_can_resubscribe(self, payer, community, stripe_ok):
        SubscriptionRecordFactory(
            subscriber=payer,
            community=community,
            status=SubscriptionStatus.CANCELED,
        )

        result = CheckoutService.start_checkout(payer, ItemKind.COMMUNITY, str(community.id))

        assert result.payment.status == PaymentStatus.PENDING


# =============================================================================
# Test Class: Stripe Failures
# =============================================================================


@pytest.mark.django_db
class TestSessionFailures:
    """Tests for Stripe errors while creating the session."""

    def test_unavailable_after_retries_cancels_record(self, payer, course, stripe_ok, settings):
        settings.STRIPE_MAX_RETRIES = 3
        stripe_ok.create_checkout_session.side_effect = StripeAPIUnavailableError("Stripe down")

        with pytest.raises(ProcessorUnavailable):
            CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        assert stripe_ok.create_checkout_session.call_count == 3
        record = PaymentRecord.objects.get(payer=payer)
        assert record.status == PaymentStatus.CANCELED
        assert record.failure_reason.startswith("checkout_session_failed")

    def test_transient_error_then_success(self, payer, course, stripe_ok):
        session = stripe_ok.create_checkout_session.return_value
        stripe_ok.create_checkout_session.side_effect = [
            StripeAPIUnavailableError("Stripe down"),
            session,
        ]

        result = CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        assert result.session_id == "cs_test_new"
        keys = {
            call.args[0].idempotency_key
            for call in stripe_ok.create_checkout_session.call_args_list
        }
        assert len(keys) == 1

    def test_permanent_error_is_not_retried(self, payer, course, stripe_ok):
        stripe_ok.create_checkout_session.side_effect = StripeInvalidRequestError(
            "No such price", stripe_code="resource_missing"
        )

        with pytest.raises(StripeInvalidRequestError):
            CheckoutService.start_checkout(payer, ItemKind.COURSE, str(course.id))

        assert stripe_ok.create_checkout_session.call_count == 1
        assert PaymentRecord.objects.get(payer=payer).status == PaymentStatus.CANCELED
