"""
Shared pytest fixtures for billing tests.

Provides payers, catalog items, affiliates and payment records in the
states the services, webhooks and views act on.

Usage:
    def test_refund(completed_payment):
        RefundProcessor.apply_refund(RefundSignal(...))
"""

import pytest

from billing.tests.factories import (
    AffiliateFactory,
    CommunityFactory,
    CourseFactory,
    PaymentRecordFactory,
    ReferralAttributionFactory,
    SubscriptionPlanFactory,
    UserFactory,
    complete_payment,
)


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
def payer(db):
    """User buying things."""
    return UserFactory()


@pytest.fixture
def seller(db):
    """User owning the catalog items."""
    return UserFactory()


# =============================================================================
# Catalog
# =============================================================================


@pytest.fixture
def course(db, seller):
    """Published $50 course."""
    return CourseFactory(owner=seller)


@pytest.fixture
def community(db, seller):
    """Community with a $20/month membership."""
    return CommunityFactory(owner=seller)


@pytest.fixture
def plan(db):
    """Premium platform plan."""
    return SubscriptionPlanFactory()


# =============================================================================
# Affiliates
# =============================================================================


@pytest.fixture
def affiliate(db):
    """Platform-wide affiliate earning 10%."""
    return AffiliateFactory(referral_code="ALICE10", commission_rate_bps=1000)


@pytest.fixture
def attribution(db, affiliate, payer):
    """Live 30-day attribution of the payer to the affiliate."""
    return ReferralAttributionFactory(affiliate=affiliate, referred_user=payer)


# =============================================================================
# Payment Records
# =============================================================================


@pytest.fixture
def pending_payment(db, payer, course):
    """PENDING course purchase with a Checkout Session attached."""
    return PaymentRecordFactory(
        payer=payer,
        course=course,
        external_transaction_id="cs_test_pending",
    )


@pytest.fixture
def attributed_payment(db, payer, course, affiliate, attribution):
    """PENDING course purchase carrying the affiliate snapshot."""
    return PaymentRecordFactory(
        payer=payer,
        course=course,
        external_transaction_id="cs_test_attributed",
        referral_attribution=attribution,
        affiliate=affiliate,
        commission_rate_bps=attribution.commission_rate_bps,
        attributed_at=attribution.attributed_at,
        attribution_expires_at=attribution.expires_at,
    )


@pytest.fixture
def completed_payment(pending_payment):
    """COMPLETED course purchase with its entitlement and revenue applied."""
    return complete_payment(pending_payment, payment_intent_id="pi_test_pending")


@pytest.fixture
def completed_attributed_payment(attributed_payment):
    """COMPLETED purchase with a PENDING commission credited."""
    return complete_payment(attributed_payment, payment_intent_id="pi_test_attributed")


