"""
Serializers for billing API.

Serializer Hierarchy:
    CheckoutRequestSerializer: Start a checkout
    CheckoutResponseSerializer: Redirect URL and attempt id
    VerifySessionSerializer: Session id returned by the Stripe redirect
    VerifyResponseSerializer: Payment status and access summary
    PaymentRecordSerializer: Payment history rows
    EntitlementSerializer: Active access grants
    AccessSummarySerializer: Access check result
    ReferralClickSerializer: Recorded referral attribution
    SubscriptionRecordSerializer: Subscription status and billing period
    PortalSessionSerializer: Billing Portal redirect URL

Design Decisions:
    - Request and response serializers are separate
    - Amounts are exposed in cents, as stored
"""

from __future__ import annotations

from datetime import datetime

from rest_framework import serializers

from billing.models import Entitlement, PaymentRecord, ReferralAttribution, SubscriptionRecord
from billing.state_machines import ItemKind, SubscriptionStatus


# =============================================================================
# Checkout
# =============================================================================


class CheckoutRequestSerializer(serializers.Serializer):
    item_kind = serializers.ChoiceField(choices=ItemKind.choices)
    item_id = serializers.CharField(max_length=64)
    affiliate_code = serializers.CharField(
        max_length=32,
        required=False,
        allow_blank=True,
        allow_null=True,
    )
    currency = serializers.CharField(
        min_length=3,
        max_length=3,
        required=False,
        allow_null=True,
    )


class CheckoutResponseSerializer(serializers.Serializer):
    attempt_id = serializers.UUIDField()
    session_id = serializers.CharField()
    redirect_url = serializers.URLField()
    status = serializers.CharField()


# =============================================================================
# Verify
# =============================================================================


class VerifySessionSerializer(serializers.Serializer):
    session_id = serializers.CharField(max_length=255)


class AccessSummarySerializer(serializers.Serializer):
    has_access = serializers.BooleanField()
    reason = serializers.CharField()
    tier = serializers.CharField(allow_null=True)
    granted_at = serializers.DateTimeField(allow_null=True)


class VerifyResponseSerializer(serializers.Serializer):
    attempt_id = serializers.UUIDField()
    status = serializers.CharField()
    outcome = serializers.CharField()
    item_kind = serializers.CharField()
    item_id = serializers.CharField()
    entitlement = AccessSummarySerializer()


# =============================================================================
# History and Access
# =============================================================================


class PaymentRecordSerializer(serializers.ModelSerializer):
    """
    Payment history row for the payer.

    Stripe ids other than the session id are internal and not exposed.
    """

    class Meta:
        model = PaymentRecord
        fields = [
            "id",
            "item_kind",
            "item_id",
            "amount_cents",
            "currency",
            "refunded_amount_cents",
            "status",
            "external_transaction_id",
            "created_at",
            "completed_at",
            "refunded_at",
        ]
        read_only_fields = fields


class EntitlementSerializer(serializers.ModelSerializer):
    class Meta:
        model = Entitlement
        fields = ["id", "item_kind", "item_id", "tier", "granted_at"]
        read_only_fields = fields


class ReferralClickSerializer(serializers.ModelSerializer):
    referral_code = serializers.CharField(source="affiliate.referral_code", read_only=True)

    class Meta:
        model = ReferralAttribution
        fields = ["id", "referral_code", "commission_rate_bps", "attributed_at", "expires_at"]
        read_only_fields = fields


# =============================================================================
# Subscriptions
# =============================================================================


class SubscriptionRecordSerializer(serializers.ModelSerializer):
    """
    The caller's view of a subscription.

    ``tier`` is what they pay for; ``effective_tier`` is what they currently
    get (free once a past_due grace period runs out).
    """

    grace_period_ends_at = serializers.SerializerMethodField()

    class Meta:
        model = SubscriptionRecord
        fields = [
            "id",
            "item_kind",
            "item_id",
            "tier",
            "effective_tier",
            "status",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "canceled_at",
            "grace_period_ends_at",
        ]
        read_only_fields = fields

    def get_grace_period_ends_at(self, obj: SubscriptionRecord) -> datetime | None:
        if obj.status != SubscriptionStatus.PAST_DUE:
            return None
        return obj.grace_period_ends_at()


class PortalSessionSerializer(serializers.Serializer):
    url = serializers.URLField()
