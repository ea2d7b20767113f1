"""
SubscriptionRecord model mirroring Stripe subscriptions.

Unlike PaymentRecord, the status here is not a locally driven state
machine: every processor signal overwrites it. The local decision is only
which tier the subscriber effectively holds (grace period handling).

Usage:
    from billing.models import SubscriptionRecord

    record = SubscriptionRecord.objects.get(external_subscription_id="sub_xxx")
    if record.is_past_grace_period(now):
        ...
"""

from __future__ import annotations

from datetime import timedelta

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import ItemKind, SubscriptionStatus, SubscriptionTier

# Statuses after which Stripe never reactivates the subscription
TERMINAL_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.UNPAID,
    }
)

# Statuses that grant the paid tier unconditionally
GOOD_STANDING_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
    }
)


class SubscriptionRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Local mirror of a Stripe subscription.

    Fields:
        subscriber: User paying for the subscription
        item_kind/item_id: Community or plan subscribed to
        external_subscription_id: Stripe Subscription ID (sub_xxx)
        tier: Tier paid for
        effective_tier: Tier currently granted (free after demotion)
        status: Last status reported by Stripe
        current_period_start/end: Current billing period
        cancel_at_period_end: Whether cancellation is scheduled
        past_due_since: Start of the current past_due stretch
        demoted_at: When the grace period ran out
        last_event_at: Stripe timestamp of the newest applied signal
        last_synced_at: When the periodic sweep last pulled this record
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    subscriber = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="subscription_records",
        help_text="User paying for the subscription",
    )

    item_kind = models.CharField(
        max_length=20,
        choices=ItemKind.choices,
        help_text="Community or plan subscribed to",
    )

    item_id = models.CharField(
        max_length=64,
        help_text="Identifier of the community or plan",
    )

    # ==========================================================================
    # Stripe Integration
    # ==========================================================================

    external_subscription_id = models.CharField(
        max_length=255,
        unique=True,
        help_text="Stripe Subscription ID (sub_xxx)",
    )

    stripe_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe Customer ID (cus_xxx)",
    )

    stripe_price_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stripe Price ID (price_xxx)",
    )

    # ==========================================================================
    # Tier & Status
    # ==========================================================================

    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        help_text="Tier the subscriber pays for",
    )

    effective_tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        default=SubscriptionTier.FREE,
        help_text="Tier currently granted",
    )

    status = models.CharField(
        max_length=20,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.INCOMPLETE,
        db_index=True,
        help_text="Status last reported by Stripe",
    )

    # ==========================================================================
    # Billing Period
    # ==========================================================================

    current_period_start = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Start of current billing period",
    )

    current_period_end = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of current billing period",
    )

    cancel_at_period_end = models.BooleanField(
        default=False,
        help_text="Whether subscription will cancel at period end",
    )

    # ==========================================================================
    # Lifecycle Timestamps
    # ==========================================================================

    canceled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When Stripe confirmed cancellation",
    )

    past_due_since = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Start of the current past_due stretch",
    )

    demoted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the tier was demoted after the grace period",
    )

    last_event_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Stripe creation time of the newest applied signal",
    )

    last_synced_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the record was last pulled from Stripe",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription Record"
        verbose_name_plural = "Subscription Records"
        indexes = [
            models.Index(fields=["subscriber", "status"], name="billing_sub_subscri_6e2b19_idx"),
            models.Index(fields=["item_kind", "item_id"], name="billing_sub_item_ki_0d7c53_idx"),
            models.Index(fields=["status", "past_due_since"], name="billing_sub_status_b81f4e_idx"),
        ]

    def __str__(self) -> str:
        return (
            f"SubscriptionRecord({self.external_subscription_id}, "
            f"{self.status}, {self.effective_tier})"
        )

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_in_good_standing(self) -> bool:
        return self.status in GOOD_STANDING_STATUSES

    def grace_period_ends_at(self):
        if self.past_due_since is None:
            return None
        return self.past_due_since + timedelta(
            days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS
        )

    def is_past_grace_period(self, now) -> bool:
        """True when past_due has lasted longer than the grace period."""
        ends_at = self.grace_period_ends_at()
        return (
            self.status == SubscriptionStatus.PAST_DUE
            and ends_at is not None
            and now > ends_at
        )
