"""
Catalog models for purchasable items.

Course, Community and SubscriptionPlan are owned by the content side of the
platform. Billing reads their price, currency, Stripe price ids and affiliate
settings at checkout time and never mutates them.

Usage:
    from billing.models import Course

    course = Course.objects.filter(id=item_id, is_published=True).first()
    if course is None:
        raise ItemNotFound(...)
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import SubscriptionTier


class Course(UUIDPrimaryKeyMixin, BaseModel):
    """
    A course sold as a one-time purchase.

    Fields:
        owner: Seller receiving the revenue
        title: Display title (used as the Stripe line item name)
        price_cents: Price in smallest currency unit (0 means free)
        currency: ISO 4217 currency code
        is_published: Only published courses can be bought
        stripe_price_id: Optional pre-created Stripe Price
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="owned_courses",
        help_text="Seller receiving the revenue for this course",
    )

    title = models.CharField(
        max_length=200,
        help_text="Course title",
    )

    price_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Price in smallest currency unit (0 = free)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    is_published = models.BooleanField(
        default=False,
        help_text="Whether the course is listed and purchasable",
    )

    stripe_price_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stripe Price ID (price_xxx); inline price_data is used when empty",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Course"
        verbose_name_plural = "Courses"

    def __str__(self) -> str:
        return f"Course({self.title})"

    @property
    def is_free(self) -> bool:
        return self.price_cents == 0


class Community(UUIDPrimaryKeyMixin, BaseModel):
    """
    A paid community with a monthly membership subscription.

    The affiliate fields are the community's current settings. Commission
    rates are copied onto each referral attribution when it is captured,
    so changing them here never rewrites settled commissions.
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="owned_communities",
        help_text="Community owner",
    )

    name = models.CharField(
        max_length=200,
        help_text="Community name",
    )

    monthly_price_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Monthly membership price in smallest currency unit (0 = free)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    default_member_tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        default=SubscriptionTier.STANDARD,
        help_text="Tier granted to paying members",
    )

    affiliate_commission_rate_bps = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Affiliate commission in basis points (1000 = 10%); platform default when empty",
    )

    affiliate_attribution_days = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Days a referral click counts toward a purchase; platform default when empty",
    )

    stripe_price_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stripe recurring Price ID (price_xxx)",
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Whether new memberships can be purchased",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Community"
        verbose_name_plural = "Communities"

    def __str__(self) -> str:
        return f"Community({self.name})"

    @property
    def is_free(self) -> bool:
        return self.monthly_price_cents == 0


class SubscriptionPlan(UUIDPrimaryKeyMixin, BaseModel):
    """
    A platform subscription plan (basic, premium).

    Buying a plan sets BillingAccount.subscription_tier in addition to
    the plan entitlement.
    """

    code = models.SlugField(
        max_length=50,
        unique=True,
        help_text="Stable plan code (e.g., 'premium-monthly')",
    )

    name = models.CharField(
        max_length=100,
        help_text="Display name",
    )

    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        help_text="Tier granted while the subscription is in good standing",
    )

    price_cents = models.PositiveBigIntegerField(
        help_text="Price per interval in smallest currency unit",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    interval = models.CharField(
        max_length=10,
        default="month",
        help_text="Billing interval: 'month' or 'year'",
    )

    stripe_price_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stripe recurring Price ID (price_xxx)",
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Whether the plan can be purchased",
    )

    class Meta:
        ordering = ["price_cents"]
        verbose_name = "Subscription Plan"
        verbose_name_plural = "Subscription Plans"

    def __str__(self) -> str:
        return f"SubscriptionPlan({self.code}, {self.tier})"
