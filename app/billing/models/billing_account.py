"""
BillingAccount model linking a user to their Stripe customer.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import SubscriptionTier


class BillingAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    Per-user billing state.

    Fields:
        user: Account owner
        stripe_customer_id: Stripe Customer ID (cus_xxx), created on first checkout
        subscription_tier: Platform tier granted by the user's plan subscription
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="billing_account",
        help_text="User owning this billing account",
    )

    stripe_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Customer ID (cus_xxx)",
    )

    subscription_tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        default=SubscriptionTier.FREE,
        db_index=True,
        help_text="Platform tier currently granted to the user",
    )

    class Meta:
        verbose_name = "Billing Account"
        verbose_name_plural = "Billing Accounts"

    def __str__(self) -> str:
        return f"BillingAccount({self.user_id}, {self.subscription_tier})"

    @classmethod
    def for_user(cls, user) -> BillingAccount:
        """Return the user's account, creating it on first use."""
        account, _ = cls.objects.get_or_create(user=user)
        return account
