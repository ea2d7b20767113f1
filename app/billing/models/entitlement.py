"""
Entitlement model: durable record that a user has access to an item.

One row per (user, item). A refund flags the row revoked instead of
deleting it, and a later purchase of the same item reactivates that row,
so the unique constraint holds under any sequence of grants and
revocations.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import ItemKind, SubscriptionTier


class Entitlement(UUIDPrimaryKeyMixin, BaseModel):
    """
    Access grant for a (user, item) pair.

    Fields:
        user: User holding the access
        item_kind/item_id: Item the access applies to
        tier: Tier granted (standard for courses, plan/community tier otherwise)
        granted_at: When access was (re)granted
        source_payment: Payment that produced the grant
        revoked_at/revoke_reason: Set when access is withdrawn
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="entitlements",
        help_text="User holding this entitlement",
    )

    item_kind = models.CharField(
        max_length=20,
        choices=ItemKind.choices,
        help_text="Kind of item this entitlement grants access to",
    )

    item_id = models.CharField(
        max_length=64,
        help_text="Identifier of the item",
    )

    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
        default=SubscriptionTier.STANDARD,
        help_text="Access tier granted",
    )

    granted_at = models.DateTimeField(
        default=timezone.now,
        help_text="When access was granted or last reactivated",
    )

    source_payment = models.ForeignKey(
        "billing.PaymentRecord",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="entitlements",
        help_text="Payment that produced this grant",
    )

    revoked_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When access was revoked (null while active)",
    )

    revoke_reason = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        help_text="Why access was revoked (refund, chargeback, subscription_canceled)",
    )

    class Meta:
        ordering = ["-granted_at"]
        verbose_name = "Entitlement"
        verbose_name_plural = "Entitlements"
        constraints = [
            models.UniqueConstraint(
                fields=["user", "item_kind", "item_id"],
                name="entitlement_unique_user_item",
            ),
        ]
        indexes = [
            models.Index(fields=["item_kind", "item_id"], name="billing_ent_item_ki_a4d8f0_idx"),
        ]

    def __str__(self) -> str:
        state = "revoked" if self.revoked_at else "active"
        return f"Entitlement({self.user_id}, {self.item_kind}:{self.item_id}, {state})"

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None and self.tier != SubscriptionTier.FREE
