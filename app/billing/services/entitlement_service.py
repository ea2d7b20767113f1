"""
Entitlement grants and revocations.

Entitlements are keyed by (user, item_kind, item_id), so granting is an
upsert: a payment settled twice, or a subscription event replayed, lands
on the same row.

Usage:
    from billing.services import EntitlementGrantor

    EntitlementGrantor.grant_for_payment(payment)
    EntitlementGrantor.has_access(user, "course", str(course.id))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from django.core.exceptions import ValidationError as DjangoValidationError
from django.utils import timezone

from core.services import BaseService

from billing.models import (
    BillingAccount,
    Community,
    Course,
    Entitlement,
    PaymentRecord,
    SubscriptionPlan,
)
from billing.state_machines import ItemKind, PaymentStatus, SubscriptionTier

if TYPE_CHECKING:
    from billing.models import SubscriptionRecord


class EntitlementGrantor(BaseService):
    """
    Grants, demotes and revokes access to purchased items.

    Tiers:
        course -> standard
        community -> the community's default member tier
        plan -> the plan tier, mirrored onto BillingAccount.subscription_tier
    """

    # ==========================================================================
    # Tier Resolution
    # ==========================================================================

    @classmethod
    def tier_for_item(cls, item_kind: str, item_id: str) -> str:
        if item_kind == ItemKind.COMMUNITY:
            tier = (
                Community.objects.filter(id=item_id)
                .values_list("default_member_tier", flat=True)
                .first()
            )
            return tier or SubscriptionTier.STANDARD
        if item_kind == ItemKind.PLAN:
            tier = (
                SubscriptionPlan.objects.filter(id=item_id)
                .values_list("tier", flat=True)
                .first()
            )
            return tier or SubscriptionTier.STANDARD
        return SubscriptionTier.STANDARD

    # ==========================================================================
    # Grant / Revoke
    # ==========================================================================

    @classmethod
    def grant(
        cls,
        user,
        item_kind: str,
        item_id: str,
        tier: str,
        source_payment: PaymentRecord | None = None,
    ) -> Entitlement:
        """
        Create or reactivate the entitlement for (user, item).

        Must run inside a transaction; the row is locked while updated.
        """
        now = timezone.now()
        entitlement, created = Entitlement.objects.select_for_update().get_or_create(
            user=user,
            item_kind=item_kind,
            item_id=str(item_id),
            defaults={
                "tier": tier,
                "granted_at": now,
                "source_payment": source_payment,
            },
        )

        if not created:
            update_fields = []
            if entitlement.revoked_at is not None:
                entitlement.revoked_at = None
                entitlement.revoke_reason = None
                entitlement.granted_at = now
                update_fields += ["revoked_at", "revoke_reason", "granted_at"]
            if entitlement.tier != tier:
                entitlement.tier = tier
                update_fields.append("tier")
            if source_payment is not None and entitlement.source_payment_id != source_payment.id:
                entitlement.source_payment = source_payment
                update_fields.append("source_payment")
            if update_fields:
                entitlement.save(update_fields=[*update_fields, "updated_at"])

        if item_kind == ItemKind.PLAN:
            cls._set_account_tier(user, tier)

        cls.get_logger().info(
            "Entitlement granted",
            extra={
                "user_id": str(user.pk),
                "item_kind": item_kind,
                "item_id": str(item_id),
                "tier": tier,
                "entitlement_created": created,
            },
        )
        return entitlement

    @classmethod
    def grant_for_payment(cls, payment: PaymentRecord) -> Entitlement:
        """Grant access for a payment that just completed."""
        tier = cls.tier_for_item(payment.item_kind, payment.item_id)
        return cls.grant(
            payment.payer,
            payment.item_kind,
            payment.item_id,
            tier,
            source_payment=payment,
        )

    @classmethod
    def revoke(cls, user, item_kind: str, item_id: str, reason: str) -> int:
        """Revoke the active entitlement for (user, item). Returns rows changed."""
        revoked = Entitlement.objects.filter(
            user=user,
            item_kind=item_kind,
            item_id=str(item_id),
            revoked_at__isnull=True,
        ).update(revoked_at=timezone.now(), revoke_reason=reason[:100])

        if item_kind == ItemKind.PLAN:
            cls._set_account_tier(user, SubscriptionTier.FREE)

        if revoked:
            cls.get_logger().info(
                "Entitlement revoked",
                extra={
                    "user_id": str(user.pk),
                    "item_kind": item_kind,
                    "item_id": str(item_id),
                    "reason": reason,
                },
            )
        return revoked

    @classmethod
    def revoke_for_payment(cls, payment: PaymentRecord, reason: str) -> int:
        """
        Revoke access granted by a refunded payment.

        Renewal payments never granted access on their own; access for a
        subscription follows its SubscriptionRecord instead.
        """
        if payment.is_renewal:
            return 0
        return cls.revoke(payment.payer, payment.item_kind, payment.item_id, reason)

    @classmethod
    def apply_subscription_tier(cls, record: SubscriptionRecord) -> None:
        """
        Project a SubscriptionRecord's effective tier onto the entitlement.

        Terminal subscriptions revoke; demotion keeps the row at the free
        tier so a later recovery restores it in place.
        """
        if record.is_terminal:
            cls.revoke(
                record.subscriber,
                record.item_kind,
                record.item_id,
                reason=f"subscription_{record.status}",
            )
            return

        existing = Entitlement.objects.filter(
            user=record.subscriber,
            item_kind=record.item_kind,
            item_id=record.item_id,
        ).first()
        if record.effective_tier == SubscriptionTier.FREE and existing is None:
            return

        source_payment = (
            PaymentRecord.objects.filter(
                processor_subscription_id=record.external_subscription_id,
                status=PaymentStatus.COMPLETED,
            )
            .order_by("created_at")
            .first()
        )
        cls.grant(
            record.subscriber,
            record.item_kind,
            record.item_id,
            record.effective_tier,
            source_payment=source_payment,
        )

    @classmethod
    def _set_account_tier(cls, user, tier: str) -> None:
        account = BillingAccount.for_user(user)
        if account.subscription_tier != tier:
            BillingAccount.objects.filter(pk=account.pk).update(subscription_tier=tier)

    # ==========================================================================
    # Access Queries
    # ==========================================================================

    @classmethod
    def is_owner(cls, user, item_kind: str, item_id: str) -> bool:
        try:
            if item_kind == ItemKind.COURSE:
                return Course.objects.filter(id=item_id, owner=user).exists()
            if item_kind == ItemKind.COMMUNITY:
                return Community.objects.filter(id=item_id, owner=user).exists()
        except (DjangoValidationError, ValueError):
            # Malformed UUIDs
            return False
        return False

    @classmethod
    def active_entitlement(cls, user, item_kind: str, item_id: str) -> Entitlement | None:
        return (
            Entitlement.objects.filter(
                user=user,
                item_kind=item_kind,
                item_id=str(item_id),
                revoked_at__isnull=True,
            )
            .exclude(tier=SubscriptionTier.FREE)
            .first()
        )

    @classmethod
    def has_access(cls, user, item_kind: str, item_id: str) -> bool:
        """Whether the user may use the item right now."""
        if cls.is_owner(user, item_kind, item_id):
            return True
        return cls.active_entitlement(user, item_kind, item_id) is not None

    @classmethod
    def summary_for(cls, user, item_kind: str, item_id: str) -> dict[str, Any]:
        """Access summary returned by the verify and access endpoints."""
        if cls.is_owner(user, item_kind, item_id):
            return {
                "has_access": True,
                "reason": "owner",
                "tier": None,
                "granted_at": None,
            }

        entitlement = cls.active_entitlement(user, item_kind, item_id)
        if entitlement is None:
            return {
                "has_access": False,
                "reason": "not_entitled",
                "tier": None,
                "granted_at": None,
            }
        return {
            "has_access": True,
            "reason": "entitled",
            "tier": entitlement.tier,
            "granted_at": entitlement.granted_at,
        }
