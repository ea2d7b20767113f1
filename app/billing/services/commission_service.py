"""
Affiliate commission service.

Handles the affiliate side of a purchase:
- Recording referral clicks and pinning the commission rate
- Attaching an attribution snapshot to a checkout
- Crediting the commission once the payment completes
- Confirming commissions after the hold period and paying them out
- Reversing commissions when the payment is refunded

Commission amounts are integers: amount_cents * rate_bps // 10000.
Balances are changed with F() expressions in the same transaction that
writes the ledger row.

Usage:
    from billing.services import CommissionCalculator

    attribution = CommissionCalculator.record_click("ALICE10", referred_user)
    snapshot = CommissionCalculator.attribute_checkout("ALICE10", payer, item)
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db.models import F, Sum
from django.utils import timezone
from django_fsm import can_proceed

from core.services import BaseService

from billing.exceptions import InvalidStateTransitionError
from billing.models import (
    Affiliate,
    AffiliateLedgerEntry,
    Community,
    PaymentRecord,
    ReferralAttribution,
)
from billing.services.types import AttributionSnapshot
from billing.state_machines import CommissionStatus, ItemKind, LedgerEntryKind

if TYPE_CHECKING:
    from billing.services.types import CatalogItem

BPS_DENOMINATOR = 10000


class CommissionCalculator(BaseService):
    """
    Affiliate attribution and the commission ledger.

    Rate precedence (resolved once, at click time):
        1. Community.affiliate_commission_rate_bps
        2. Affiliate.commission_rate_bps
        3. settings.AFFILIATE_DEFAULT_COMMISSION_RATE_BPS
    """

    # ==========================================================================
    # Rates and Windows
    # ==========================================================================

    @staticmethod
    def commission_for(amount_cents: int, rate_bps: int) -> int:
        return amount_cents * rate_bps // BPS_DENOMINATOR

    @classmethod
    def resolve_rate(cls, affiliate: Affiliate, community: Community | None = None) -> int:
        community = community or affiliate.community
        if community is not None and community.affiliate_commission_rate_bps is not None:
            return community.affiliate_commission_rate_bps
        if affiliate.commission_rate_bps is not None:
            return affiliate.commission_rate_bps
        return settings.AFFILIATE_DEFAULT_COMMISSION_RATE_BPS

    @classmethod
    def window_days(cls, affiliate: Affiliate, community: Community | None = None) -> int:
        community = community or affiliate.community
        if community is not None and community.affiliate_attribution_days is not None:
            return community.affiliate_attribution_days
        return settings.AFFILIATE_ATTRIBUTION_WINDOW_DAYS

    @classmethod
    def get_active_affiliate(cls, referral_code: str | None) -> Affiliate | None:
        if not referral_code:
            return None
        return (
            Affiliate.objects.select_related("community")
            .filter(referral_code=referral_code, is_active=True)
            .first()
        )

    # ==========================================================================
    # Attribution
    # ==========================================================================

    @classmethod
    def record_click(cls, referral_code: str, referred_user) -> ReferralAttribution | None:
        """
        Record a referral link click and pin the current rate.

        Returns None for unknown or inactive codes and for self-referrals.
        """
        affiliate = cls.get_active_affiliate(referral_code)
        if affiliate is None:
            cls.get_logger().info(
                "Referral click ignored: unknown or inactive code",
                extra={"referral_code": referral_code},
            )
            return None

        Affiliate.objects.filter(pk=affiliate.pk).update(clicks=F("clicks") + 1)

        if affiliate.user_id == referred_user.pk:
            cls.get_logger().info(
                "Referral click ignored: self-referral",
                extra={"affiliate_id": str(affiliate.id)},
            )
            return None

        now = timezone.now()
        attribution = ReferralAttribution.objects.create(
            affiliate=affiliate,
            referred_user=referred_user,
            commission_rate_bps=cls.resolve_rate(affiliate),
            attributed_at=now,
            expires_at=now + timedelta(days=cls.window_days(affiliate)),
        )

        cls.get_logger().info(
            "Referral attributed",
            extra={
                "affiliate_id": str(affiliate.id),
                "referred_user_id": str(referred_user.pk),
                "rate_bps": attribution.commission_rate_bps,
                "expires_at": attribution.expires_at.isoformat(),
            },
        )
        return attribution

    @classmethod
    def _applies_to_item(cls, affiliate: Affiliate, item: CatalogItem) -> bool:
        """Community-scoped codes only earn on that community's membership."""
        if affiliate.community_id is None:
            return True
        return item.kind == ItemKind.COMMUNITY and str(affiliate.community_id) == item.id

    @classmethod
    def attribute_checkout(
        cls,
        referral_code: str | None,
        payer,
        item: CatalogItem,
    ) -> AttributionSnapshot | None:
        """
        Find the attribution that applies to a new checkout.

        With a code, the payer's live attribution to that affiliate is used,
        or one is captured now. Without a code, the payer's most recent
        live attribution applies.
        """
        now = timezone.now()
        live = ReferralAttribution.objects.select_related("affiliate").filter(
            referred_user=payer,
            attributed_at__lte=now,
            expires_at__gte=now,
            affiliate__is_active=True,
        )

        attribution = None
        if referral_code:
            affiliate = cls.get_active_affiliate(referral_code)
            if affiliate is None or affiliate.user_id == payer.pk:
                cls.get_logger().info(
                    "Checkout referral code ignored",
                    extra={"referral_code": referral_code, "payer_id": str(payer.pk)},
                )
            elif cls._applies_to_item(affiliate, item):
                attribution = live.filter(affiliate=affiliate).first()
                if attribution is None:
                    attribution = cls.record_click(referral_code, payer)

        if attribution is None:
            for candidate in live.order_by("-attributed_at"):
                if cls._applies_to_item(candidate.affiliate, item):
                    attribution = candidate
                    break

        if attribution is None:
            return None

        return AttributionSnapshot(
            affiliate=attribution.affiliate,
            attribution=attribution,
            rate_bps=attribution.commission_rate_bps,
            attributed_at=attribution.attributed_at,
            expires_at=attribution.expires_at,
        )

    # ==========================================================================
    # Crediting
    # ==========================================================================

    @classmethod
    def credit_for_payment(cls, payment: PaymentRecord) -> AffiliateLedgerEntry | None:
        """
        Credit the commission for a payment that just completed.

        Runs inside the settlement transaction. Renewals, payments made
        outside the attribution window and zero commissions earn nothing.
        """
        if not payment.has_attribution or payment.is_renewal:
            return None

        if not (
            payment.attributed_at is not None
            and payment.attribution_expires_at is not None
            and payment.attributed_at <= payment.created_at <= payment.attribution_expires_at
        ):
            cls.get_logger().info(
                "Commission skipped: payment outside attribution window",
                extra={"payment_id": str(payment.id), "affiliate_id": str(payment.affiliate_id)},
            )
            return None

        amount = cls.commission_for(payment.amount_cents, payment.commission_rate_bps)
        if amount <= 0:
            return None

        entry, created = AffiliateLedgerEntry.objects.get_or_create(
            payment=payment,
            kind=LedgerEntryKind.COMMISSION,
            defaults={
                "affiliate_id": payment.affiliate_id,
                "amount_cents": amount,
                "currency": payment.currency,
                "rate_bps": payment.commission_rate_bps,
            },
        )
        if created:
            Affiliate.objects.filter(pk=payment.affiliate_id).update(
                pending_balance_cents=F("pending_balance_cents") + amount,
                total_earned_cents=F("total_earned_cents") + amount,
            )
            cls.get_logger().info(
                "Commission credited",
                extra={
                    "payment_id": str(payment.id),
                    "affiliate_id": str(payment.affiliate_id),
                    "amount_cents": amount,
                    "rate_bps": payment.commission_rate_bps,
                },
            )
        return entry

    # ==========================================================================
    # Confirmation and Payout
    # ==========================================================================

    @classmethod
    def confirm_matured(cls, now=None) -> int:
        """
        Confirm pending commissions whose hold period has elapsed.

        Returns the number of commissions confirmed.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(days=settings.AFFILIATE_COMMISSION_HOLD_DAYS)
        entry_ids = list(
            AffiliateLedgerEntry.objects.filter(
                kind=LedgerEntryKind.COMMISSION,
                status=CommissionStatus.PENDING,
                created_at__lte=cutoff,
            ).values_list("id", flat=True)
        )

        confirmed = 0
        for entry_id in entry_ids:
            with cls.atomic():
                entry = (
                    AffiliateLedgerEntry.objects.select_for_update()
                    .filter(id=entry_id, status=CommissionStatus.PENDING)
                    .first()
                )
                if entry is None:
                    continue
                entry.confirm()
                entry.save()
                confirmed += 1

        if confirmed:
            cls.get_logger().info(
                "Matured commissions confirmed",
                extra={"confirmed": confirmed, "cutoff": cutoff.isoformat()},
            )
        return confirmed

    @classmethod
    def mark_paid(cls, entry_id) -> AffiliateLedgerEntry:
        """
        Pay out a confirmed commission.

        Pending clawbacks against the same payment are netted into the
        payout and settled with it.

        Raises:
            InvalidStateTransitionError: If the commission is not confirmed
        """
        with cls.atomic():
            entry = AffiliateLedgerEntry.objects.select_for_update().get(
                id=entry_id, kind=LedgerEntryKind.COMMISSION
            )
            if not can_proceed(entry.mark_paid):
                raise InvalidStateTransitionError(
                    message=f"Cannot pay commission in status {entry.status}",
                    details={"entry_id": str(entry.id), "status": entry.status},
                )
            entry.mark_paid()
            entry.save()

            net = entry.amount_cents
            for clawback in AffiliateLedgerEntry.objects.select_for_update().filter(
                payment_id=entry.payment_id,
                kind=LedgerEntryKind.CLAWBACK,
                status=CommissionStatus.PENDING,
            ):
                clawback.settle_clawback()
                clawback.save()
                net += clawback.amount_cents

            Affiliate.objects.filter(pk=entry.affiliate_id).update(
                pending_balance_cents=F("pending_balance_cents") - net,
                paid_out_cents=F("paid_out_cents") + net,
            )

        cls.get_logger().info(
            "Commission paid",
            extra={
                "entry_id": str(entry.id),
                "affiliate_id": str(entry.affiliate_id),
                "net_cents": net,
            },
        )
        return entry

    # ==========================================================================
    # Reversal
    # ==========================================================================

    @classmethod
    def _lock_commission(cls, payment: PaymentRecord) -> AffiliateLedgerEntry | None:
        return (
            AffiliateLedgerEntry.objects.select_for_update()
            .filter(payment=payment, kind=LedgerEntryKind.COMMISSION)
            .first()
        )

    @classmethod
    def claw_back_partial(
        cls,
        payment: PaymentRecord,
        refunded_cents: int,
        source_reference: str,
    ) -> AffiliateLedgerEntry | None:
        """
        Offset the commission for a partial refund.

        Writes a negative entry proportional to the refunded share. The
        entry is PENDING while the commission is unpaid, and CLAWED_BACK
        when it is recovered from an already paid commission.
        """
        commission = cls._lock_commission(payment)
        if commission is None or commission.status == CommissionStatus.REFUNDED:
            return None

        share = commission.amount_cents * refunded_cents // payment.amount_cents
        if share <= 0:
            return None

        status = (
            CommissionStatus.CLAWED_BACK
            if commission.status == CommissionStatus.PAID
            else CommissionStatus.PENDING
        )
        clawback, created = AffiliateLedgerEntry.objects.get_or_create(
            payment=payment,
            kind=LedgerEntryKind.CLAWBACK,
            source_reference=source_reference,
            defaults={
                "affiliate_id": commission.affiliate_id,
                "amount_cents": -share,
                "currency": commission.currency,
                "rate_bps": commission.rate_bps,
                "status": status,
            },
        )
        if created:
            Affiliate.objects.filter(pk=commission.affiliate_id).update(
                pending_balance_cents=F("pending_balance_cents") - share,
                total_earned_cents=F("total_earned_cents") - share,
            )
            cls.get_logger().info(
                "Partial commission clawback recorded",
                extra={
                    "payment_id": str(payment.id),
                    "affiliate_id": str(commission.affiliate_id),
                    "amount_cents": -share,
                    "status": status,
                },
            )
        return clawback

    @classmethod
    def reverse_for_refund(
        cls,
        payment: PaymentRecord,
        source_reference: str,
    ) -> AffiliateLedgerEntry | None:
        """
        Reverse whatever commission remains after a full refund.

        An unpaid commission (and its pending clawbacks) moves to REFUNDED.
        A paid commission is left untouched and a CLAWED_BACK entry for the
        remaining amount is written against it.
        """
        commission = cls._lock_commission(payment)
        if commission is None or commission.status == CommissionStatus.REFUNDED:
            return None

        clawbacks = AffiliateLedgerEntry.objects.select_for_update().filter(
            payment=payment, kind=LedgerEntryKind.CLAWBACK
        )
        already_clawed = clawbacks.aggregate(total=Sum("amount_cents"))["total"] or 0
        remaining = commission.amount_cents + already_clawed

        if can_proceed(commission.mark_refunded):
            commission.mark_refunded()
            commission.save()
            for clawback in clawbacks.filter(status=CommissionStatus.PENDING):
                clawback.mark_refunded()
                clawback.save()
            result = commission
        else:
            if remaining <= 0:
                return None
            result, _ = AffiliateLedgerEntry.objects.get_or_create(
                payment=payment,
                kind=LedgerEntryKind.CLAWBACK,
                source_reference=source_reference,
                defaults={
                    "affiliate_id": commission.affiliate_id,
                    "amount_cents": -remaining,
                    "currency": commission.currency,
                    "rate_bps": commission.rate_bps,
                    "status": CommissionStatus.CLAWED_BACK,
                },
            )

        Affiliate.objects.filter(pk=commission.affiliate_id).update(
            pending_balance_cents=F("pending_balance_cents") - remaining,
            total_earned_cents=F("total_earned_cents") - remaining,
        )
        cls.get_logger().info(
            "Commission reversed for refund",
            extra={
                "payment_id": str(payment.id),
                "affiliate_id": str(commission.affiliate_id),
                "reversed_cents": remaining,
                "commission_status": commission.status,
            },
        )
        return result
