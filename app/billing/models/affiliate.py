"""
Affiliate models: referrers, referral attributions and the commission ledger.

Usage:
    from billing.models import Affiliate, AffiliateLedgerEntry

    affiliate = Affiliate.objects.get(referral_code="ALICE10")
    entry = AffiliateLedgerEntry.objects.get(payment=payment, kind="commission")
    entry.confirm()
    entry.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import CommissionStatus, LedgerEntryKind


class Affiliate(UUIDPrimaryKeyMixin, BaseModel):
    """
    A user enrolled to refer buyers, optionally scoped to one community.

    Balance fields are only ever changed with F() expressions inside the
    transaction that writes the matching ledger row.

    Fields:
        user: Referrer
        community: Community this referral code belongs to (null = platform-wide)
        referral_code: Unique code carried in referral links
        commission_rate_bps: Referrer's rate when the community has none
        pending_balance_cents: Earned but not yet paid out (negative after
            a clawback against a paid commission)
        total_earned_cents: Lifetime earnings net of reversals
        paid_out_cents: Lifetime payouts
        clicks: Referral link clicks recorded
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="affiliates",
        help_text="Referring user",
    )

    community = models.ForeignKey(
        "billing.Community",
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="affiliates",
        help_text="Community this code refers to (null = platform-wide)",
    )

    # ==========================================================================
    # Referral Settings
    # ==========================================================================

    referral_code = models.CharField(
        max_length=32,
        unique=True,
        help_text="Unique referral code",
    )

    commission_rate_bps = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Commission in basis points when the community sets none",
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Inactive affiliates earn no new commissions",
    )

    # ==========================================================================
    # Balances
    # ==========================================================================

    pending_balance_cents = models.BigIntegerField(
        default=0,
        help_text="Commission owed but not yet paid (can be negative after clawbacks)",
    )

    total_earned_cents = models.BigIntegerField(
        default=0,
        help_text="Lifetime commission net of refunds and clawbacks",
    )

    paid_out_cents = models.BigIntegerField(
        default=0,
        help_text="Lifetime commission paid out",
    )

    clicks = models.PositiveIntegerField(
        default=0,
        help_text="Referral link clicks",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Affiliate"
        verbose_name_plural = "Affiliates"
        constraints = [
            models.UniqueConstraint(
                fields=["user", "community"],
                name="affiliate_unique_user_community",
            ),
        ]

    def __str__(self) -> str:
        return f"Affiliate({self.referral_code})"


class ReferralAttribution(UUIDPrimaryKeyMixin, BaseModel):
    """
    A referral click tying a referred user to an affiliate.

    The commission rate is copied from the community (or affiliate) when the
    attribution is captured and is never re-read afterwards.
    """

    affiliate = models.ForeignKey(
        Affiliate,
        on_delete=models.CASCADE,
        related_name="attributions",
        help_text="Affiliate credited for purchases within the window",
    )

    referred_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="referral_attributions",
        help_text="User who followed the referral link",
    )

    commission_rate_bps = models.PositiveIntegerField(
        help_text="Commission rate in basis points pinned at attribution time",
    )

    attributed_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the referral was captured",
    )

    expires_at = models.DateTimeField(
        db_index=True,
        help_text="Purchases after this moment do not earn commission",
    )

    class Meta:
        ordering = ["-attributed_at"]
        verbose_name = "Referral Attribution"
        verbose_name_plural = "Referral Attributions"
        indexes = [
            models.Index(fields=["referred_user", "expires_at"], name="billing_ref_referre_7c1d0e_idx"),
        ]

    def __str__(self) -> str:
        return f"ReferralAttribution({self.affiliate_id} -> {self.referred_user_id})"

    def is_valid_at(self, moment) -> bool:
        return self.attributed_at <= moment <= self.expires_at


class AffiliateLedgerEntry(UUIDPrimaryKeyMixin, BaseModel):
    """
    Commission owed for a referred purchase, or a negative adjustment to it.

    Commission rows are created once per qualifying payment. Clawback rows
    are negative and never mutate the commission they offset. A clawback
    against an unpaid commission starts PENDING and follows that commission;
    a clawback against a paid commission is CLAWED_BACK from creation.

    State Flow (commission):
        PENDING -> CONFIRMED -> PAID
        PENDING/CONFIRMED -> REFUNDED
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    affiliate = models.ForeignKey(
        Affiliate,
        on_delete=models.PROTECT,
        related_name="ledger_entries",
        help_text="Affiliate this entry belongs to",
    )

    payment = models.ForeignKey(
        "billing.PaymentRecord",
        on_delete=models.PROTECT,
        related_name="affiliate_entries",
        help_text="Referred payment",
    )

    # ==========================================================================
    # Amount
    # ==========================================================================

    kind = models.CharField(
        max_length=20,
        choices=LedgerEntryKind.choices,
        default=LedgerEntryKind.COMMISSION,
        help_text="Commission or clawback adjustment",
    )

    amount_cents = models.BigIntegerField(
        help_text="Signed amount in smallest currency unit (negative for clawbacks)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    rate_bps = models.PositiveIntegerField(
        help_text="Commission rate applied, in basis points",
    )

    source_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Refund or dispute id that produced a clawback",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=CommissionStatus.PENDING,
        choices=CommissionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the entry (managed by FSM)",
    )

    confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the hold period elapsed",
    )

    paid_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the commission was paid out",
    )

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the entry was voided by a refund",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Affiliate Ledger Entry"
        verbose_name_plural = "Affiliate Ledger Entries"
        constraints = [
            models.UniqueConstraint(
                fields=["payment"],
                condition=models.Q(kind=LedgerEntryKind.COMMISSION),
                name="affiliate_ledger_one_commission_per_payment",
            ),
            models.UniqueConstraint(
                fields=["payment", "source_reference"],
                condition=models.Q(kind=LedgerEntryKind.CLAWBACK),
                name="affiliate_ledger_one_clawback_per_source",
            ),
        ]
        indexes = [
            models.Index(fields=["affiliate", "status"], name="billing_aff_affilia_5c07b1_idx"),
            models.Index(fields=["kind", "status", "created_at"], name="billing_aff_kind_9f3e62_idx"),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"AffiliateLedgerEntry({self.kind}, {self.status}, {amount_display})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=CommissionStatus.PENDING,
        target=CommissionStatus.CONFIRMED,
    )
    def confirm(self):
        """Hold period elapsed without a refund."""
        self.confirmed_at = timezone.now()

    @transition(
        field=status,
        source=CommissionStatus.CONFIRMED,
        target=CommissionStatus.PAID,
    )
    def mark_paid(self):
        """Commission paid out to the affiliate."""
        self.paid_at = timezone.now()

    @transition(
        field=status,
        source=[CommissionStatus.PENDING, CommissionStatus.CONFIRMED],
        target=CommissionStatus.REFUNDED,
    )
    def mark_refunded(self):
        """Voided before payout because the payment was refunded."""
        self.refunded_at = timezone.now()

    @transition(
        field=status,
        source=CommissionStatus.PENDING,
        target=CommissionStatus.CLAWED_BACK,
    )
    def settle_clawback(self):
        """A pending clawback is netted against a payout."""
        self.paid_at = timezone.now()
