"""
PaymentRecord model: one row per attempted purchase.

The record's status is the single point of mutual exclusion for billing.
Transitions are declared with django-fsm and persisted through
ConcurrentTransitionMixin, which adds ``WHERE status = <loaded status>`` to
the UPDATE. Two processes that loaded the same pending record can both call
``complete()``, but only one UPDATE matches a row; the other raises
``ConcurrentTransition`` and must treat the payment as already settled.

Usage:
    from django_fsm import ConcurrentTransition, can_proceed

    record = PaymentRecord.objects.get(external_transaction_id=session_id)
    if can_proceed(record.complete):
        record.complete(payment_intent_id="pi_xxx")
        try:
            with transaction.atomic():
                record.save()
                # fan-out runs here, in the same transaction
        except ConcurrentTransition:
            ...  # another caller won
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import ConcurrentTransitionMixin, FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import ItemKind, PaymentStatus, RevenueOwnerType


class PaymentRecord(ConcurrentTransitionMixin, UUIDPrimaryKeyMixin, BaseModel):
    """
    A purchase attempt and its settlement state.

    State Flow:
        PENDING -> COMPLETED -> REFUNDED
        PENDING -> FAILED
        PENDING -> CANCELED

    Fields:
        payer: User paying
        item_kind/item_id: What is being bought
        amount_cents/currency: Charged amount
        status: Current FSM state
        external_transaction_id: Stripe Checkout Session id (or renewal invoice id)
        processor_*: Stripe ids learned at settlement, used for refund lookup
        referral_attribution/affiliate/commission_rate_bps/attributed_at:
            Affiliate snapshot pinned at checkout
        revenue_owner_type/revenue_owner_id: Aggregate credited on completion
        refunded_amount_cents: Cumulative amount refunded so far

    Note:
        The id doubles as the checkout attempt id and seeds the Stripe
        idempotency key, so retries of one checkout reuse one key.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    payer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payment_records",
        help_text="User making the payment",
    )

    # ==========================================================================
    # Item Reference
    # ==========================================================================

    item_kind = models.CharField(
        max_length=20,
        choices=ItemKind.choices,
        help_text="Kind of item purchased",
    )

    item_id = models.CharField(
        max_length=64,
        help_text="Identifier of the purchased item",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Payment amount in smallest currency unit (e.g., cents)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    refunded_amount_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Cumulative amount refunded (partial refunds accumulate here)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=PaymentStatus.PENDING,
        choices=PaymentStatus.choices,
        db_index=True,
        protected=True,  # Prevent direct assignment outside transitions
        help_text="Current state of the payment (managed by FSM)",
    )

    # ==========================================================================
    # Stripe Integration
    # ==========================================================================

    external_transaction_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Checkout Session ID (cs_xxx) or renewal Invoice ID (in_xxx)",
    )

    checkout_url = models.URLField(
        max_length=2048,
        null=True,
        blank=True,
        help_text="Hosted checkout URL returned to the payer",
    )

    processor_payment_intent_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe PaymentIntent ID (pi_xxx), learned at settlement",
    )

    processor_invoice_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Invoice ID (in_xxx) for subscription payments",
    )

    processor_subscription_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Stripe Subscription ID (sub_xxx) for subscription payments",
    )

    # ==========================================================================
    # Affiliate Attribution (pinned at checkout)
    # ==========================================================================

    referral_attribution = models.ForeignKey(
        "billing.ReferralAttribution",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
        help_text="Referral click this purchase is attributed to",
    )

    affiliate = models.ForeignKey(
        "billing.Affiliate",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="referred_payments",
        help_text="Affiliate credited for this purchase",
    )

    commission_rate_bps = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Commission rate in basis points captured at attribution time",
    )

    attributed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the referral was attributed (start of the window)",
    )

    attribution_expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of the attribution window",
    )

    # ==========================================================================
    # Revenue Owner (snapshot)
    # ==========================================================================

    revenue_owner_type = models.CharField(
        max_length=20,
        choices=RevenueOwnerType.choices,
        help_text="Aggregate owner type credited on completion",
    )

    revenue_owner_id = models.CharField(
        max_length=64,
        help_text="Aggregate owner id credited on completion",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    completed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When payment completed",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When payment failed or the checkout expired",
    )

    canceled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the attempt was canceled before reaching Stripe",
    )

    refunded_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payment was fully refunded",
    )

    # ==========================================================================
    # Metadata & Error Info
    # ==========================================================================

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata (e.g., renewal flag, settlement source)",
    )

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Reason the payment failed or was canceled",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Record"
        verbose_name_plural = "Payment Records"
        indexes = [
            models.Index(fields=["payer", "status"], name="billing_pay_payer_i_3b5f2a_idx"),
            models.Index(fields=["item_kind", "item_id"], name="billing_pay_item_ki_8e41c7_idx"),
            models.Index(fields=["status", "created_at"], name="billing_pay_status_d2a9e4_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="payment_record_amount_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(refunded_amount_cents__lte=models.F("amount_cents")),
                name="payment_record_refund_within_amount",
            ),
        ]

    def __str__(self) -> str:
        """Return string representation with ID, status, and amount."""
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"PaymentRecord({self.id}, {self.status}, {amount_display})"

    @property
    def has_attribution(self) -> bool:
        return self.affiliate_id is not None and self.commission_rate_bps is not None

    @property
    def is_renewal(self) -> bool:
        return bool(self.metadata.get("renewal"))

    @property
    def remaining_cents(self) -> int:
        """Amount not yet refunded."""
        return self.amount_cents - self.refunded_amount_cents

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentStatus.PENDING,
        target=PaymentStatus.COMPLETED,
    )
    def complete(
        self,
        payment_intent_id: str | None = None,
        invoice_id: str | None = None,
        subscription_id: str | None = None,
    ):
        """
        Mark payment as completed.

        Transition: PENDING -> COMPLETED

        Records the Stripe ids needed to match later refund and
        subscription signals back to this payment.
        """
        self.completed_at = timezone.now()
        if payment_intent_id:
            self.processor_payment_intent_id = payment_intent_id
        if invoice_id:
            self.processor_invoice_id = invoice_id
        if subscription_id:
            self.processor_subscription_id = subscription_id

    @transition(
        field=status,
        source=PaymentStatus.PENDING,
        target=PaymentStatus.FAILED,
    )
    def fail(self, reason: str | None = None):
        """
        Mark payment as failed.

        Transition: PENDING -> FAILED

        Called when the checkout session expires or an async payment fails.
        """
        self.failed_at = timezone.now()
        if reason:
            self.failure_reason = reason

    @transition(
        field=status,
        source=PaymentStatus.PENDING,
        target=PaymentStatus.CANCELED,
    )
    def cancel(self, reason: str | None = None):
        """
        Cancel a pending attempt.

        Transition: PENDING -> CANCELED

        Used when Stripe could not create the checkout session.
        """
        self.canceled_at = timezone.now()
        if reason:
            self.failure_reason = reason

    @transition(
        field=status,
        source=PaymentStatus.COMPLETED,
        target=PaymentStatus.REFUNDED,
    )
    def refund(self, refunded_total_cents: int):
        """
        Mark payment as fully refunded.

        Transition: COMPLETED -> REFUNDED
        """
        self.refunded_amount_cents = min(refunded_total_cents, self.amount_cents)
        self.refunded_at = timezone.now()
