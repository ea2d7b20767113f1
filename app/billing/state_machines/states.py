"""
State enums for billing models.

This module defines all state and choice enums used by billing models.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

PaymentStatus:
    pending → completed → refunded
    pending → failed
    pending → canceled

CommissionStatus (commission rows):
    pending → confirmed → paid
    pending/confirmed → refunded

CommissionStatus (clawback rows):
    pending → refunded (the commission they offset was never paid)
    clawed_back (offsets a paid commission; terminal)

SubscriptionStatus mirrors Stripe and is overwritten by processor signals
rather than transitioned locally.
"""

from django.db import models


class PaymentStatus(models.TextChoices):
    """
    States for the PaymentRecord lifecycle.

    Terminal states: FAILED, REFUNDED, CANCELED

    State Flow:
        PENDING → COMPLETED (checkout paid)
        PENDING → FAILED (checkout expired or async payment failed)
        PENDING → CANCELED (checkout session could not be created)
        COMPLETED → REFUNDED (full refund or lost dispute)
    """

    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"
    CANCELED = "canceled", "Canceled"


class ItemKind(models.TextChoices):
    """Kinds of purchasable items."""

    COURSE = "course", "Course"
    COMMUNITY = "community", "Community Membership"
    PLAN = "plan", "Platform Subscription"


class SubscriptionTier(models.TextChoices):
    """Access tiers granted by entitlements and subscriptions."""

    FREE = "free", "Free"
    STANDARD = "standard", "Standard"
    BASIC = "basic", "Basic"
    PREMIUM = "premium", "Premium"


class CommissionStatus(models.TextChoices):
    """
    States for AffiliateLedgerEntry rows.

    State Flow:
        PENDING → CONFIRMED (hold period elapsed)
        CONFIRMED → PAID (payout bookkeeping)
        PENDING/CONFIRMED → REFUNDED (payment refunded before payout)
        CLAWED_BACK (negative adjustment against a paid commission)
    """

    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    PAID = "paid", "Paid"
    REFUNDED = "refunded", "Refunded"
    CLAWED_BACK = "clawed_back", "Clawed Back"


class LedgerEntryKind(models.TextChoices):
    """Kinds of affiliate ledger rows."""

    COMMISSION = "commission", "Commission"
    CLAWBACK = "clawback", "Clawback"


class SubscriptionStatus(models.TextChoices):
    """
    Stripe subscription statuses mirrored locally.

    ACTIVE/TRIALING grant the paid tier; PAST_DUE keeps it through the
    grace period; the rest grant nothing. CANCELED, INCOMPLETE_EXPIRED and
    UNPAID are terminal.
    """

    ACTIVE = "active", "Active"
    TRIALING = "trialing", "Trialing"
    PAST_DUE = "past_due", "Past Due"
    CANCELED = "canceled", "Canceled"
    INCOMPLETE = "incomplete", "Incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired", "Incomplete Expired"
    UNPAID = "unpaid", "Unpaid"
    PAUSED = "paused", "Paused"


class RevenueOwnerType(models.TextChoices):
    """Owners that revenue is rolled up for."""

    SELLER = "seller", "Seller"
    COMMUNITY = "community", "Community"
    PLATFORM = "platform", "Platform"


class WebhookEventStatus(models.TextChoices):
    """
    Processing status for stored webhook events.

    State Flow:
        PENDING → PROCESSING → PROCESSED
        PENDING → PROCESSING → FAILED → PROCESSING (retry)
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    FAILED = "failed", "Failed"
