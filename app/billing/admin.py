"""
Admin configuration for billing models.

Payment, ledger and webhook rows are an audit trail: they can be inspected
but not added or deleted from the admin. Commission payouts are booked
through the "Mark selected commissions as paid" action so balances move
together with the ledger row.
"""

from django.conf import settings
from django.contrib import admin, messages

from core.exceptions import BaseApplicationError

from billing.models import (
    Affiliate,
    AffiliateLedgerEntry,
    BillingAccount,
    Community,
    Course,
    Entitlement,
    PaymentRecord,
    ReferralAttribution,
    RevenueAggregate,
    RevenuePeriodBucket,
    SubscriptionPlan,
    SubscriptionRecord,
    WebhookEvent,
)
from billing.state_machines import CommissionStatus, LedgerEntryKind


def _format_cents(amount_cents: int, currency: str) -> str:
    sign = "-" if amount_cents < 0 else ""
    return f"{sign}${abs(amount_cents) / 100:.2f} {currency.upper()}"


# =============================================================================
# Catalog
# =============================================================================


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    list_display = ["title", "owner", "price_display", "is_published", "created_at"]
    list_filter = ["is_published", "currency"]
    search_fields = ["id", "title", "owner__email", "stripe_price_id"]
    readonly_fields = ["id", "created_at", "updated_at"]
    raw_id_fields = ["owner"]

    def price_display(self, obj: Course) -> str:
        return _format_cents(obj.price_cents, obj.currency)

    price_display.short_description = "Price"


@admin.register(Community)
class CommunityAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "owner",
        "price_display",
        "default_member_tier",
        "affiliate_commission_rate_bps",
        "is_active",
    ]
    list_filter = ["is_active", "default_member_tier"]
    search_fields = ["id", "name", "owner__email", "stripe_price_id"]
    readonly_fields = ["id", "created_at", "updated_at"]
    raw_id_fields = ["owner"]

    fieldsets = (
        (None, {"fields": ("id", "name", "owner", "is_active")}),
        (
            "Membership",
            {
                "fields": (
                    "monthly_price_cents",
                    "currency",
                    "default_member_tier",
                    "stripe_price_id",
                ),
            },
        ),
        (
            "Affiliates",
            {
                "fields": ("affiliate_commission_rate_bps", "affiliate_attribution_days"),
                "description": "Changes apply to new referral clicks only.",
            },
        ),
        (
            "Timestamps",
            {"fields": ("created_at", "updated_at"), "classes": ("collapse",)},
        ),
    )

    def price_display(self, obj: Community) -> str:
        return _format_cents(obj.monthly_price_cents, obj.currency)

    price_display.short_description = "Monthly price"


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    list_display = ["code", "name", "tier", "price_display", "interval", "is_active"]
    list_filter = ["tier", "interval", "is_active"]
    search_fields = ["code", "name", "stripe_price_id"]
    readonly_fields = ["id", "created_at", "updated_at"]

    def price_display(self, obj: SubscriptionPlan) -> str:
        return _format_cents(obj.price_cents, obj.currency)

    price_display.short_description = "Price"


# =============================================================================
# Accounts & Payments
# =============================================================================


@admin.register(BillingAccount)
class BillingAccountAdmin(admin.ModelAdmin):
    list_display = ["user", "stripe_customer_id", "subscription_tier", "created_at"]
    list_filter = ["subscription_tier"]
    search_fields = ["user__email", "stripe_customer_id"]
    readonly_fields = ["id", "stripe_customer_id", "created_at", "updated_at"]
    raw_id_fields = ["user"]


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentRecord.

    Status is driven by the settlement services only; every field is
    read-only here.
    """

    list_display = [
        "id",
        "payer",
        "item_kind",
        "item_id",
        "amount_display",
        "refunded_display",
        "status",
        "created_at",
    ]
    list_filter = ["status", "item_kind", "currency", "created_at"]
    search_fields = [
        "id",
        "payer__email",
        "item_id",
        "external_transaction_id",
        "processor_payment_intent_id",
        "processor_invoice_id",
        "processor_subscription_id",
    ]
    readonly_fields = [
        field.name for field in PaymentRecord._meta.get_fields() if field.concrete
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "payer", "status", "item_kind", "item_id")}),
        (
            "Amount",
            {"fields": ("amount_cents", "currency", "refunded_amount_cents")},
        ),
        (
            "Stripe",
            {
                "fields": (
                    "external_transaction_id",
                    "checkout_url",
                    "processor_payment_intent_id",
                    "processor_invoice_id",
                    "processor_subscription_id",
                ),
            },
        ),
        (
            "Attribution",
            {
                "fields": (
                    "referral_attribution",
                    "affiliate",
                    "commission_rate_bps",
                    "attributed_at",
                    "attribution_expires_at",
                    "revenue_owner_type",
                    "revenue_owner_id",
                ),
                "classes": ("collapse",),
            },
        ),
        (
            "Metadata",
            {"fields": ("metadata", "failure_reason"), "classes": ("collapse",)},
        ),
        (
            "Timestamps",
            {
                "fields": (
                    "created_at",
                    "updated_at",
                    "completed_at",
                    "failed_at",
                    "canceled_at",
                    "refunded_at",
                ),
            },
        ),
    )

    def amount_display(self, obj: PaymentRecord) -> str:
        """Display the amount formatted as currency."""
        return _format_cents(obj.amount_cents, obj.currency)

    amount_display.short_description = "Amount"

    def refunded_display(self, obj: PaymentRecord) -> str:
        return _format_cents(obj.refunded_amount_cents, obj.currency)

    refunded_display.short_description = "Refunded"

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for payment records (audit trail)."""
        return False


@admin.register(Entitlement)
class EntitlementAdmin(admin.ModelAdmin):
    list_display = [
        "user",
        "item_kind",
        "item_id",
        "tier",
        "granted_at",
        "revoked_at",
        "revoke_reason",
    ]
    list_filter = ["item_kind", "tier", "revoke_reason"]
    search_fields = ["user__email", "item_id"]
    readonly_fields = ["id", "source_payment", "granted_at", "created_at", "updated_at"]
    raw_id_fields = ["user"]
    date_hierarchy = "granted_at"


@admin.register(SubscriptionRecord)
class SubscriptionRecordAdmin(admin.ModelAdmin):
    list_display = [
        "external_subscription_id",
        "subscriber",
        "item_kind",
        "status",
        "tier",
        "effective_tier",
        "current_period_end",
        "past_due_since",
    ]
    list_filter = ["status", "item_kind", "tier", "effective_tier", "cancel_at_period_end"]
    search_fields = ["external_subscription_id", "stripe_customer_id", "subscriber__email"]
    readonly_fields = [
        field.name for field in SubscriptionRecord._meta.get_fields() if field.concrete
    ]
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False


# =============================================================================
# Affiliates
# =============================================================================


@admin.register(Affiliate)
class AffiliateAdmin(admin.ModelAdmin):
    list_display = [
        "referral_code",
        "user",
        "community",
        "commission_rate_bps",
        "is_active",
        "clicks",
        "pending_display",
        "paid_out_display",
    ]
    list_filter = ["is_active"]
    search_fields = ["referral_code", "user__email", "community__name"]
    readonly_fields = [
        "id",
        "pending_balance_cents",
        "total_earned_cents",
        "paid_out_cents",
        "clicks",
        "created_at",
        "updated_at",
    ]
    raw_id_fields = ["user", "community"]

    def pending_display(self, obj: Affiliate) -> str:
        return _format_cents(obj.pending_balance_cents, settings.BILLING_DEFAULT_CURRENCY)

    pending_display.short_description = "Pending"

    def paid_out_display(self, obj: Affiliate) -> str:
        return _format_cents(obj.paid_out_cents, settings.BILLING_DEFAULT_CURRENCY)

    paid_out_display.short_description = "Paid out"


@admin.register(ReferralAttribution)
class ReferralAttributionAdmin(admin.ModelAdmin):
    list_display = ["affiliate", "referred_user", "commission_rate_bps", "attributed_at", "expires_at"]
    search_fields = ["affiliate__referral_code", "referred_user__email"]
    readonly_fields = [
        "id",
        "affiliate",
        "referred_user",
        "commission_rate_bps",
        "attributed_at",
        "expires_at",
        "created_at",
        "updated_at",
    ]


@admin.register(AffiliateLedgerEntry)
class AffiliateLedgerEntryAdmin(admin.ModelAdmin):
    """
    Admin configuration for AffiliateLedgerEntry.

    Entries are created by settlement and refunds. The only manual step is
    booking a payout for confirmed commissions.
    """

    list_display = [
        "id",
        "affiliate",
        "payment",
        "kind",
        "amount_display",
        "rate_bps",
        "status",
        "created_at",
    ]
    list_filter = ["kind", "status", "created_at"]
    search_fields = ["id", "affiliate__referral_code", "payment__id", "source_reference"]
    readonly_fields = [
        field.name for field in AffiliateLedgerEntry._meta.get_fields() if field.concrete
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["mark_paid"]

    def amount_display(self, obj: AffiliateLedgerEntry) -> str:
        return _format_cents(obj.amount_cents, obj.currency)

    amount_display.short_description = "Amount"

    @admin.action(description="Mark selected commissions as paid")
    def mark_paid(self, request, queryset):
        from billing.services import CommissionCalculator

        entries = queryset.filter(
            kind=LedgerEntryKind.COMMISSION,
            status=CommissionStatus.CONFIRMED,
        )
        paid = 0
        for entry in entries:
            try:
                CommissionCalculator.mark_paid(entry.id)
                paid += 1
            except BaseApplicationError as e:
                self.message_user(
                    request,
                    f"Could not mark {entry.id} as paid: {e.message}",
                    level=messages.WARNING,
                )
        self.message_user(request, f"Marked {paid} commission(s) as paid.")

    def has_add_permission(self, request) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


# =============================================================================
# Revenue
# =============================================================================


class RevenuePeriodBucketInline(admin.TabularInline):
    model = RevenuePeriodBucket
    extra = 0
    can_delete = False
    readonly_fields = [
        "period",
        "gross_cents",
        "refunded_cents",
        "total_cents",
        "completed_count",
        "refunded_count",
    ]
    fields = readonly_fields


@admin.register(RevenueAggregate)
class RevenueAggregateAdmin(admin.ModelAdmin):
    list_display = [
        "owner_type",
        "owner_id",
        "currency",
        "total_display",
        "completed_count",
        "refunded_count",
    ]
    list_filter = ["owner_type", "currency"]
    search_fields = ["owner_id"]
    readonly_fields = [
        field.name for field in RevenueAggregate._meta.get_fields() if field.concrete
    ]
    inlines = [RevenuePeriodBucketInline]

    def total_display(self, obj: RevenueAggregate) -> str:
        return _format_cents(obj.total_cents, obj.currency)

    total_display.short_description = "Net revenue"

    def has_add_permission(self, request) -> bool:
        return False


# =============================================================================
# Webhooks
# =============================================================================


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """
    Admin configuration for WebhookEvent.

    Provides visibility into webhook processing status.
    Webhook events are immutable once received.
    """

    list_display = [
        "id",
        "stripe_event_id",
        "event_type",
        "status",
        "retry_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "event_type", "created_at"]
    search_fields = ["id", "stripe_event_id", "event_type"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "stripe_event_id",
        "event_type",
        "payload",
        "processed_at",
        "retry_count",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "stripe_event_id", "event_type", "status")}),
        (
            "Processing",
            {"fields": ("processed_at", "retry_count", "error_message")},
        ),
        ("Payload", {"fields": ("payload",), "classes": ("collapse",)}),
        (
            "Timestamps",
            {"fields": ("created_at", "updated_at"), "classes": ("collapse",)},
        ),
    )

    def has_add_permission(self, request) -> bool:
        return False


__all__ = [
    "AffiliateAdmin",
    "AffiliateLedgerEntryAdmin",
    "BillingAccountAdmin",
    "CommunityAdmin",
    "CourseAdmin",
    "EntitlementAdmin",
    "PaymentRecordAdmin",
    "ReferralAttributionAdmin",
    "RevenueAggregateAdmin",
    "SubscriptionPlanAdmin",
    "SubscriptionRecordAdmin",
    "WebhookEventAdmin",
]
