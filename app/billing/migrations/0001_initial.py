import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.conf import settings
from django.db import migrations, models

TIER_CHOICES = [
    ("free", "Free"),
    ("standard", "Standard"),
    ("basic", "Basic"),
    ("premium", "Premium"),
]

ITEM_KIND_CHOICES = [
    ("course", "Course"),
    ("community", "Community Membership"),
    ("plan", "Platform Subscription"),
]

OWNER_TYPE_CHOICES = [
    ("seller", "Seller"),
    ("community", "Community"),
    ("platform", "Platform"),
]


def _id_field():
    return models.UUIDField(
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
        primary_key=True,
        serialize=False,
    )


def _timestamp_fields():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        # ---------------------------------------------------------------------
        # Catalog
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="Course",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                ("title", models.CharField(help_text="Course title", max_length=200)),
                (
                    "price_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Price in smallest currency unit (0 = free)",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "is_published",
                    models.BooleanField(
                        default=False,
                        help_text="Whether the course is listed and purchasable",
                    ),
                ),
                (
                    "stripe_price_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Price ID (price_xxx); inline price_data is used when empty",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="Seller receiving the revenue for this course",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="owned_courses",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Course",
                "verbose_name_plural": "Courses",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Community",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                ("name", models.CharField(help_text="Community name", max_length=200)),
                (
                    "monthly_price_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Monthly membership price in smallest currency unit (0 = free)",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "default_member_tier",
                    models.CharField(
                        choices=TIER_CHOICES,
                        default="standard",
                        help_text="Tier granted to paying members",
                        max_length=20,
                    ),
                ),
                (
                    "affiliate_commission_rate_bps",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Affiliate commission in basis points (1000 = 10%); platform default when empty",
                        null=True,
                    ),
                ),
                (
                    "affiliate_attribution_days",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Days a referral click counts toward a purchase; platform default when empty",
                        null=True,
                    ),
                ),
                (
                    "stripe_price_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe recurring Price ID (price_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "is_active",
                    models.BooleanField(
                        default=True,
                        help_text="Whether new memberships can be purchased",
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="Community owner",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="owned_communities",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Community",
                "verbose_name_plural": "Communities",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionPlan",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "code",
                    models.SlugField(
                        help_text="Stable plan code (e.g., 'premium-monthly')",
                        unique=True,
                    ),
                ),
                ("name", models.CharField(help_text="Display name", max_length=100)),
                (
                    "tier",
                    models.CharField(
                        choices=TIER_CHOICES,
                        help_text="Tier granted while the subscription is in good standing",
                        max_length=20,
                    ),
                ),
                (
                    "price_cents",
                    models.PositiveBigIntegerField(
                        help_text="Price per interval in smallest currency unit",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "interval",
                    models.CharField(
                        default="month",
                        help_text="Billing interval: 'month' or 'year'",
                        max_length=10,
                    ),
                ),
                (
                    "stripe_price_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe recurring Price ID (price_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "is_active",
                    models.BooleanField(
                        default=True,
                        help_text="Whether the plan can be purchased",
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription Plan",
                "verbose_name_plural": "Subscription Plans",
                "ordering": ["price_cents"],
            },
        ),
        # ---------------------------------------------------------------------
        # Accounts
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="BillingAccount",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "stripe_customer_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Customer ID (cus_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "subscription_tier",
                    models.CharField(
                        choices=TIER_CHOICES,
                        db_index=True,
                        default="free",
                        help_text="Platform tier currently granted to the user",
                        max_length=20,
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        help_text="User owning this billing account",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="billing_account",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Billing Account",
                "verbose_name_plural": "Billing Accounts",
            },
        ),
        # ---------------------------------------------------------------------
        # Affiliates
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="Affiliate",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "referral_code",
                    models.CharField(
                        help_text="Unique referral code",
                        max_length=32,
                        unique=True,
                    ),
                ),
                (
                    "commission_rate_bps",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Commission in basis points when the community sets none",
                        null=True,
                    ),
                ),
                (
                    "is_active",
                    models.BooleanField(
                        default=True,
                        help_text="Inactive affiliates earn no new commissions",
                    ),
                ),
                (
                    "pending_balance_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Commission owed but not yet paid (can be negative after clawbacks)",
                    ),
                ),
                (
                    "total_earned_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Lifetime commission net of refunds and clawbacks",
                    ),
                ),
                (
                    "paid_out_cents",
                    models.BigIntegerField(
                        default=0,
                        help_text="Lifetime commission paid out",
                    ),
                ),
                (
                    "clicks",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Referral link clicks",
                    ),
                ),
                (
                    "community",
                    models.ForeignKey(
                        blank=True,
                        help_text="Community this code refers to (null = platform-wide)",
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="affiliates",
                        to="billing.community",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        help_text="Referring user",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="affiliates",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Affiliate",
                "verbose_name_plural": "Affiliates",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("user", "community"),
                        name="affiliate_unique_user_community",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReferralAttribution",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "commission_rate_bps",
                    models.PositiveIntegerField(
                        help_text="Commission rate in basis points pinned at attribution time",
                    ),
                ),
                (
                    "attributed_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="When the referral was captured",
                    ),
                ),
                (
                    "expires_at",
                    models.DateTimeField(
                        db_index=True,
                        help_text="Purchases after this moment do not earn commission",
                    ),
                ),
                (
                    "affiliate",
                    models.ForeignKey(
                        help_text="Affiliate credited for purchases within the window",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="attributions",
                        to="billing.affiliate",
                    ),
                ),
                (
                    "referred_user",
                    models.ForeignKey(
                        help_text="User who followed the referral link",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="referral_attributions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Referral Attribution",
                "verbose_name_plural": "Referral Attributions",
                "ordering": ["-attributed_at"],
                "indexes": [
                    models.Index(
                        fields=["referred_user", "expires_at"],
                        name="billing_ref_referre_7c1d0e_idx",
                    ),
                ],
            },
        ),
        # ---------------------------------------------------------------------
        # Payments
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="PaymentRecord",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "item_kind",
                    models.CharField(
                        choices=ITEM_KIND_CHOICES,
                        help_text="Kind of item purchased",
                        max_length=20,
                    ),
                ),
                (
                    "item_id",
                    models.CharField(
                        help_text="Identifier of the purchased item",
                        max_length=64,
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Payment amount in smallest currency unit (e.g., cents)",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "refunded_amount_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Cumulative amount refunded (partial refunds accumulate here)",
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                            ("canceled", "Canceled"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the payment (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "external_transaction_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Checkout Session ID (cs_xxx) or renewal Invoice ID (in_xxx)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "checkout_url",
                    models.URLField(
                        blank=True,
                        help_text="Hosted checkout URL returned to the payer",
                        max_length=2048,
                        null=True,
                    ),
                ),
                (
                    "processor_payment_intent_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe PaymentIntent ID (pi_xxx), learned at settlement",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "processor_invoice_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Invoice ID (in_xxx) for subscription payments",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "processor_subscription_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Subscription ID (sub_xxx) for subscription payments",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "commission_rate_bps",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Commission rate in basis points captured at attribution time",
                        null=True,
                    ),
                ),
                (
                    "attributed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the referral was attributed (start of the window)",
                        null=True,
                    ),
                ),
                (
                    "attribution_expires_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="End of the attribution window",
                        null=True,
                    ),
                ),
                (
                    "revenue_owner_type",
                    models.CharField(
                        choices=OWNER_TYPE_CHOICES,
                        help_text="Aggregate owner type credited on completion",
                        max_length=20,
                    ),
                ),
                (
                    "revenue_owner_id",
                    models.CharField(
                        help_text="Aggregate owner id credited on completion",
                        max_length=64,
                    ),
                ),
                (
                    "completed_at",
                    models.DateTimeField(blank=True, help_text="When payment completed", null=True),
                ),
                (
                    "failed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When payment failed or the checkout expired",
                        null=True,
                    ),
                ),
                (
                    "canceled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the attempt was canceled before reaching Stripe",
                        null=True,
                    ),
                ),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the payment was fully refunded",
                        null=True,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata (e.g., renewal flag, settlement source)",
                    ),
                ),
                (
                    "failure_reason",
                    models.TextField(
                        blank=True,
                        help_text="Reason the payment failed or was canceled",
                        null=True,
                    ),
                ),
                (
                    "affiliate",
                    models.ForeignKey(
                        blank=True,
                        help_text="Affiliate credited for this purchase",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="referred_payments",
                        to="billing.affiliate",
                    ),
                ),
                (
                    "payer",
                    models.ForeignKey(
                        help_text="User making the payment",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_records",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "referral_attribution",
                    models.ForeignKey(
                        blank=True,
                        help_text="Referral click this purchase is attributed to",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to="billing.referralattribution",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Record",
                "verbose_name_plural": "Payment Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["payer", "status"],
                        name="billing_pay_payer_i_3b5f2a_idx",
                    ),
                    models.Index(
                        fields=["item_kind", "item_id"],
                        name="billing_pay_item_ki_8e41c7_idx",
                    ),
                    models.Index(
                        fields=["status", "created_at"],
                        name="billing_pay_status_d2a9e4_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="payment_record_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            refunded_amount_cents__lte=models.F("amount_cents")
                        ),
                        name="payment_record_refund_within_amount",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AffiliateLedgerEntry",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "kind",
                    models.CharField(
                        choices=[("commission", "Commission"), ("clawback", "Clawback")],
                        default="commission",
                        help_text="Commission or clawback adjustment",
                        max_length=20,
                    ),
                ),
                (
                    "amount_cents",
                    models.BigIntegerField(
                        help_text="Signed amount in smallest currency unit (negative for clawbacks)",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "rate_bps",
                    models.PositiveIntegerField(
                        help_text="Commission rate applied, in basis points",
                    ),
                ),
                (
                    "source_reference",
                    models.CharField(
                        blank=True,
                        help_text="Refund or dispute id that produced a clawback",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("confirmed", "Confirmed"),
                            ("paid", "Paid"),
                            ("refunded", "Refunded"),
                            ("clawed_back", "Clawed Back"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current state of the entry (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "confirmed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the hold period elapsed",
                        null=True,
                    ),
                ),
                (
                    "paid_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the commission was paid out",
                        null=True,
                    ),
                ),
                (
                    "refunded_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the entry was voided by a refund",
                        null=True,
                    ),
                ),
                (
                    "affiliate",
                    models.ForeignKey(
                        help_text="Affiliate this entry belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entries",
                        to="billing.affiliate",
                    ),
                ),
                (
                    "payment",
                    models.ForeignKey(
                        help_text="Referred payment",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="affiliate_entries",
                        to="billing.paymentrecord",
                    ),
                ),
            ],
            options={
                "verbose_name": "Affiliate Ledger Entry",
                "verbose_name_plural": "Affiliate Ledger Entries",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["affiliate", "status"],
                        name="billing_aff_affilia_5c07b1_idx",
                    ),
                    models.Index(
                        fields=["kind", "status", "created_at"],
                        name="billing_aff_kind_9f3e62_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(kind="commission"),
                        fields=("payment",),
                        name="affiliate_ledger_one_commission_per_payment",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(kind="clawback"),
                        fields=("payment", "source_reference"),
                        name="affiliate_ledger_one_clawback_per_source",
                    ),
                ],
            },
        ),
        # ---------------------------------------------------------------------
        # Access
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="Entitlement",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "item_kind",
                    models.CharField(
                        choices=ITEM_KIND_CHOICES,
                        help_text="Kind of item this entitlement grants access to",
                        max_length=20,
                    ),
                ),
                (
                    "item_id",
                    models.CharField(help_text="Identifier of the item", max_length=64),
                ),
                (
                    "tier",
                    models.CharField(
                        choices=TIER_CHOICES,
                        default="standard",
                        help_text="Access tier granted",
                        max_length=20,
                    ),
                ),
                (
                    "granted_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="When access was granted or last reactivated",
                    ),
                ),
                (
                    "revoked_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="When access was revoked (null while active)",
                        null=True,
                    ),
                ),
                (
                    "revoke_reason",
                    models.CharField(
                        blank=True,
                        help_text="Why access was revoked (refund, chargeback, subscription_canceled)",
                        max_length=100,
                        null=True,
                    ),
                ),
                (
                    "source_payment",
                    models.ForeignKey(
                        blank=True,
                        help_text="Payment that produced this grant",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="entitlements",
                        to="billing.paymentrecord",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        help_text="User holding this entitlement",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="entitlements",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Entitlement",
                "verbose_name_plural": "Entitlements",
                "ordering": ["-granted_at"],
                "indexes": [
                    models.Index(
                        fields=["item_kind", "item_id"],
                        name="billing_ent_item_ki_a4d8f0_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("user", "item_kind", "item_id"),
                        name="entitlement_unique_user_item",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionRecord",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "item_kind",
                    models.CharField(
                        choices=ITEM_KIND_CHOICES,
                        help_text="Community or plan subscribed to",
                        max_length=20,
                    ),
                ),
                (
                    "item_id",
                    models.CharField(
                        help_text="Identifier of the community or plan",
                        max_length=64,
                    ),
                ),
                (
                    "external_subscription_id",
                    models.CharField(
                        help_text="Stripe Subscription ID (sub_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "stripe_customer_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe Customer ID (cus_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "stripe_price_id",
                    models.CharField(
                        blank=True,
                        help_text="Stripe Price ID (price_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "tier",
                    models.CharField(
                        choices=TIER_CHOICES,
                        help_text="Tier the subscriber pays for",
                        max_length=20,
                    ),
                ),
                (
                    "effective_tier",
                    models.CharField(
                        choices=TIER_CHOICES,
                        default="free",
                        help_text="Tier currently granted",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("trialing", "Trialing"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                            ("incomplete", "Incomplete"),
                            ("incomplete_expired", "Incomplete Expired"),
                            ("unpaid", "Unpaid"),
                            ("paused", "Paused"),
                        ],
                        db_index=True,
                        default="incomplete",
                        help_text="Status last reported by Stripe",
                        max_length=20,
                    ),
                ),
                (
                    "current_period_start",
                    models.DateTimeField(
                        blank=True,
                        help_text="Start of current billing period",
                        null=True,
                    ),
                ),
                (
                    "current_period_end",
                    models.DateTimeField(
                        blank=True,
                        help_text="End of current billing period",
                        null=True,
                    ),
                ),
                (
                    "cancel_at_period_end",
                    models.BooleanField(
                        default=False,
                        help_text="Whether subscription will cancel at period end",
                    ),
                ),
                (
                    "canceled_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When Stripe confirmed cancellation",
                        null=True,
                    ),
                ),
                (
                    "past_due_since",
                    models.DateTimeField(
                        blank=True,
                        help_text="Start of the current past_due stretch",
                        null=True,
                    ),
                ),
                (
                    "demoted_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the tier was demoted after the grace period",
                        null=True,
                    ),
                ),
                (
                    "last_event_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Stripe creation time of the newest applied signal",
                        null=True,
                    ),
                ),
                (
                    "last_synced_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the record was last pulled from Stripe",
                        null=True,
                    ),
                ),
                (
                    "subscriber",
                    models.ForeignKey(
                        help_text="User paying for the subscription",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription_records",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription Record",
                "verbose_name_plural": "Subscription Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["subscriber", "status"],
                        name="billing_sub_subscri_6e2b19_idx",
                    ),
                    models.Index(
                        fields=["item_kind", "item_id"],
                        name="billing_sub_item_ki_0d7c53_idx",
                    ),
                    models.Index(
                        fields=["status", "past_due_since"],
                        name="billing_sub_status_b81f4e_idx",
                    ),
                ],
            },
        ),
        # ---------------------------------------------------------------------
        # Revenue
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="RevenueAggregate",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "owner_type",
                    models.CharField(
                        choices=OWNER_TYPE_CHOICES,
                        help_text="Kind of owner this revenue belongs to",
                        max_length=20,
                    ),
                ),
                ("owner_id", models.CharField(help_text="Owner identifier", max_length=64)),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "gross_cents",
                    models.BigIntegerField(default=0, help_text="Sum of completed payment amounts"),
                ),
                (
                    "refunded_cents",
                    models.BigIntegerField(default=0, help_text="Sum of refunded amounts"),
                ),
                (
                    "total_cents",
                    models.BigIntegerField(default=0, help_text="Net revenue (gross minus refunded)"),
                ),
                (
                    "completed_count",
                    models.PositiveIntegerField(default=0, help_text="Number of completed payments"),
                ),
                (
                    "refunded_count",
                    models.PositiveIntegerField(
                        default=0,
                        help_text="Number of fully refunded payments",
                    ),
                ),
            ],
            options={
                "verbose_name": "Revenue Aggregate",
                "verbose_name_plural": "Revenue Aggregates",
                "ordering": ["owner_type", "owner_id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("owner_type", "owner_id", "currency"),
                        name="revenue_aggregate_unique_owner_currency",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RevenuePeriodBucket",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "period",
                    models.CharField(help_text="Calendar month in YYYY-MM format", max_length=7),
                ),
                ("gross_cents", models.BigIntegerField(default=0)),
                ("refunded_cents", models.BigIntegerField(default=0)),
                ("total_cents", models.BigIntegerField(default=0)),
                ("completed_count", models.PositiveIntegerField(default=0)),
                ("refunded_count", models.PositiveIntegerField(default=0)),
                (
                    "aggregate",
                    models.ForeignKey(
                        help_text="Aggregate this bucket belongs to",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="buckets",
                        to="billing.revenueaggregate",
                    ),
                ),
            ],
            options={
                "verbose_name": "Revenue Period Bucket",
                "verbose_name_plural": "Revenue Period Buckets",
                "ordering": ["-period"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("aggregate", "period"),
                        name="revenue_bucket_unique_period",
                    ),
                ],
            },
        ),
        # ---------------------------------------------------------------------
        # Webhooks
        # ---------------------------------------------------------------------
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", _id_field()),
                *_timestamp_fields(),
                (
                    "stripe_event_id",
                    models.CharField(
                        help_text="Stripe Event ID (evt_xxx) - unique constraint for idempotency",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Stripe event type (e.g., 'checkout.session.completed')",
                        max_length=100,
                    ),
                ),
                (
                    "payload",
                    models.JSONField(help_text="Full webhook payload from Stripe (JSON)"),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current processing status",
                        max_length=20,
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When event was successfully processed",
                        null=True,
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True,
                        help_text="Error message if processing failed",
                        null=True,
                    ),
                ),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0,
                        help_text="Number of processing attempts",
                    ),
                ),
            ],
            options={
                "verbose_name": "Webhook Event",
                "verbose_name_plural": "Webhook Events",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="billing_web_status_1a6e0d_idx",
                    ),
                    models.Index(
                        fields=["status", "retry_count"],
                        name="billing_web_status_f93c27_idx",
                    ),
                ],
            },
        ),
    ]
