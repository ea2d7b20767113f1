"""
Revenue rollups per seller, community and the platform.

Aggregates are denormalized and must only be changed inside the same
transaction that wins a PaymentRecord transition, using F() expressions,
so that for each owner:

    total_cents == sum(completed amounts) - sum(refunded amounts)
"""

from __future__ import annotations

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.state_machines import RevenueOwnerType


class RevenueAggregate(UUIDPrimaryKeyMixin, BaseModel):
    """
    Lifetime revenue for one owner in one currency.

    Fields:
        owner_type/owner_id: Seller user id, community id or "platform"
        currency: ISO 4217 currency code
        gross_cents: Sum of completed payments
        refunded_cents: Sum of refunds and chargebacks
        total_cents: gross_cents - refunded_cents
        completed_count/refunded_count: Payment counts
    """

    owner_type = models.CharField(
        max_length=20,
        choices=RevenueOwnerType.choices,
        help_text="Kind of owner this revenue belongs to",
    )

    owner_id = models.CharField(
        max_length=64,
        help_text="Owner identifier",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    gross_cents = models.BigIntegerField(
        default=0,
        help_text="Sum of completed payment amounts",
    )

    refunded_cents = models.BigIntegerField(
        default=0,
        help_text="Sum of refunded amounts",
    )

    total_cents = models.BigIntegerField(
        default=0,
        help_text="Net revenue (gross minus refunded)",
    )

    completed_count = models.PositiveIntegerField(
        default=0,
        help_text="Number of completed payments",
    )

    refunded_count = models.PositiveIntegerField(
        default=0,
        help_text="Number of fully refunded payments",
    )

    class Meta:
        ordering = ["owner_type", "owner_id"]
        verbose_name = "Revenue Aggregate"
        verbose_name_plural = "Revenue Aggregates"
        constraints = [
            models.UniqueConstraint(
                fields=["owner_type", "owner_id", "currency"],
                name="revenue_aggregate_unique_owner_currency",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.total_cents / 100:.2f} {self.currency.upper()}"
        return f"RevenueAggregate({self.owner_type}:{self.owner_id}, {amount_display})"


class RevenuePeriodBucket(UUIDPrimaryKeyMixin, BaseModel):
    """
    Monthly revenue for an aggregate.

    Refunds are booked against the month the payment completed in, so each
    bucket converges to the net revenue of the sales made that month.
    """

    aggregate = models.ForeignKey(
        RevenueAggregate,
        on_delete=models.CASCADE,
        related_name="buckets",
        help_text="Aggregate this bucket belongs to",
    )

    period = models.CharField(
        max_length=7,
        help_text="Calendar month in YYYY-MM format",
    )

    gross_cents = models.BigIntegerField(default=0)
    refunded_cents = models.BigIntegerField(default=0)
    total_cents = models.BigIntegerField(default=0)
    completed_count = models.PositiveIntegerField(default=0)
    refunded_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["-period"]
        verbose_name = "Revenue Period Bucket"
        verbose_name_plural = "Revenue Period Buckets"
        constraints = [
            models.UniqueConstraint(
                fields=["aggregate", "period"],
                name="revenue_bucket_unique_period",
            ),
        ]

    def __str__(self) -> str:
        return f"RevenuePeriodBucket({self.aggregate_id}, {self.period}, {self.total_cents})"
