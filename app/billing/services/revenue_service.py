"""
Revenue aggregate updates.

Called only from inside the transaction that wins a PaymentRecord
transition. Every counter change is a single UPDATE with F() expressions,
so concurrent settlements for the same owner never lose increments.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db.models import F
from django.utils import timezone

from core.services import BaseService

from billing.models import Course, RevenueAggregate, RevenuePeriodBucket
from billing.state_machines import ItemKind, RevenueOwnerType

if TYPE_CHECKING:
    from datetime import datetime

    from billing.models import PaymentRecord

PLATFORM_OWNER_ID = "platform"


class RevenueService(BaseService):
    """
    Maintains RevenueAggregate and RevenuePeriodBucket rows.

    Owners:
        course -> seller (course owner's user id)
        community -> community id
        plan -> platform
    """

    @staticmethod
    def period_for(moment: datetime) -> str:
        return moment.strftime("%Y-%m")

    @classmethod
    def owner_for(cls, item_kind: str, item_id: str) -> tuple[str, str]:
        """Resolve the aggregate owner for an item reference."""
        if item_kind == ItemKind.COURSE:
            owner_id = (
                Course.objects.filter(id=item_id).values_list("owner_id", flat=True).first()
            )
            return RevenueOwnerType.SELLER, str(owner_id)
        if item_kind == ItemKind.COMMUNITY:
            return RevenueOwnerType.COMMUNITY, str(item_id)
        return RevenueOwnerType.PLATFORM, PLATFORM_OWNER_ID

    @classmethod
    def _get_aggregate(cls, payment: PaymentRecord) -> RevenueAggregate:
        aggregate, _ = RevenueAggregate.objects.get_or_create(
            owner_type=payment.revenue_owner_type,
            owner_id=payment.revenue_owner_id,
            currency=payment.currency,
        )
        return aggregate

    @classmethod
    def _get_bucket(
        cls, aggregate: RevenueAggregate, payment: PaymentRecord
    ) -> RevenuePeriodBucket:
        bucket, _ = RevenuePeriodBucket.objects.get_or_create(
            aggregate=aggregate,
            period=cls.period_for(payment.completed_at or timezone.now()),
        )
        return bucket

    @classmethod
    def record_completion(cls, payment: PaymentRecord) -> None:
        """Credit a newly completed payment to its owner and month."""
        aggregate = cls._get_aggregate(payment)
        bucket = cls._get_bucket(aggregate, payment)
        increments = {
            "gross_cents": F("gross_cents") + payment.amount_cents,
            "total_cents": F("total_cents") + payment.amount_cents,
            "completed_count": F("completed_count") + 1,
        }
        RevenueAggregate.objects.filter(pk=aggregate.pk).update(**increments)
        RevenuePeriodBucket.objects.filter(pk=bucket.pk).update(**increments)

        cls.get_logger().info(
            "Revenue credited",
            extra={
                "payment_id": str(payment.id),
                "owner_type": payment.revenue_owner_type,
                "owner_id": payment.revenue_owner_id,
                "amount_cents": payment.amount_cents,
            },
        )

    @classmethod
    def record_refund(
        cls, payment: PaymentRecord, amount_cents: int, full_refund: bool
    ) -> None:
        """
        Debit a refunded amount from the owner and from the month the
        payment completed in.
        """
        aggregate = cls._get_aggregate(payment)
        bucket = cls._get_bucket(aggregate, payment)
        decrements = {
            "refunded_cents": F("refunded_cents") + amount_cents,
            "total_cents": F("total_cents") - amount_cents,
        }
        if full_refund:
            decrements["refunded_count"] = F("refunded_count") + 1
        RevenueAggregate.objects.filter(pk=aggregate.pk).update(**decrements)
        RevenuePeriodBucket.objects.filter(pk=bucket.pk).update(**decrements)

        cls.get_logger().info(
            "Revenue debited",
            extra={
                "payment_id": str(payment.id),
                "owner_type": payment.revenue_owner_type,
                "owner_id": payment.revenue_owner_id,
                "amount_cents": amount_cents,
                "full_refund": full_refund,
            },
        )
