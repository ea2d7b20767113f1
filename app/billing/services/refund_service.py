"""
Refund processor: reverses the effects of a completed payment.

Stripe reports refunds cumulatively (charge.amount_refunded), so each signal
carries the total refunded so far. The delta against the record's
refunded_amount_cents is what gets reversed; a replayed signal has a zero
delta and does nothing.

Partial refund (cumulative < amount):
    - refunded_amount_cents advanced with a conditional UPDATE
    - revenue debited by the delta
    - proportional commission clawback
    - entitlement kept

Full refund (cumulative >= amount) or lost dispute:
    - COMPLETED -> REFUNDED through the FSM compare-and-set
    - entitlement revoked
    - revenue debited by the remainder
    - remaining commission reversed

Usage:
    from billing.services import RefundProcessor, RefundSignal

    RefundProcessor.apply_refund(
        RefundSignal(source_reference="ch_123:5000", payment_intent_id="pi_123",
                     refunded_total_cents=5000)
    )
"""

from __future__ import annotations

from django.db.models import Q
from django_fsm import ConcurrentTransition

from core.services import BaseService

from billing.exceptions import InvalidRefundTarget
from billing.models import PaymentRecord
from billing.services.commission_service import CommissionCalculator
from billing.services.entitlement_service import EntitlementGrantor
from billing.services.revenue_service import RevenueService
from billing.services.types import RefundResult, RefundSignal, SettlementOutcome
from billing.state_machines import PaymentStatus


class RefundProcessor(BaseService):
    """
    Applies refund and chargeback signals to PaymentRecords.
    """

    @classmethod
    def find_payment(cls, signal: RefundSignal, lock: bool = False) -> PaymentRecord | None:
        """Locate the payment by PaymentIntent, falling back to the invoice."""
        lookup = Q()
        if signal.payment_intent_id:
            lookup |= Q(processor_payment_intent_id=signal.payment_intent_id)
        if signal.invoice_id:
            lookup |= Q(processor_invoice_id=signal.invoice_id)
        if not lookup:
            return None

        queryset = PaymentRecord.objects.all()
        if lock:
            queryset = queryset.select_for_update()
        return queryset.filter(lookup).first()

    @classmethod
    def apply_refund(cls, signal: RefundSignal) -> RefundResult:
        """
        Apply a refund signal.

        Returns:
            RefundResult: APPLIED, ALREADY_SETTLED (replay or lost race) or
            UNKNOWN_TRANSACTION (no matching payment)

        Raises:
            InvalidRefundTarget: The payment has not completed yet
        """
        log_context = {
            "source_reference": signal.source_reference,
            "payment_intent_id": signal.payment_intent_id,
            "invoice_id": signal.invoice_id,
        }

        try:
            with cls.atomic():
                record = cls.find_payment(signal, lock=True)
                if record is None:
                    cls.get_logger().warning(
                        "Refund signal for unknown payment", extra=log_context
                    )
                    return RefundResult(SettlementOutcome.UNKNOWN_TRANSACTION)

                log_context["payment_id"] = str(record.id)
                if record.status == PaymentStatus.REFUNDED:
                    return RefundResult(SettlementOutcome.ALREADY_SETTLED, record)
                if record.status != PaymentStatus.COMPLETED:
                    raise InvalidRefundTarget(
                        message=f"Cannot refund payment in status {record.status}",
                        details={"payment_id": str(record.id), "status": record.status},
                    )

                refunded_total = signal.refunded_total_cents
                if refunded_total is None:
                    refunded_total = record.amount_cents
                refunded_total = min(refunded_total, record.amount_cents)
                delta = refunded_total - record.refunded_amount_cents
                if delta <= 0:
                    cls.get_logger().info("Refund signal already applied", extra=log_context)
                    return RefundResult(SettlementOutcome.ALREADY_SETTLED, record)

                if refunded_total >= record.amount_cents:
                    cls._apply_full(record, signal, delta)
                    full_refund = True
                else:
                    if not cls._apply_partial(record, signal, refunded_total, delta):
                        return RefundResult(SettlementOutcome.ALREADY_SETTLED, record)
                    full_refund = False
        except ConcurrentTransition:
            cls.get_logger().info("Refund lost race: payment changed concurrently", extra=log_context)
            return RefundResult(
                SettlementOutcome.ALREADY_SETTLED,
                PaymentRecord.objects.filter(pk=record.pk).first(),
            )

        cls.get_logger().info(
            "Refund applied",
            extra={**log_context, "reversed_cents": delta, "full_refund": full_refund},
        )
        return RefundResult(
            SettlementOutcome.APPLIED,
            PaymentRecord.objects.get(pk=record.pk),
            reversed_cents=delta,
            full_refund=full_refund,
        )

    @classmethod
    def _apply_full(cls, record: PaymentRecord, signal: RefundSignal, delta: int) -> None:
        record.refund(refunded_total_cents=record.amount_cents)
        record.save()

        EntitlementGrantor.revoke_for_payment(record, reason=signal.reason)
        RevenueService.record_refund(record, delta, full_refund=True)
        CommissionCalculator.reverse_for_refund(record, signal.source_reference)

    @classmethod
    def _apply_partial(
        cls,
        record: PaymentRecord,
        signal: RefundSignal,
        refunded_total: int,
        delta: int,
    ) -> bool:
        """Advance refunded_amount_cents; False when another writer got there first."""
        updated = PaymentRecord.objects.filter(
            pk=record.pk,
            status=PaymentStatus.COMPLETED,
            refunded_amount_cents=record.refunded_amount_cents,
        ).update(refunded_amount_cents=refunded_total)
        if not updated:
            return False

        RevenueService.record_refund(record, delta, full_refund=False)
        CommissionCalculator.claw_back_partial(record, delta, signal.source_reference)
        return True
