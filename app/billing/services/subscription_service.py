"""
Subscription synchronizer: mirrors Stripe subscription state locally.

Stripe is the source of truth for subscription status. This service copies
each reported state onto a SubscriptionRecord, derives the tier the
subscriber should currently have, and projects it onto their entitlement.

Tier rules:
    active, trialing -> subscribed tier
    past_due -> subscribed tier until the grace period ends, then free
    canceled, incomplete_expired, unpaid -> free, entitlement revoked
    incomplete, paused -> free

SubscriptionManager handles the subscriber side: cancel at period end,
resume, on-demand details and the Stripe Billing Portal.

Usage:
    from billing.services import SubscriptionSynchronizer

    snapshot = SubscriptionSnapshot.from_payload(event_object)
    SubscriptionSynchronizer.apply_processor_state(snapshot, event.get_created_at())

    SubscriptionManager.schedule_cancellation(request.user, subscription_id)
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

from django.conf import settings
from django.contrib.auth import get_user_model
from django.utils import timezone

from core.services import BaseService

from billing.adapters import (
    IdempotencyKeyGenerator,
    PortalSessionResult,
    StripeAdapter,
    SubscriptionSnapshot,
    call_with_retry,
)
from billing.exceptions import (
    BillingAccountNotFound,
    PaymentAccessDenied,
    ProcessorUnavailable,
    StripeError,
    SubscriptionNotActive,
    SubscriptionNotFound,
)
from billing.models import (
    BillingAccount,
    Community,
    SubscriptionPlan,
    SubscriptionRecord,
)
from billing.models.subscription import TERMINAL_STATUSES
from billing.services.entitlement_service import EntitlementGrantor
from billing.services.types import SettlementOutcome, SubscriptionSyncResult
from billing.state_machines import ItemKind, SubscriptionStatus, SubscriptionTier

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from django.contrib.auth.base_user import AbstractBaseUser
    from django.db.models import QuerySet

    from billing.models import PaymentRecord


class SubscriptionSynchronizer(BaseService):
    """
    Keeps SubscriptionRecord rows and subscription entitlements in step
    with Stripe.
    """

    # ==========================================================================
    # Record Creation
    # ==========================================================================

    @classmethod
    def register_from_checkout(
        cls,
        payment: PaymentRecord,
        customer_id: str | None = None,
    ) -> SubscriptionRecord:
        """
        Create the SubscriptionRecord for a completed subscription checkout.

        Runs inside the settlement transaction. If a subscription event
        already created the record, it is left as Stripe reported it.
        last_event_at stays empty so the subscription events Stripe sent
        before the checkout settled still apply.
        """
        tier = EntitlementGrantor.tier_for_item(payment.item_kind, payment.item_id)
        now = timezone.now()
        record, created = SubscriptionRecord.objects.get_or_create(
            external_subscription_id=payment.processor_subscription_id,
            defaults={
                "subscriber": payment.payer,
                "item_kind": payment.item_kind,
                "item_id": payment.item_id,
                "stripe_customer_id": customer_id,
                "tier": tier,
                "effective_tier": tier,
                "status": SubscriptionStatus.ACTIVE,
                "current_period_start": now,
            },
        )
        if created:
            cls.get_logger().info(
                "Subscription registered from checkout",
                extra={
                    "subscription_id": record.external_subscription_id,
                    "payment_id": str(payment.id),
                    "tier": tier,
                },
            )
        return record

    @classmethod
    def _resolve_item(cls, snapshot: SubscriptionSnapshot) -> tuple[str, str, str] | None:
        """Find (item_kind, item_id, tier) from metadata or the Stripe price."""
        item_kind = snapshot.metadata.get("item_kind")
        item_id = snapshot.metadata.get("item_id")
        if item_kind and item_id:
            return item_kind, item_id, EntitlementGrantor.tier_for_item(item_kind, item_id)

        if snapshot.price_id:
            community = Community.objects.filter(stripe_price_id=snapshot.price_id).first()
            if community is not None:
                return ItemKind.COMMUNITY, str(community.id), community.default_member_tier
            plan = SubscriptionPlan.objects.filter(stripe_price_id=snapshot.price_id).first()
            if plan is not None:
                return ItemKind.PLAN, str(plan.id), plan.tier
        return None

    @classmethod
    def _resolve_subscriber(cls, snapshot: SubscriptionSnapshot):
        payer_id = snapshot.metadata.get("payer_id")
        if payer_id:
            user = get_user_model().objects.filter(pk=payer_id).first()
            if user is not None:
                return user
        if snapshot.customer_id:
            account = (
                BillingAccount.objects.select_related("user")
                .filter(stripe_customer_id=snapshot.customer_id)
                .first()
            )
            if account is not None:
                return account.user
        return None

    @classmethod
    def _create_from_snapshot(cls, snapshot: SubscriptionSnapshot) -> SubscriptionRecord | None:
        subscriber = cls._resolve_subscriber(snapshot)
        item = cls._resolve_item(snapshot)
        if subscriber is None or item is None:
            cls.get_logger().warning(
                "Subscription event for unknown subscriber or item",
                extra={
                    "subscription_id": snapshot.id,
                    "customer_id": snapshot.customer_id,
                    "price_id": snapshot.price_id,
                },
            )
            return None

        item_kind, item_id, tier = item
        record, _ = SubscriptionRecord.objects.get_or_create(
            external_subscription_id=snapshot.id,
            defaults={
                "subscriber": subscriber,
                "item_kind": item_kind,
                "item_id": item_id,
                "tier": tier,
                "effective_tier": SubscriptionTier.FREE,
                "status": snapshot.status,
            },
        )
        return SubscriptionRecord.objects.select_for_update().get(pk=record.pk)

    # ==========================================================================
    # State Mirroring
    # ==========================================================================

    @classmethod
    def derive_effective_tier(cls, record: SubscriptionRecord, now: datetime) -> str:
        if record.is_in_good_standing:
            return record.tier
        if record.status == SubscriptionStatus.PAST_DUE:
            return SubscriptionTier.FREE if record.is_past_grace_period(now) else record.tier
        return SubscriptionTier.FREE

    @classmethod
    def _apply_snapshot(
        cls,
        record: SubscriptionRecord,
        snapshot: SubscriptionSnapshot,
        now: datetime,
        event_created_at: datetime | None,
    ) -> None:
        record.status = snapshot.status
        record.stripe_customer_id = snapshot.customer_id or record.stripe_customer_id
        record.stripe_price_id = snapshot.price_id or record.stripe_price_id
        record.current_period_start = snapshot.current_period_start or record.current_period_start
        record.current_period_end = snapshot.current_period_end or record.current_period_end
        record.cancel_at_period_end = snapshot.cancel_at_period_end

        if record.status == SubscriptionStatus.PAST_DUE:
            if record.past_due_since is None:
                record.past_due_since = event_created_at or now
        else:
            record.past_due_since = None

        if record.status in TERMINAL_STATUSES and record.canceled_at is None:
            record.canceled_at = snapshot.canceled_at or now

        effective_tier = cls.derive_effective_tier(record, now)
        if effective_tier == SubscriptionTier.FREE and record.effective_tier != SubscriptionTier.FREE:
            record.demoted_at = now
        elif effective_tier != SubscriptionTier.FREE:
            record.demoted_at = None
        record.effective_tier = effective_tier

    @classmethod
    def apply_processor_state(
        cls,
        snapshot: SubscriptionSnapshot,
        event_created_at: datetime | None = None,
        source: str = "webhook",
    ) -> SubscriptionSyncResult:
        """
        Mirror one Stripe subscription state.

        Events older than the last one applied are ignored, so out-of-order
        delivery cannot roll a subscription back.
        """
        now = timezone.now()
        log_context = {
            "subscription_id": snapshot.id,
            "status": snapshot.status,
            "source": source,
        }

        with cls.atomic():
            record = (
                SubscriptionRecord.objects.select_for_update()
                .filter(external_subscription_id=snapshot.id)
                .first()
            )
            if record is None:
                record = cls._create_from_snapshot(snapshot)
                if record is None:
                    return SubscriptionSyncResult(SettlementOutcome.UNKNOWN_TRANSACTION, detail=snapshot.id)
            elif (
                event_created_at is not None
                and record.last_event_at is not None
                and event_created_at < record.last_event_at
            ):
                cls.get_logger().info(
                    "Stale subscription event ignored",
                    extra={**log_context, "last_event_at": record.last_event_at.isoformat()},
                )
                return SubscriptionSyncResult(SettlementOutcome.IGNORED, record, detail="stale")

            previous_tier = record.effective_tier
            cls._apply_snapshot(record, snapshot, now, event_created_at)
            if event_created_at is not None:
                record.last_event_at = event_created_at
            if source == "sync":
                record.last_synced_at = now
            record.save()
            EntitlementGrantor.apply_subscription_tier(record)

        cls.get_logger().info(
            "Subscription state applied",
            extra={
                **log_context,
                "previous_tier": previous_tier,
                "effective_tier": record.effective_tier,
            },
        )
        return SubscriptionSyncResult(SettlementOutcome.APPLIED, record)

    # ==========================================================================
    # Periodic Maintenance
    # ==========================================================================

    @classmethod
    def enforce_grace_periods(cls, now: datetime | None = None) -> int:
        """
        Demote past_due subscriptions whose grace period has ended.

        Returns the number of subscriptions demoted.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS)
        candidate_ids = list(
            SubscriptionRecord.objects.filter(
                status=SubscriptionStatus.PAST_DUE,
                past_due_since__lt=cutoff,
            )
            .exclude(effective_tier=SubscriptionTier.FREE)
            .values_list("id", flat=True)
        )

        demoted = 0
        for record_id in candidate_ids:
            with cls.atomic():
                record = SubscriptionRecord.objects.select_for_update().get(id=record_id)
                if not record.is_past_grace_period(now) or record.effective_tier == SubscriptionTier.FREE:
                    continue
                record.effective_tier = SubscriptionTier.FREE
                record.demoted_at = now
                record.save(update_fields=["effective_tier", "demoted_at", "updated_at"])
                EntitlementGrantor.apply_subscription_tier(record)
                demoted += 1

            cls.get_logger().info(
                "Subscription demoted after grace period",
                extra={
                    "subscription_id": record.external_subscription_id,
                    "past_due_since": record.past_due_since.isoformat(),
                },
            )
        return demoted

    @classmethod
    def refresh_from_processor(cls, limit: int | None = None) -> dict[str, int]:
        """
        Pull current state from Stripe for every non-terminal subscription.

        Pulled state is stamped with the time the request started, so only
        events created after the pull can override it.
        """
        records = SubscriptionRecord.objects.exclude(status__in=TERMINAL_STATUSES).order_by(
            "last_synced_at"
        )
        if limit:
            records = records[:limit]

        counts = {"synced": 0, "errors": 0}
        for external_id in list(records.values_list("external_subscription_id", flat=True)):
            pulled_at = timezone.now()
            try:
                snapshot = call_with_retry(
                    StripeAdapter.retrieve_subscription,
                    external_id,
                    operation="retrieve_subscription",
                )
            except (ProcessorUnavailable, StripeError) as e:
                counts["errors"] += 1
                cls.get_logger().warning(
                    "Subscription refresh failed",
                    extra={"subscription_id": external_id, "error": str(e)},
                )
                continue
            cls.apply_processor_state(snapshot, event_created_at=pulled_at, source="sync")
            counts["synced"] += 1

        cls.get_logger().info("Subscription refresh finished", extra=counts)
        return counts


class SubscriptionManager(BaseService):
    """
    Subscriber-initiated subscription changes and the billing portal.

    Changes go to Stripe first. The returned state is mirrored through
    SubscriptionSynchronizer, stamped with the time the request started,
    so the customer.subscription.updated event Stripe sends afterwards
    still overrides it.
    """

    PORTAL_RETURN_PATH = "/account/billing"

    @classmethod
    def list_for(cls, user: AbstractBaseUser) -> QuerySet[SubscriptionRecord]:
        return SubscriptionRecord.objects.filter(subscriber=user)

    @classmethod
    def get_owned(cls, user: AbstractBaseUser, subscription_id: UUID | str) -> SubscriptionRecord:
        """
        Raises:
            SubscriptionNotFound: No record with this id
            PaymentAccessDenied: The record belongs to another user
        """
        details = {"subscription_id": str(subscription_id)}
        record = SubscriptionRecord.objects.filter(pk=subscription_id).first()
        if record is None:
            raise SubscriptionNotFound(message="Subscription not found", details=details)
        if record.subscriber_id != user.pk:
            raise PaymentAccessDenied(
                message="This subscription belongs to another user",
                details=details,
            )
        return record

    @classmethod
    def details(cls, user: AbstractBaseUser, subscription_id: UUID | str) -> SubscriptionRecord:
        """
        Return the caller's subscription with state freshly pulled from Stripe.

        Falls back to the local mirror when Stripe is unreachable. Ended
        subscriptions are not pulled.
        """
        record = cls.get_owned(user, subscription_id)
        if record.is_terminal:
            return record

        pulled_at = timezone.now()
        try:
            snapshot = call_with_retry(
                StripeAdapter.retrieve_subscription,
                record.external_subscription_id,
                operation="retrieve_subscription",
            )
        except (ProcessorUnavailable, StripeError) as e:
            cls.get_logger().warning(
                "Subscription details served from local state",
                extra={"subscription_id": record.external_subscription_id, "error": str(e)},
            )
            return record

        result = SubscriptionSynchronizer.apply_processor_state(
            snapshot, event_created_at=pulled_at, source="sync"
        )
        return result.record

    @classmethod
    def _set_cancel_at_period_end(
        cls,
        user: AbstractBaseUser,
        subscription_id: UUID | str,
        cancel: bool,
    ) -> SubscriptionRecord:
        record = cls.get_owned(user, subscription_id)
        if record.is_terminal:
            raise SubscriptionNotActive(
                message="This subscription has already ended",
                details={"subscription_id": str(record.id), "status": record.status},
            )

        operation = "cancel_subscription" if cancel else "resume_subscription"
        # updated_at moves on every applied change, so repeated toggles get
        # fresh keys while retries of one request share a key
        idempotency_key = IdempotencyKeyGenerator.generate(
            operation, f"{record.id}:{record.updated_at.timestamp():.6f}"
        )
        requested_at = timezone.now()
        snapshot = call_with_retry(
            StripeAdapter.update_subscription,
            record.external_subscription_id,
            cancel_at_period_end=cancel,
            idempotency_key=idempotency_key,
            operation=operation,
        )
        result = SubscriptionSynchronizer.apply_processor_state(
            snapshot, event_created_at=requested_at, source="api"
        )

        cls.get_logger().info(
            "Subscription cancellation scheduled" if cancel else "Subscription resumed",
            extra={
                "subscription_id": record.external_subscription_id,
                "user_id": str(user.pk),
                "outcome": result.outcome.value,
            },
        )
        return result.record

    @classmethod
    def schedule_cancellation(
        cls, user: AbstractBaseUser, subscription_id: UUID | str
    ) -> SubscriptionRecord:
        """
        Cancel at the end of the current period. Access continues until then.

        Raises:
            SubscriptionNotFound, PaymentAccessDenied: Ownership checks
            SubscriptionNotActive: Stripe already ended the subscription
            ProcessorUnavailable: Stripe unreachable after retries
        """
        return cls._set_cancel_at_period_end(user, subscription_id, cancel=True)

    @classmethod
    def resume(cls, user: AbstractBaseUser, subscription_id: UUID | str) -> SubscriptionRecord:
        """Withdraw a scheduled cancellation. Raises as schedule_cancellation."""
        return cls._set_cancel_at_period_end(user, subscription_id, cancel=False)

    @classmethod
    def portal_session(cls, user: AbstractBaseUser) -> PortalSessionResult:
        """
        Open a Stripe Billing Portal session for the caller.

        Raises:
            BillingAccountNotFound: The caller never reached Stripe checkout
            ProcessorUnavailable: Stripe unreachable after retries
        """
        account = BillingAccount.objects.filter(user=user).first()
        if account is None or not account.stripe_customer_id:
            raise BillingAccountNotFound(
                message="No billing account found",
                details={"user_id": str(user.pk)},
            )

        frontend = settings.BILLING_FRONTEND_URL.rstrip("/")
        return call_with_retry(
            StripeAdapter.create_billing_portal_session,
            account.stripe_customer_id,
            f"{frontend}{cls.PORTAL_RETURN_PATH}",
            IdempotencyKeyGenerator.generate("create_billing_portal_session", uuid4()),
            operation="create_billing_portal_session",
        )
