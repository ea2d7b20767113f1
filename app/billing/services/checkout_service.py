"""
Checkout service: starts purchases through Stripe Checkout.

Flow:
    1. Resolve the item and reject free, missing or already owned items
    2. Snapshot affiliate attribution and the revenue owner
    3. Create a PENDING PaymentRecord (its id is the checkout attempt id)
    4. Create the Stripe Checkout Session with an idempotency key derived
       from the record id, retrying transient errors
    5. Store the session id and return the hosted checkout URL

If Stripe stays unavailable the record is CANCELED and the error surfaces
to the caller; no session exists, so nothing can settle it later.

Usage:
    from billing.services import CheckoutService

    result = CheckoutService.start_checkout(
        payer=request.user,
        item_kind="course",
        item_id=str(course.id),
        affiliate_code="ALICE10",
    )
    return Response({"redirect_url": result.redirect_url})
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError

from core.services import BaseService

from billing.adapters import (
    CreateCheckoutSessionParams,
    IdempotencyKeyGenerator,
    StripeAdapter,
    call_with_retry,
)
from billing.exceptions import (
    AlreadyOwned,
    ItemNotFound,
    ItemNotPurchasable,
    ProcessorUnavailable,
    StripeError,
)
from billing.models import (
    BillingAccount,
    Community,
    Course,
    PaymentRecord,
    SubscriptionPlan,
    SubscriptionRecord,
)
from billing.models.subscription import TERMINAL_STATUSES
from billing.services.commission_service import CommissionCalculator
from billing.services.entitlement_service import EntitlementGrantor
from billing.services.revenue_service import PLATFORM_OWNER_ID
from billing.services.types import CatalogItem, CheckoutResult
from billing.state_machines import ItemKind, RevenueOwnerType, SubscriptionTier

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

    from billing.services.types import AttributionSnapshot


class CheckoutService(BaseService):
    """
    Starts checkouts for courses, community memberships and plans.
    """

    # ==========================================================================
    # Catalog
    # ==========================================================================

    @classmethod
    def resolve_item(cls, item_kind: str, item_id: str) -> CatalogItem:
        """
        Load a purchasable item.

        Raises:
            ItemNotFound: Unknown kind, unknown id, or not on sale
            ItemNotPurchasable: The item is free
        """
        details = {"item_kind": item_kind, "item_id": str(item_id)}
        try:
            if item_kind == ItemKind.COURSE:
                course = Course.objects.filter(id=item_id, is_published=True).first()
                if course is None:
                    raise ItemNotFound(message="Course not found", details=details)
                item = CatalogItem(
                    kind=ItemKind.COURSE,
                    id=str(course.id),
                    title=course.title,
                    amount_cents=course.price_cents,
                    currency=course.currency,
                    tier=SubscriptionTier.STANDARD,
                    stripe_price_id=course.stripe_price_id,
                    revenue_owner_type=RevenueOwnerType.SELLER,
                    revenue_owner_id=str(course.owner_id),
                    owner_user_id=course.owner_id,
                )
            elif item_kind == ItemKind.COMMUNITY:
                community = Community.objects.filter(id=item_id, is_active=True).first()
                if community is None:
                    raise ItemNotFound(message="Community not found", details=details)
                item = CatalogItem(
                    kind=ItemKind.COMMUNITY,
                    id=str(community.id),
                    title=community.name,
                    amount_cents=community.monthly_price_cents,
                    currency=community.currency,
                    tier=community.default_member_tier,
                    stripe_price_id=community.stripe_price_id,
                    recurring_interval="month",
                    revenue_owner_type=RevenueOwnerType.COMMUNITY,
                    revenue_owner_id=str(community.id),
                    owner_user_id=community.owner_id,
                    community=community,
                )
            elif item_kind == ItemKind.PLAN:
                plan = SubscriptionPlan.objects.filter(id=item_id, is_active=True).first()
                if plan is None:
                    raise ItemNotFound(message="Plan not found", details=details)
                item = CatalogItem(
                    kind=ItemKind.PLAN,
                    id=str(plan.id),
                    title=plan.name,
                    amount_cents=plan.price_cents,
                    currency=plan.currency,
                    tier=plan.tier,
                    stripe_price_id=plan.stripe_price_id,
                    recurring_interval=plan.interval,
                    revenue_owner_type=RevenueOwnerType.PLATFORM,
                    revenue_owner_id=PLATFORM_OWNER_ID,
                )
            else:
                raise ItemNotFound(message="Unknown item kind", details=details)
        except (DjangoValidationError, ValueError) as e:
            # Malformed UUIDs
            raise ItemNotFound(message="Item not found", details=details) from e

        if item.amount_cents <= 0:
            raise ItemNotPurchasable(message="Item is free", details=details)
        return item

    @classmethod
    def ensure_not_owned(cls, payer: AbstractBaseUser, item: CatalogItem) -> None:
        """
        Raises:
            AlreadyOwned: The payer already has access or a live subscription
        """
        details = {"item_kind": item.kind, "item_id": item.id}
        if item.owner_user_id is not None and item.owner_user_id == payer.pk:
            raise AlreadyOwned(message="You own this item", details=details)
        if EntitlementGrantor.active_entitlement(payer, item.kind, item.id) is not None:
            raise AlreadyOwned(message="You already have access to this item", details=details)
        if item.is_subscription:
            live = (
                SubscriptionRecord.objects.filter(
                    subscriber=payer,
                    item_kind=item.kind,
                    item_id=item.id,
                )
                .exclude(status__in=TERMINAL_STATUSES)
                .exists()
            )
            if live:
                raise AlreadyOwned(
                    message="You already have a subscription for this item",
                    details=details,
                )

    # ==========================================================================
    # Stripe Customer
    # ==========================================================================

    @classmethod
    def ensure_customer(cls, payer: AbstractBaseUser) -> BillingAccount:
        """Return the payer's account, creating the Stripe customer on first use."""
        account = BillingAccount.for_user(payer)
        if account.stripe_customer_id:
            return account

        customer = call_with_retry(
            StripeAdapter.create_customer,
            getattr(payer, "email", None),
            idempotency_key=IdempotencyKeyGenerator.generate("create_customer", payer.pk),
            metadata={"user_id": str(payer.pk)},
            operation="create_customer",
        )
        BillingAccount.objects.filter(
            pk=account.pk, stripe_customer_id__isnull=True
        ).update(stripe_customer_id=customer.id)
        return BillingAccount.objects.get(pk=account.pk)

    # ==========================================================================
    # Checkout
    # ==========================================================================

    @classmethod
    def build_session_params(
        cls,
        record: PaymentRecord,
        item: CatalogItem,
        customer_id: str | None,
    ) -> CreateCheckoutSessionParams:
        if item.stripe_price_id:
            line_item = {"price": item.stripe_price_id, "quantity": 1}
        else:
            price_data = {
                "currency": item.currency,
                "unit_amount": item.amount_cents,
                "product_data": {"name": item.title},
            }
            if item.is_subscription:
                price_data["recurring"] = {"interval": item.recurring_interval}
            line_item = {"price_data": price_data, "quantity": 1}

        metadata = {
            "attempt_id": str(record.id),
            "item_kind": item.kind,
            "item_id": item.id,
            "payer_id": str(record.payer_id),
        }
        frontend = settings.BILLING_FRONTEND_URL.rstrip("/")
        return CreateCheckoutSessionParams(
            mode=item.checkout_mode,
            line_items=[line_item],
            success_url=f"{frontend}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/checkout/canceled?attempt_id={record.id}",
            idempotency_key=IdempotencyKeyGenerator.generate(
                "create_checkout_session", record.id
            ),
            client_reference_id=str(record.id),
            customer_id=customer_id,
            metadata=metadata,
            subscription_metadata=metadata if item.is_subscription else {},
        )

    @classmethod
    def start_checkout(
        cls,
        payer: AbstractBaseUser,
        item_kind: str,
        item_id: str,
        affiliate_code: str | None = None,
        currency: str | None = None,
    ) -> CheckoutResult:
        """
        Open a checkout for one item.

        Raises:
            ItemNotFound, ItemNotPurchasable, AlreadyOwned: Item checks
            ProcessorUnavailable: Stripe unreachable after retries
            StripeError: Stripe rejected the request
        """
        item = cls.resolve_item(item_kind, item_id)
        if currency and currency.lower() != item.currency.lower():
            raise ItemNotPurchasable(
                message=f"Item is not sold in {currency.upper()}",
                details={"item_kind": item.kind, "item_id": item.id, "currency": currency},
            )
        cls.ensure_not_owned(payer, item)

        attribution: AttributionSnapshot | None = CommissionCalculator.attribute_checkout(
            affiliate_code, payer, item
        )
        account = cls.ensure_customer(payer)

        record = PaymentRecord.objects.create(
            payer=payer,
            item_kind=item.kind,
            item_id=item.id,
            amount_cents=item.amount_cents,
            currency=item.currency.lower(),
            revenue_owner_type=item.revenue_owner_type,
            revenue_owner_id=item.revenue_owner_id,
            referral_attribution=attribution.attribution if attribution else None,
            affiliate=attribution.affiliate if attribution else None,
            commission_rate_bps=attribution.rate_bps if attribution else None,
            attributed_at=attribution.attributed_at if attribution else None,
            attribution_expires_at=attribution.expires_at if attribution else None,
            metadata={"affiliate_code": affiliate_code} if affiliate_code else {},
        )
        log_context = {
            "payment_id": str(record.id),
            "payer_id": str(payer.pk),
            "item_kind": item.kind,
            "item_id": item.id,
            "amount_cents": item.amount_cents,
        }
        cls.get_logger().info("Checkout attempt created", extra=log_context)

        params = cls.build_session_params(record, item, account.stripe_customer_id)
        try:
            session = call_with_retry(
                StripeAdapter.create_checkout_session,
                params,
                operation="create_checkout_session",
            )
        except (ProcessorUnavailable, StripeError) as e:
            record.cancel(reason=f"checkout_session_failed: {e.message}")
            record.save()
            cls.get_logger().warning(
                "Checkout attempt canceled: session creation failed",
                extra={**log_context, "error_code": e.error_code},
            )
            raise

        record.external_transaction_id = session.id
        record.checkout_url = session.url
        record.save(update_fields=["external_transaction_id", "checkout_url", "updated_at"])

        cls.get_logger().info(
            "Checkout session created",
            extra={**log_context, "session_id": session.id},
        )
        return CheckoutResult(payment=record, redirect_url=session.url, session_id=session.id)
