"""
API views for billing.

This module provides REST API endpoints for purchases and access:
- CheckoutView: Start a Stripe Checkout for a course, community or plan
- VerifyCheckoutView: Confirm a checkout after the redirect back from Stripe
- PaymentHistoryView: The caller's payment records
- EntitlementListView: The caller's active entitlements
- AccessCheckView: Whether the caller can use an item
- ReferralClickView: Record a referral link click for the caller
- SubscriptionListView / SubscriptionDetailView: The caller's subscriptions
- SubscriptionCancelView / SubscriptionResumeView: Cancel at period end, undo
- BillingPortalView: Stripe Billing Portal for payment methods and invoices

URL Structure:
    /api/v1/billing/checkout/                          POST
    /api/v1/billing/checkout/verify/                   POST
    /api/v1/billing/payments/                          GET
    /api/v1/billing/entitlements/                      GET
    /api/v1/billing/access/{item_kind}/{item_id}/      GET
    /api/v1/billing/referrals/{code}/click/            POST
    /api/v1/billing/subscriptions/                     GET
    /api/v1/billing/subscriptions/portal/              POST
    /api/v1/billing/subscriptions/{id}/                GET
    /api/v1/billing/subscriptions/{id}/cancel/         POST
    /api/v1/billing/subscriptions/{id}/resume/         POST
    /api/v1/billing/webhooks/stripe/                   POST (billing.webhooks)

Design Decisions:
    - Views stay thin; all rules live in billing.services
    - Service exceptions carry their HTTP status and are rendered by
      core.views.api_exception_handler as {kind, message, error_code}
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import generics, status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import ValidationError

from billing.models import Entitlement, PaymentRecord
from billing.pagination import PaymentHistoryCursorPagination
from billing.serializers import (
    AccessSummarySerializer,
    CheckoutRequestSerializer,
    CheckoutResponseSerializer,
    EntitlementSerializer,
    PaymentRecordSerializer,
    PortalSessionSerializer,
    ReferralClickSerializer,
    SubscriptionRecordSerializer,
    VerifyResponseSerializer,
    VerifySessionSerializer,
)
from billing.services import (
    CheckoutService,
    CommissionCalculator,
    ConfirmationReconciler,
    EntitlementGrantor,
    SubscriptionManager,
)
from billing.state_machines import ItemKind, SubscriptionTier


class CheckoutView(APIView):
    """
    Start a checkout.

    POST /api/v1/billing/checkout/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="start_checkout",
        summary="Start checkout",
        tags=["Billing - Checkout"],
        request=CheckoutRequestSerializer,
        responses={
            201: CheckoutResponseSerializer,
            400: OpenApiResponse(description="Invalid request or free item"),
            404: OpenApiResponse(description="Item not found"),
            409: OpenApiResponse(description="Already owned"),
            503: OpenApiResponse(description="Payment processor unavailable"),
        },
    )
    def post(self, request):
        serializer = CheckoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = CheckoutService.start_checkout(
            payer=request.user,
            item_kind=data["item_kind"],
            item_id=data["item_id"],
            affiliate_code=data.get("affiliate_code") or None,
            currency=data.get("currency"),
        )

        output = CheckoutResponseSerializer(
            {
                "attempt_id": result.attempt_id,
                "session_id": result.session_id,
                "redirect_url": result.redirect_url,
                "status": result.payment.status,
            }
        )
        return Response(output.data, status=status.HTTP_201_CREATED)


class VerifyCheckoutView(APIView):
    """
    Confirm a checkout from the success redirect.

    POST /api/v1/billing/checkout/verify/

    Safe to call repeatedly and concurrently with the Stripe webhook; the
    payment is settled exactly once.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="verify_checkout",
        summary="Verify checkout",
        tags=["Billing - Checkout"],
        request=VerifySessionSerializer,
        responses={
            200: VerifyResponseSerializer,
            403: OpenApiResponse(description="Payment belongs to another user"),
            404: OpenApiResponse(description="Payment not found"),
            503: OpenApiResponse(description="Payment processor unavailable"),
        },
    )
    def post(self, request):
        serializer = VerifySessionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = ConfirmationReconciler.verify_session(
            request.user, serializer.validated_data["session_id"]
        )

        output = VerifyResponseSerializer(
            {
                "attempt_id": result.payment.id,
                "status": result.payment.status,
                "outcome": result.settlement.outcome.value,
                "item_kind": result.payment.item_kind,
                "item_id": result.payment.item_id,
                "entitlement": result.entitlement,
            }
        )
        return Response(output.data)


@extend_schema(
    operation_id="list_payments",
    summary="List my payments",
    tags=["Billing - History"],
)
class PaymentHistoryView(generics.ListAPIView):
    """
    GET /api/v1/billing/payments/
    """

    permission_classes = [IsAuthenticated]
    serializer_class = PaymentRecordSerializer
    pagination_class = PaymentHistoryCursorPagination

    def get_queryset(self):
        return PaymentRecord.objects.filter(payer=self.request.user)


@extend_schema(
    operation_id="list_entitlements",
    summary="List my entitlements",
    tags=["Billing - Access"],
)
class EntitlementListView(generics.ListAPIView):
    """
    GET /api/v1/billing/entitlements/
    """

    permission_classes = [IsAuthenticated]
    serializer_class = EntitlementSerializer
    pagination_class = None

    def get_queryset(self):
        return Entitlement.objects.filter(
            user=self.request.user,
            revoked_at__isnull=True,
        ).exclude(tier=SubscriptionTier.FREE)


class AccessCheckView(APIView):
    """
    GET /api/v1/billing/access/{item_kind}/{item_id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="check_access",
        summary="Check access to an item",
        tags=["Billing - Access"],
        responses={200: AccessSummarySerializer},
    )
    def get(self, request, item_kind: str, item_id: str):
        if item_kind not in ItemKind.values:
            raise ValidationError(
                message=f"Unknown item kind: {item_kind}",
                details={"item_kind": item_kind},
            )
        summary = EntitlementGrantor.summary_for(request.user, item_kind, item_id)
        return Response(AccessSummarySerializer(summary).data)


class ReferralClickView(APIView):
    """
    Record that the caller followed a referral link.

    POST /api/v1/billing/referrals/{code}/click/

    Unknown codes and self-referrals are accepted and ignored, so links
    never fail for the visitor.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="record_referral_click",
        summary="Record referral click",
        tags=["Billing - Affiliates"],
        request=None,
        responses={
            201: ReferralClickSerializer,
            204: OpenApiResponse(description="Click ignored"),
        },
    )
    def post(self, request, code: str):
        attribution = CommissionCalculator.record_click(code, request.user)
        if attribution is None:
            return Response(status=status.HTTP_204_NO_CONTENT)
        return Response(
            ReferralClickSerializer(attribution).data,
            status=status.HTTP_201_CREATED,
        )


# =============================================================================
# Subscriptions
# =============================================================================


@extend_schema(
    operation_id="list_subscriptions",
    summary="List my subscriptions",
    tags=["Billing - Subscriptions"],
)
class SubscriptionListView(generics.ListAPIView):
    """
    GET /api/v1/billing/subscriptions/

    Served from the local mirror; use the detail endpoint for a fresh pull.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = SubscriptionRecordSerializer
    pagination_class = None

    def get_queryset(self):
        return SubscriptionManager.list_for(self.request.user)


class SubscriptionDetailView(APIView):
    """
    GET /api/v1/billing/subscriptions/{id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_subscription",
        summary="Subscription details",
        tags=["Billing - Subscriptions"],
        responses={
            200: SubscriptionRecordSerializer,
            403: OpenApiResponse(description="Subscription belongs to another user"),
            404: OpenApiResponse(description="Subscription not found"),
        },
    )
    def get(self, request, subscription_id):
        record = SubscriptionManager.details(request.user, subscription_id)
        return Response(SubscriptionRecordSerializer(record).data)


class SubscriptionCancelView(APIView):
    """
    Cancel at the end of the current billing period.

    POST /api/v1/billing/subscriptions/{id}/cancel/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="cancel_subscription",
        summary="Cancel at period end",
        tags=["Billing - Subscriptions"],
        request=None,
        responses={
            200: SubscriptionRecordSerializer,
            403: OpenApiResponse(description="Subscription belongs to another user"),
            404: OpenApiResponse(description="Subscription not found"),
            409: OpenApiResponse(description="Subscription already ended"),
            503: OpenApiResponse(description="Payment processor unavailable"),
        },
    )
    def post(self, request, subscription_id):
        record = SubscriptionManager.schedule_cancellation(request.user, subscription_id)
        return Response(SubscriptionRecordSerializer(record).data)


class SubscriptionResumeView(APIView):
    """
    Withdraw a scheduled cancellation.

    POST /api/v1/billing/subscriptions/{id}/resume/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="resume_subscription",
        summary="Resume subscription",
        tags=["Billing - Subscriptions"],
        request=None,
        responses={
            200: SubscriptionRecordSerializer,
            403: OpenApiResponse(description="Subscription belongs to another user"),
            404: OpenApiResponse(description="Subscription not found"),
            409: OpenApiResponse(description="Subscription already ended"),
            503: OpenApiResponse(description="Payment processor unavailable"),
        },
    )
    def post(self, request, subscription_id):
        record = SubscriptionManager.resume(request.user, subscription_id)
        return Response(SubscriptionRecordSerializer(record).data)


class BillingPortalView(APIView):
    """
    POST /api/v1/billing/subscriptions/portal/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="open_billing_portal",
        summary="Open Stripe billing portal",
        tags=["Billing - Subscriptions"],
        request=None,
        responses={
            200: PortalSessionSerializer,
            404: OpenApiResponse(description="No billing account"),
            503: OpenApiResponse(description="Payment processor unavailable"),
        },
    )
    def post(self, request):
        session = SubscriptionManager.portal_session(request.user)
        return Response(PortalSessionSerializer({"url": session.url}).data)
