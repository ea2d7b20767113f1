"""
URL configuration for the billing app.

All routes are prefixed with /api/v1/billing/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("billing/", include("billing.urls")),
    ]
"""

from django.urls import path

from billing.views import (
    AccessCheckView,
    BillingPortalView,
    CheckoutView,
    EntitlementListView,
    PaymentHistoryView,
    ReferralClickView,
    SubscriptionCancelView,
    SubscriptionDetailView,
    SubscriptionListView,
    SubscriptionResumeView,
    VerifyCheckoutView,
)
from billing.webhooks.views import stripe_webhook

app_name = "billing"

urlpatterns = [
    # Checkout
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("checkout/verify/", VerifyCheckoutView.as_view(), name="checkout_verify"),
    # History and access
    path("payments/", PaymentHistoryView.as_view(), name="payment_history"),
    path("entitlements/", EntitlementListView.as_view(), name="entitlements"),
    path(
        "access/<str:item_kind>/<str:item_id>/",
        AccessCheckView.as_view(),
        name="access_check",
    ),
    # Affiliates
    path("referrals/<str:code>/click/", ReferralClickView.as_view(), name="referral_click"),
    # Subscriptions
    path("subscriptions/", SubscriptionListView.as_view(), name="subscription_list"),
    path("subscriptions/portal/", BillingPortalView.as_view(), name="billing_portal"),
    path(
        "subscriptions/<uuid:subscription_id>/",
        SubscriptionDetailView.as_view(),
        name="subscription_detail",
    ),
    path(
        "subscriptions/<uuid:subscription_id>/cancel/",
        SubscriptionCancelView.as_view(),
        name="subscription_cancel",
    ),
    path(
        "subscriptions/<uuid:subscription_id>/resume/",
        SubscriptionResumeView.as_view(),
        name="subscription_resume",
    ),
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
]
