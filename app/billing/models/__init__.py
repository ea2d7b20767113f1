"""
Billing domain models.

This module contains all billing-related models:
- Course, Community, SubscriptionPlan: Catalog items read at checkout
- BillingAccount: Stripe customer link and platform tier per user
- PaymentRecord: One row per purchase attempt; status is the settlement guard
- Entitlement: Access grant per (user, item)
- Affiliate, ReferralAttribution, AffiliateLedgerEntry: Referral commissions
- SubscriptionRecord: Mirror of Stripe subscriptions
- RevenueAggregate, RevenuePeriodBucket: Revenue rollups
- WebhookEvent: Stripe webhook event tracking for idempotent processing
"""

from billing.models.affiliate import Affiliate, AffiliateLedgerEntry, ReferralAttribution
from billing.models.billing_account import BillingAccount
from billing.models.catalog import Community, Course, SubscriptionPlan
from billing.models.entitlement import Entitlement
from billing.models.payment_record import PaymentRecord
from billing.models.revenue import RevenueAggregate, RevenuePeriodBucket
from billing.models.subscription import SubscriptionRecord
from billing.models.webhook_event import WebhookEvent

__all__ = [
    "Affiliate",
    "AffiliateLedgerEntry",
    "BillingAccount",
    "Community",
    "Course",
    "Entitlement",
    "PaymentRecord",
    "ReferralAttribution",
    "RevenueAggregate",
    "RevenuePeriodBucket",
    "SubscriptionPlan",
    "SubscriptionRecord",
    "WebhookEvent",
]
