"""
Billing services.

Services:
    CheckoutService: Starts checkouts and creates Stripe sessions
    ConfirmationReconciler: Settles pending payments (verify, webhook, sweep)
    EntitlementGrantor: Grants and revokes access
    CommissionCalculator: Affiliate attribution and commission ledger
    RefundProcessor: Reverses payments on refunds and chargebacks
    RevenueService: Revenue aggregates
    SubscriptionSynchronizer: Mirrors Stripe subscription state
    SubscriptionManager: Subscriber cancel/resume, details and billing portal

Usage:
    from billing.services import CheckoutService, ConfirmationReconciler
"""

from billing.services.checkout_service import CheckoutService
from billing.services.commission_service import CommissionCalculator
from billing.services.confirmation_service import (
    SETTLE_COMPLETE,
    SETTLE_FAIL,
    ConfirmationReconciler,
)
from billing.services.entitlement_service import EntitlementGrantor
from billing.services.refund_service import RefundProcessor
from billing.services.revenue_service import RevenueService
from billing.services.subscription_service import (
    SubscriptionManager,
    SubscriptionSynchronizer,
)
from billing.services.types import (
    AttributionSnapshot,
    CatalogItem,
    CheckoutResult,
    RefundResult,
    RefundSignal,
    SettlementOutcome,
    SettlementResult,
    SubscriptionSyncResult,
    VerifyResult,
)

__all__ = [
    "AttributionSnapshot",
    "CatalogItem",
    "CheckoutResult",
    "CheckoutService",
    "CommissionCalculator",
    "ConfirmationReconciler",
    "EntitlementGrantor",
    "RefundProcessor",
    "RefundResult",
    "RefundSignal",
    "RevenueService",
    "SETTLE_COMPLETE",
    "SETTLE_FAIL",
    "SettlementOutcome",
    "SettlementResult",
    "SubscriptionManager",
    "SubscriptionSyncResult",
    "SubscriptionSynchronizer",
    "VerifyResult",
]
