"""
State machine enums for billing models.
"""

from billing.state_machines.states import (
    CommissionStatus,
    ItemKind,
    LedgerEntryKind,
    PaymentStatus,
    RevenueOwnerType,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookEventStatus,
)

__all__ = [
    "CommissionStatus",
    "ItemKind",
    "LedgerEntryKind",
    "PaymentStatus",
    "RevenueOwnerType",
    "SubscriptionStatus",
    "SubscriptionTier",
    "WebhookEventStatus",
]
