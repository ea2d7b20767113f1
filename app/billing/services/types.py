"""
Result and parameter types shared by billing services.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from billing.models import (
        Affiliate,
        Community,
        PaymentRecord,
        ReferralAttribution,
        SubscriptionRecord,
    )


class SettlementOutcome(str, Enum):
    """What happened when a settlement or reversal signal was applied."""

    APPLIED = "applied"
    ALREADY_SETTLED = "already_settled"
    UNKNOWN_TRANSACTION = "unknown_transaction"
    STILL_PENDING = "still_pending"
    IGNORED = "ignored"


@dataclass
class CatalogItem:
    """
    A purchasable item resolved from the catalog at checkout time.

    Attributes:
        kind/id: Item reference stored on the PaymentRecord
        title: Line item name shown on the Stripe page
        amount_cents/currency: Price charged
        stripe_price_id: Pre-created Stripe Price, if any
        recurring_interval: Billing interval for subscriptions (None = one-time)
        revenue_owner_type/revenue_owner_id: Aggregate credited on completion
        community: Community for affiliate rate and window lookups
    """

    kind: str
    id: str
    title: str
    amount_cents: int
    currency: str
    tier: str
    stripe_price_id: str | None = None
    recurring_interval: str | None = None
    revenue_owner_type: str = ""
    revenue_owner_id: str = ""
    owner_user_id: Any = None
    community: Community | None = None

    @property
    def is_subscription(self) -> bool:
        return self.recurring_interval is not None

    @property
    def checkout_mode(self) -> str:
        return "subscription" if self.is_subscription else "payment"


@dataclass
class CheckoutResult:
    """Returned by CheckoutService.start_checkout."""

    payment: PaymentRecord
    redirect_url: str
    session_id: str

    @property
    def attempt_id(self) -> uuid.UUID:
        return self.payment.id


@dataclass
class AttributionSnapshot:
    """Affiliate attribution pinned onto a PaymentRecord at checkout."""

    affiliate: Affiliate
    attribution: ReferralAttribution
    rate_bps: int
    attributed_at: datetime
    expires_at: datetime


@dataclass
class SettlementResult:
    """
    Outcome of applying a confirmation signal to a PaymentRecord.

    Only a result with ``applied=True`` means this caller performed the
    transition and ran the fan-out.
    """

    outcome: SettlementOutcome
    payment: PaymentRecord | None = None
    detail: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == SettlementOutcome.APPLIED

    @property
    def status(self) -> str | None:
        return self.payment.status if self.payment is not None else None


@dataclass
class VerifyResult:
    """Returned by the verify path: settlement plus the payer's access."""

    settlement: SettlementResult
    payment: PaymentRecord
    entitlement: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundSignal:
    """
    A refund or chargeback reported by Stripe.

    Attributes:
        payment_intent_id: PaymentIntent the charge belongs to
        invoice_id: Invoice the charge belongs to (subscription payments)
        refunded_total_cents: Cumulative refunded amount; None means the
            whole payment (lost dispute)
        source_reference: Stable id of this refund state, keys clawback rows
        reason: Revocation reason recorded on the entitlement
    """

    source_reference: str
    payment_intent_id: str | None = None
    invoice_id: str | None = None
    refunded_total_cents: int | None = None
    reason: str = "refund"


@dataclass
class RefundResult:
    """Outcome of applying a RefundSignal."""

    outcome: SettlementOutcome
    payment: PaymentRecord | None = None
    reversed_cents: int = 0
    full_refund: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == SettlementOutcome.APPLIED


@dataclass
class SubscriptionSyncResult:
    """Outcome of mirroring one Stripe subscription state."""

    outcome: SettlementOutcome
    record: SubscriptionRecord | None = None
    detail: str | None = None
