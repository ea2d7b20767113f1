"""
Billing app: payment confirmation and entitlement reconciliation.

This app handles:
- Checkout session creation against Stripe
- Idempotent settlement of payments from both the verify poll and webhooks
- Entitlement grants and revocations for courses, communities and plans
- Affiliate commission attribution, crediting and clawback
- Revenue aggregates per seller, community and platform
- Subscription state mirroring from Stripe

Usage:
    from billing.services import CheckoutService, ConfirmationReconciler

    result = CheckoutService.start_checkout(user, ItemKind.COURSE, course.id)
    settlement = ConfirmationReconciler.verify_session(user, result.session_id)
"""
