"""
Pytest fixtures for webhook tests.

Provides WebhookEvent records in each processing state and builders for
the Stripe events the handlers consume.
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from billing.models import WebhookEvent
from billing.state_machines import WebhookEventStatus
from billing.tests.factories import (
    WebhookEventFactory,
    checkout_session_payload,
    stripe_event,
)


# =============================================================================
# Event Builders
# =============================================================================


@pytest.fixture
def make_webhook_event(db):
    """Store a Stripe event the way the webhook view does."""

    def _create(event_type: str, data_object: dict, **kwargs):
        payload = stripe_event(event_type, data_object, created=kwargs.pop("created", None))
        return WebhookEventFactory(
            stripe_event_id=payload["id"],
            event_type=event_type,
            payload=payload,
            **kwargs,
        )

    return _create


@pytest.fixture
def checkout_completed_event(make_webhook_event, pending_payment):
    """checkout.session.completed for pending_payment's session."""
    return make_webhook_event(
        "checkout.session.completed",
        checkout_session_payload(
            pending_payment.external_transaction_id,
            payment_intent="pi_test_webhook",
        ),
    )


# =============================================================================
# WebhookEvent State Fixtures
# =============================================================================


@pytest.fixture
def pending_webhook_event(db):
    return WebhookEventFactory()


@pytest.fixture
def processed_webhook_event(db):
    return WebhookEventFactory(
        status=WebhookEventStatus.PROCESSED,
        processed_at=timezone.now(),
        retry_count=1,
    )


@pytest.fixture
def failed_webhook_event(db):
    return WebhookEventFactory(
        status=WebhookEventStatus.FAILED,
        error_message="Handler error",
        retry_count=1,
    )


@pytest.fixture
def stuck_webhook_event(db):
    """PROCESSING since well past the stuck threshold."""
    event = WebhookEventFactory(status=WebhookEventStatus.PROCESSING, retry_count=1)
    WebhookEvent.objects.filter(pk=event.pk).update(
        updated_at=timezone.now() - timedelta(hours=1)
    )
    event.refresh_from_db()
    return event
