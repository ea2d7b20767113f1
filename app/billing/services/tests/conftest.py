"""
Pytest fixtures for billing service tests.

Stripe is never called; service tests patch StripeAdapter through
mock_stripe_adapter. Payers, catalog items and payment records come from
billing/conftest.py.
"""

from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture
def mock_stripe_adapter():
    """Patch every StripeAdapter call the services make."""
    adapter = MagicMock()
    with (
        patch("billing.services.checkout_service.StripeAdapter", new=adapter),
        patch("billing.services.confirmation_service.StripeAdapter", new=adapter),
        patch("billing.services.subscription_service.StripeAdapter", new=adapter),
    ):
        yield adapter
