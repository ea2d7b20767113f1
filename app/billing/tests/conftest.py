"""
Pytest fixtures for billing API tests.
"""

from unittest.mock import MagicMock, patch

import pytest
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken


# =============================================================================
# API Client Fixtures
# =============================================================================


@pytest.fixture
def api_client():
    """Unauthenticated API client."""
    return APIClient()


@pytest.fixture
def authenticated_client_factory(db):
    """
    Factory to create JWT-authenticated clients for any user.

    Usage:
        def test_example(authenticated_client_factory, seller):
            client = authenticated_client_factory(seller)
    """

    def _make_client(user):
        client = APIClient()
        refresh = RefreshToken.for_user(user)
        client.credentials(HTTP_AUTHORIZATION=f"Bearer {refresh.access_token}")
        return client

    return _make_client


@pytest.fixture
def authenticated_client(authenticated_client_factory, payer):
    """API client authenticated as the payer."""
    return authenticated_client_factory(payer)


# =============================================================================
# Stripe
# =============================================================================


@pytest.fixture
def mock_stripe_adapter():
    """Patch StripeAdapter where the checkout, verify and subscription paths use it."""
    adapter = MagicMock()
    with (
        patch("billing.services.checkout_service.StripeAdapter", new=adapter),
        patch("billing.services.confirmation_service.StripeAdapter", new=adapter),
        patch("billing.services.subscription_service.StripeAdapter", new=adapter),
    ):
        yield adapter
