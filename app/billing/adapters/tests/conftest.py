"""
Pytest fixtures for Stripe adapter tests.

Sections:
    - Mock Stripe Object Fixtures
    - Mock Stripe Client Fixtures
    - Error Fixtures
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe

from billing.tests.factories import checkout_session_payload, subscription_payload


# =============================================================================
# Mock Stripe Object Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@pytest.fixture
def mock_session():
    """Create a mock Checkout Session response."""

    def _create(session_id: str = "cs_test_adapter", **kwargs) -> MockStripeObject:
        return MockStripeObject(checkout_session_payload(session_id, **kwargs))

    return _create


# =============================================================================
# Mock Stripe Client Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def mock_stripe_http_client():
    """Keep the adapter from installing a real HTTP client."""
    with (
        patch("stripe.RequestsClient") as mock,
        patch("stripe.default_http_client", None),
    ):
        yield mock


@pytest.fixture
def mock_stripe_session(mock_session):
    """Mock stripe.checkout.Session API."""
    with patch("stripe.checkout.Session") as mock:
        mock.create.return_value = mock_session(
            status="open",
            payment_status="unpaid",
            payment_intent=None,
            url="https://checkout.stripe.com/c/pay/cs_test_adapter",
        )
        mock.retrieve.return_value = mock_session()
        yield mock


@pytest.fixture
def mock_stripe_customer():
    """Mock stripe.Customer API."""
    with patch("stripe.Customer") as mock:
        mock.create.return_value = MockStripeObject(
            {"id": "cus_test_adapter", "object": "customer", "email": "payer@example.com"}
        )
        yield mock


@pytest.fixture
def mock_stripe_subscription():
    """Mock stripe.Subscription API."""
    with patch("stripe.Subscription") as mock:
        mock.retrieve.return_value = MockStripeObject(
            subscription_payload("sub_test_adapter", "past_due", price_id="price_test_1")
        )
        mock.modify.return_value = MockStripeObject(
            subscription_payload(
                "sub_test_adapter",
                "active",
                price_id="price_test_1",
                cancel_at_period_end=True,
            )
        )
        yield mock


@pytest.fixture
def mock_stripe_billing_portal():
    """Mock stripe.billing_portal.Session API."""
    with patch("stripe.billing_portal.Session") as mock:
        mock.create.return_value = MockStripeObject(
            {
                "id": "bps_test_adapter",
                "object": "billing_portal.session",
                "customer": "cus_test_adapter",
                "url": "https://billing.stripe.com/p/session/bps_test_adapter",
            }
        )
        yield mock


# =============================================================================
# Error Fixtures
# =============================================================================


@pytest.fixture
def invalid_request_error():
    """Create a Stripe InvalidRequestError."""
    return stripe.InvalidRequestError(
        message="No such price: 'price_missing'",
        param="line_items[0][price]",
        code="resource_missing",
    )


@pytest.fixture
def rate_limit_error():
    return stripe.RateLimitError(message="Too many requests hit the API too quickly.")


@pytest.fixture
def api_connection_error():
    return stripe.APIConnectionError(message="Could not connect to Stripe.")


@pytest.fixture
def api_error():
    return stripe.APIError(message="Something went wrong on Stripe's end.")


@pytest.fixture
def authentication_error():
    return stripe.AuthenticationError(message="Invalid API Key provided.")
