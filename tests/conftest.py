"""Root conftest: test infrastructure for all backend tests.

Provides:
- Autouse mock for the Stripe API resources (no network calls, ever)
- Autouse plan price configuration (price_starter, price_hobby, ...)
- Mocked DB session and service graph
- API clients with dependency overrides (authenticated, admin, anonymous)
"""

from __future__ import annotations

from unittest.mock import DEFAULT, patch

import pytest
from httpx import ASGITransport, AsyncClient

from creditsync.config.settings import settings

from tests.helpers.mock_factories import make_mock_db, make_mock_profile, make_mock_services

# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_external_services():
    """SAFETY: Always mock the Stripe resources used by StripeService.

    The stripe module itself stays real so its exception classes can still
    be raised and caught.
    """
    with patch.multiple(
        "creditsync.services.stripe_service.stripe",
        Subscription=DEFAULT,
        SubscriptionSchedule=DEFAULT,
        Charge=DEFAULT,
        Event=DEFAULT,
    ) as mocks:
        yield mocks


@pytest.fixture(autouse=True)
def configured_plan_prices():
    """Give every plan a Stripe price ID of the form price_<key>."""
    with (
        patch.object(settings, "stripe_price_starter", "price_starter"),
        patch.object(settings, "stripe_price_hobby", "price_hobby"),
        patch.object(settings, "stripe_price_pro", "price_pro"),
        patch.object(settings, "stripe_price_business", "price_business"),
    ):
        yield


# ─────────────────────────────────────────────────────────────────────────────
# Mocked DB + services
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def mock_db():
    return make_mock_db()


@pytest.fixture
def mock_services():
    return make_mock_services()


@pytest.fixture
def current_profile():
    """Profile returned by the auth dependency (override per test module for admins)."""
    return make_mock_profile()


# ─────────────────────────────────────────────────────────────────────────────
# API Clients
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def unauth_client(mock_db, mock_services):
    """HTTP client with the DB and service graph mocked but no auth override."""
    from creditsync.core.database import get_db
    from creditsync.main import app

    async def override_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_db
    app.state.services = mock_services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def api_client(unauth_client, current_profile):
    """HTTP client authenticated as current_profile (JWT validation bypassed)."""
    from creditsync.api.deps.auth import get_current_profile
    from creditsync.main import app

    app.dependency_overrides[get_current_profile] = lambda: current_profile
    yield unauth_client
