"""Tests for subscription status, Stripe sync and the Stripe webhook endpoint."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient

from metering.api.deps import get_billing, get_subscription_store
from metering.api.routes import subscription
from metering.billing.store import SubscriptionStore
from metering.billing.stripe_sync import NoBillingAccountError
from metering.core.auth import require_auth

pytestmark = pytest.mark.integration

SIGNED_HEADERS = {"stripe-signature": "t=0,v1=sig", "Content-Type": "application/json"}


def _make_stripe_event(event_id: str, event_type: str, data: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": data}}


@pytest.fixture
def billing():
    fake = MagicMock()
    fake.claim_event = AsyncMock(return_value=True)
    fake.handle_event = AsyncMock()
    fake.sync_user = AsyncMock(return_value={"status": "active", "plan": "pro"})
    return fake


@pytest.fixture
def client(make_app, billing, alice):
    app = make_app(subscription.router, overrides={require_auth: alice, get_billing: billing})
    return TestClient(app)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def test_status_for_user_without_subscription_is_free(make_app, make_session_factory, alice):
    store = SubscriptionStore(make_session_factory(rows=[]))
    app = make_app(
        subscription.router, overrides={require_auth: alice, get_subscription_store: store}
    )

    response = TestClient(app).get("/api/subscription/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "free"
    assert body["effective_plan"] == "free"
    assert body["plan_name"] == "Free"
    assert body["has_active_subscription"] is False


def test_status_for_canceled_pro_reports_free_effective_plan(make_app, make_session_factory, alice):
    row = MagicMock(
        status="canceled",
        plan="pro",
        stripe_subscription_id="sub_123",
        current_period_start=None,
        current_period_end=None,
        cancel_at_period_end=True,
        trial_end=None,
    )
    store = SubscriptionStore(make_session_factory(rows=[("cus_123", row)]))
    app = make_app(
        subscription.router, overrides={require_auth: alice, get_subscription_store: store}
    )

    body = TestClient(app).get("/api/subscription/status").json()

    assert body["plan"] == "pro"
    assert body["effective_plan"] == "free"
    assert body["stripe_customer_id"] == "cus_123"
    assert body["cancel_at_period_end"] is True


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


def test_sync_returns_reconciled_plan(client, billing):
    response = client.post("/api/subscription/sync")

    assert response.status_code == 200
    assert response.json() == {"status": "active", "plan": "pro"}
    billing.sync_user.assert_awaited_once_with("user_alice")


def test_sync_without_customer_returns_400(client, billing):
    billing.sync_user.side_effect = NoBillingAccountError("No Stripe customer ID found")

    response = client.post("/api/subscription/sync")

    assert response.status_code == 400


def test_sync_stripe_failure_returns_502(client, billing):
    billing.sync_user.side_effect = stripe.APIConnectionError("network down")

    response = client.post("/api/subscription/sync")

    assert response.status_code == 502


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestStripeWebhook:
    def test_returns_503_when_secret_missing(self, client):
        mock_settings = MagicMock()
        mock_settings.stripe_webhook_secret = ""

        with patch("metering.api.routes.subscription.get_settings", return_value=mock_settings):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNED_HEADERS)

        assert response.status_code == 503
        assert "not configured" in response.json()["detail"].lower()

    def test_rejects_missing_signature(self, client):
        response = client.post(
            "/api/webhooks/stripe",
            content=b"{}",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert "stripe-signature" in response.json()["detail"].lower()

    def test_rejects_invalid_signature(self, client, billing):
        with patch(
            "stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("Invalid signature", "t=0,v1=bad"),
        ):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNED_HEADERS)

        assert response.status_code == 400
        billing.claim_event.assert_not_awaited()

    def test_new_event_is_handled(self, client, billing):
        event = _make_stripe_event(
            "evt_001", "customer.subscription.updated", {"id": "sub_1", "customer": "cus_1"}
        )
        with patch("stripe.Webhook.construct_event", return_value=event):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNED_HEADERS)

        assert response.status_code == 200
        billing.claim_event.assert_awaited_once_with("evt_001", "customer.subscription.updated")
        billing.handle_event.assert_awaited_once_with(
            "customer.subscription.updated", {"id": "sub_1", "customer": "cus_1"}
        )

    def test_duplicate_event_is_acknowledged_but_not_handled(self, client, billing):
        billing.claim_event.return_value = False
        event = _make_stripe_event("evt_dup", "invoice.payment_failed", {"customer": "cus_1"})

        with patch("stripe.Webhook.construct_event", return_value=event):
            response = client.post("/api/webhooks/stripe", content=b"{}", headers=SIGNED_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        billing.handle_event.assert_not_awaited()
