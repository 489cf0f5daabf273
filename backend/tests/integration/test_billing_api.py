"""Integration tests for billing and subscription API endpoints."""

from unittest.mock import AsyncMock

import pytest
import stripe
from fastapi.testclient import TestClient

from studio.auth import AuthenticatedUser, get_current_user
from studio.models.billing import SubscriptionRecord, SubscriptionSnapshot
from studio.services.billing_events import BillingEventProcessor
from studio.services.stripe_service import StripeService


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="user@example.com")


class FakeStripeService(StripeService):
    """StripeService with canned API responses; payload parsing is inherited."""

    def __init__(self):
        self.checkout_calls: list[dict] = []
        self.event: dict = {
            "id": "evt_1",
            "type": "customer.subscription.created",
            "data": {
                "object": {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "active",
                    "items": {"data": [{"price": {"id": "price_pro"}}]},
                    "current_period_start": 1700000000,
                    "current_period_end": 1702592000,
                    "metadata": {"supabase_user_id": "user-1"},
                }
            },
        }
        self.session: dict = {
            "id": "cs_1",
            "metadata": {"supabase_user_id": "user-1"},
            "subscription": {"id": "sub_1", "metadata": {}},
        }
        self.upgrade_subscription = AsyncMock(
            return_value=SubscriptionSnapshot(
                subscription_id="sub_1", customer_id="cus_1", status="active", price_id="price_pro"
            )
        )

    async def create_customer(self, *, user_id, email):
        return "cus_new"

    async def create_checkout_session(self, **kwargs):
        self.checkout_calls.append(kwargs)
        return {"id": "cs_test", "url": "https://checkout.test/session"}

    async def retrieve_checkout_session(self, _session_id):
        return self.session

    async def fetch_subscription_snapshot(self, _subscription_id):
        return SubscriptionSnapshot(
            subscription_id="sub_1",
            customer_id="cus_1",
            status="active",
            price_id="price_basic",
            current_period_start=1700000000,
            current_period_end=1702592000,
        )

    async def create_portal_session(self, **_kwargs):
        return {"id": "bps_test", "url": "https://billing.test/portal"}

    async def list_payments(self, _customer_id):
        return [
            {
                "id": "pi_1",
                "amount": 900,
                "currency": "eur",
                "status": "succeeded",
                "created": 1700000000,
                "receipt_url": "https://pay.test/r/1",
            }
        ]

    async def fetch_customer_user_id(self, _customer_id):
        return None

    def verify_webhook_event(self, _payload, signature):
        if signature == "bad":
            raise stripe.SignatureVerificationError("bad signature", signature)
        if signature is None:
            raise ValueError("Missing Stripe-Signature header")
        return self.event


@pytest.fixture
def billing_client(client, quota_service, identity_store):
    stripe_service = FakeStripeService()
    client.app.state.quota_service = quota_service
    client.app.state.identity_store = identity_store
    client.app.state.stripe_service = stripe_service
    client.app.state.billing_events = BillingEventProcessor(
        quota_service, stripe_service, identity_store
    )
    client.app.dependency_overrides[get_current_user] = _fake_user
    return client


class TestBillingStatusEndpoint:
    def test_returns_free_status(self, billing_client):
        response = billing_client.get("/api/v1/billing/status")

        assert response.status_code == 200
        data = response.json()
        assert data["plan_code"] == "free"
        assert data["quota_limit"] == 5
        assert data["quota_remaining"] == 5

    def test_returns_503_without_service(self, client):
        client.app.dependency_overrides[get_current_user] = _fake_user

        response = client.get("/api/v1/billing/status")

        assert response.status_code == 503

    def test_requires_authentication(self, client):
        response = client.get("/api/v1/billing/status")
        assert response.status_code in (401, 403)


class TestCheckoutEndpoint:
    def test_creates_customer_and_session(self, billing_client, subscription_repository):
        response = billing_client.post("/api/v1/billing/checkout", json={"plan_code": "basic"})

        assert response.status_code == 200
        assert response.json() == {
            "checkout_url": "https://checkout.test/session",
            "session_id": "cs_test",
        }
        assert subscription_repository.records["user-1"].stripe_customer_id == "cus_new"
        call = billing_client.app.state.stripe_service.checkout_calls[0]
        assert call["price_id"] == "price_basic"
        assert call["coupon_id"] is None

    def test_applies_pending_referral_coupon(self, billing_client, identity_store):
        identity_store.add_user(
            "user-1", referral_coupon_id="coupon_ref", referral_coupon_redeemed=False
        )

        billing_client.post("/api/v1/billing/checkout", json={"plan_code": "pro"})

        call = billing_client.app.state.stripe_service.checkout_calls[0]
        assert call["coupon_id"] == "coupon_ref"
        assert call["price_id"] == "price_pro"

    def test_redeemed_coupon_not_reapplied(self, billing_client, identity_store):
        identity_store.add_user(
            "user-1", referral_coupon_id="coupon_ref", referral_coupon_redeemed=True
        )

        billing_client.post("/api/v1/billing/checkout", json={"plan_code": "pro"})

        assert billing_client.app.state.stripe_service.checkout_calls[0]["coupon_id"] is None

    def test_rejects_free_plan(self, billing_client):
        response = billing_client.post("/api/v1/billing/checkout", json={"plan_code": "free"})
        assert response.status_code == 400

    def test_rejects_unknown_plan(self, billing_client):
        response = billing_client.post("/api/v1/billing/checkout", json={"plan_code": "gold"})
        assert response.status_code == 422


class TestCheckoutConfirmEndpoint:
    def test_syncs_subscription(self, billing_client, subscription_repository):
        response = billing_client.post(
            "/api/v1/billing/checkout/confirm", json={"session_id": "cs_1"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "active", "price_id": "price_basic", "quota_limit": 50}
        assert subscription_repository.records["user-1"].stripe_subscription_id == "sub_1"

    def test_rejects_foreign_session(self, billing_client):
        billing_client.app.state.stripe_service.session["metadata"] = {
            "supabase_user_id": "someone-else"
        }

        response = billing_client.post(
            "/api/v1/billing/checkout/confirm", json={"session_id": "cs_1"}
        )

        assert response.status_code == 403


class TestPortalAndHistory:
    def test_portal_requires_customer(self, billing_client):
        response = billing_client.post("/api/v1/billing/portal", json={})
        assert response.status_code == 400

    def test_portal_url(self, billing_client, subscription_repository):
        subscription_repository.records["user-1"] = SubscriptionRecord(
            user_id="user-1", stripe_customer_id="cus_1", quota_limit=5
        )

        response = billing_client.post("/api/v1/billing/portal", json={})

        assert response.status_code == 200
        assert response.json()["portal_url"] == "https://billing.test/portal"

    def test_history_empty_without_customer(self, billing_client):
        response = billing_client.get("/api/v1/billing/history")

        assert response.status_code == 200
        assert response.json() == {"payments": []}

    def test_history_lists_payments(self, billing_client, subscription_repository):
        subscription_repository.records["user-1"] = SubscriptionRecord(
            user_id="user-1", stripe_customer_id="cus_1", quota_limit=5
        )

        response = billing_client.get("/api/v1/billing/history")

        payments = response.json()["payments"]
        assert payments[0]["id"] == "pi_1"
        assert payments[0]["receipt_url"] == "https://pay.test/r/1"


class TestWebhookEndpoint:
    def test_processes_event_once(self, billing_client, subscription_repository):
        first = billing_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )
        second = billing_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert first.json() == {"received": True, "processed": True}
        assert second.json() == {"received": True, "processed": False}
        record = subscription_repository.records["user-1"]
        assert record.quota_limit == 200
        assert record.status == "active"

    def test_bad_signature_returns_400(self, billing_client):
        response = billing_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "bad"}
        )
        assert response.status_code == 400

    def test_missing_signature_returns_400(self, billing_client):
        response = billing_client.post("/api/v1/billing/webhook", content=b"{}")
        assert response.status_code == 400

    def test_unhandled_event_type_acknowledged(self, billing_client):
        billing_client.app.state.stripe_service.event = {
            "id": "evt_2",
            "type": "customer.created",
            "data": {"object": {}},
        }

        response = billing_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert response.json() == {"received": True, "processed": False}

    def test_unresolvable_event_dropped(self, billing_client, subscription_repository):
        event = billing_client.app.state.stripe_service.event
        event["id"] = "evt_3"
        event["data"]["object"]["metadata"] = {}

        response = billing_client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert response.status_code == 200
        assert response.json()["processed"] is False
        assert subscription_repository.records == {}

    def test_failed_apply_is_retried_on_redelivery(
        self, billing_client, subscription_repository, monkeypatch
    ):
        original_insert = subscription_repository.insert
        calls = {"count": 0}

        async def flaky_insert(record):
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("database unavailable")
            return await original_insert(record)

        monkeypatch.setattr(subscription_repository, "insert", flaky_insert)
        client = TestClient(billing_client.app, raise_server_exceptions=False)

        first = client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )
        second = client.post(
            "/api/v1/billing/webhook", content=b"{}", headers={"Stripe-Signature": "ok"}
        )

        assert first.status_code == 500
        assert second.status_code == 200
        assert second.json() == {"received": True, "processed": True}
        record = subscription_repository.records["user-1"]
        assert record.stripe_subscription_id == "sub_1"
        assert record.quota_limit == 200
        assert subscription_repository.processed_events == {"evt_1"}


class TestSubscriptionsEndpoints:
    def test_ensure_creates_free_row(self, billing_client, subscription_repository):
        response = billing_client.post("/api/v1/subscriptions/ensure")

        assert response.status_code == 200
        assert response.json() == {"ensured": True}
        assert subscription_repository.records["user-1"].status == "free"

    def test_ensure_keeps_paid_row(self, billing_client, subscription_repository):
        subscription_repository.records["user-1"] = SubscriptionRecord(
            user_id="user-1",
            status="active",
            stripe_price_id="price_pro",
            quota_limit=200,
            quota_used=12,
        )

        billing_client.post("/api/v1/subscriptions/ensure")

        record = subscription_repository.records["user-1"]
        assert record.status == "active"
        assert record.quota_used == 12

    def test_upgrade_without_subscription(self, billing_client):
        response = billing_client.post("/api/v1/subscriptions/upgrade")
        assert response.status_code == 400

    def test_upgrade_already_pro(self, billing_client, subscription_repository):
        subscription_repository.records["user-1"] = SubscriptionRecord(
            user_id="user-1",
            stripe_subscription_id="sub_1",
            stripe_price_id="price_pro",
            status="active",
            quota_limit=200,
        )

        response = billing_client.post("/api/v1/subscriptions/upgrade")

        assert response.status_code == 200
        assert "already" in response.json()["message"]
        billing_client.app.state.stripe_service.upgrade_subscription.assert_not_awaited()

    def test_upgrade_basic_to_pro(self, billing_client, subscription_repository):
        subscription_repository.records["user-1"] = SubscriptionRecord(
            user_id="user-1",
            stripe_subscription_id="sub_1",
            stripe_price_id="price_basic",
            status="active",
            quota_limit=50,
        )

        response = billing_client.post("/api/v1/subscriptions/upgrade")

        assert response.status_code == 200
        assert response.json()["quota_limit"] == 200
        record = subscription_repository.records["user-1"]
        assert record.stripe_price_id == "price_pro"
        billing_client.app.state.stripe_service.upgrade_subscription.assert_awaited_once_with(
            "sub_1", "price_pro"
        )

    def test_stripe_error_is_400(self, billing_client, subscription_repository):
        subscription_repository.records["user-1"] = SubscriptionRecord(
            user_id="user-1", stripe_subscription_id="sub_1", stripe_price_id="price_basic"
        )
        billing_client.app.state.stripe_service.upgrade_subscription.side_effect = (
            stripe.InvalidRequestError("No such subscription", "id")
        )

        response = billing_client.post("/api/v1/subscriptions/upgrade")

        assert response.status_code == 400
