"""
Tests for API endpoints
"""

import pytest
from unittest.mock import MagicMock

from app.models.plan import SubscriptionPlan
from app.models.subscription import SubscriptionStatus
from app.models.user import UserRole
from app.services.paypal_service import ProviderSubscription


@pytest.fixture
def current_uid():
    """Mutable holder for the uid the fake auth dependency returns"""
    return {"uid": "user-1"}


@pytest.fixture
def client(catalog, current_uid, subscription_service, purchase_service, fake_cache, analytics, provider):
    """Test client with database, auth and services swapped for test doubles"""
    from fastapi.testclient import TestClient
    from app.api.v1.dependencies import (get_entitlement_service,
                                         get_reconciler,
                                         get_subscription_service)
    from app.core.database import get_db
    from app.core.middleware import get_current_user
    from app.main import app
    from app.services.entitlement_service import EntitlementService
    from app.services.webhook_reconciler import WebhookReconciler

    reconciler = WebhookReconciler(
        subscriptions=subscription_service,
        purchases=purchase_service,
        cache=fake_cache,
        analytics=analytics,
        provider=provider,
        verify_signatures=True,
        max_unmatched_attempts=2,
    )

    def override_get_db():
        yield catalog

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: {
        "uid": current_uid["uid"],
        "email": f"{current_uid['uid']}@example.com",
        "token": {"uid": current_uid["uid"]},
    }
    app.dependency_overrides[get_subscription_service] = lambda: subscription_service
    app.dependency_overrides[get_entitlement_service] = lambda: EntitlementService(analytics=analytics)
    app.dependency_overrides[get_reconciler] = lambda: reconciler

    original_cache = app.state.cache
    app.state.cache = MagicMock()
    app.state.cache.ping.return_value = True

    yield TestClient(app)

    app.state.cache = original_cache
    app.dependency_overrides.clear()


def link_plans(db):
    for plan in db.query(SubscriptionPlan).all():
        plan.provider_plan_id = f"P-{plan.plan_type.upper()}"
    db.commit()


class TestHealthEndpoint:
    """Test health check endpoint"""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "redis": "connected"}


class TestAuthentication:

    def test_current_subscription_requires_token(self, client):
        from app.core.middleware import get_current_user
        from app.main import app

        del app.dependency_overrides[get_current_user]

        response = client.get("/api/v1/subscriptions/current")

        assert response.status_code in (401, 403)


class TestSubscriptionEndpoints:

    def test_plans_are_public(self, client):
        response = client.get("/api/v1/subscriptions/plans")

        assert response.status_code == 200
        plans = response.json()["plans"]
        assert [p["plan_type"] for p in plans] == ["starter", "monthly", "annual"]

    def test_current_is_null_for_new_user(self, client):
        response = client.get("/api/v1/subscriptions/current")

        assert response.status_code == 200
        assert response.json() == {"subscription": None}

    def test_checkout_then_return(self, client, catalog, provider):
        link_plans(catalog)
        provider.create_subscription.return_value = ProviderSubscription(
            subscription_id="I-API",
            approval_url="https://www.sandbox.paypal.com/approve?ba_token=BA-API",
        )

        response = client.post("/api/v1/subscriptions/checkout", json={"plan_type": "monthly"})

        assert response.status_code == 200
        assert response.json()["approval_url"].endswith("BA-API")
        assert provider.create_subscription.await_args.kwargs["return_url"] == \
            "http://localhost:3000/subscription/success"

        response = client.get("/api/v1/subscriptions/paypal/return", params={"subscription_id": "I-API"})

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_checkout_unknown_plan(self, client):
        response = client.post("/api/v1/subscriptions/checkout", json={"plan_type": "lifetime"})

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "NOT_FOUND"

    def test_cancel_without_subscription(self, client):
        response = client.post("/api/v1/subscriptions/cancel", json={})

        assert response.status_code == 404

    def test_cancel_and_reactivate_current(self, client, catalog, subscription_service, make_user):
        user = make_user("user-1")
        subscription_service.create_subscription(
            catalog, user.id, "monthly", provider_ref="I-CUR", confirmed=True
        )

        cancelled = client.post("/api/v1/subscriptions/cancel", json={})

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["provider_sync_status"] == "ok"

        reactivated = client.post("/api/v1/subscriptions/reactivate", json={})

        assert reactivated.status_code == 200
        assert reactivated.json()["status"] == "active"

    def test_cancel_records_provider_billing_period_end(
        self, client, catalog, subscription_service, make_user, provider
    ):
        user = make_user("user-1")
        subscription_service.create_subscription(
            catalog, user.id, "monthly", provider_ref="I-TERM", confirmed=True
        )
        provider.get_subscription.return_value = {"billing_info": {"next_billing_time": "2026-03-18T00:00:00Z"}}

        response = client.post("/api/v1/subscriptions/cancel", json={})

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["end_date"] == "2026-03-18T00:00:00"
        provider.get_subscription.assert_awaited_once_with("I-TERM")

    def test_cancelled_checkout_cannot_be_reactivated(self, client, catalog, subscription_service, make_user):
        user = make_user("user-1")
        pending = subscription_service.create_subscription(catalog, user.id, "monthly", provider_ref="I-UNPAID")

        cancelled = client.post("/api/v1/subscriptions/cancel", json={"subscription_id": pending.id})

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "expired"

        reactivated = client.post("/api/v1/subscriptions/reactivate", json={"subscription_id": pending.id})

        assert reactivated.status_code == 410
        access = client.get("/api/v1/courses/course-prem-1/access")
        assert access.json()["granted"] is False

    def test_cancel_other_users_subscription_is_forbidden(self, client, catalog, subscription_service, make_user):
        owner = make_user("owner")
        subscription = subscription_service.create_subscription(
            catalog, owner.id, "monthly", provider_ref="I-OWN", confirmed=True
        )

        response = client.post("/api/v1/subscriptions/cancel", json={"subscription_id": subscription.id})

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "FORBIDDEN"

    def test_history(self, client, catalog, subscription_service, make_user):
        user = make_user("user-1")
        subscription_service.create_subscription(catalog, user.id, "starter", provider_ref="I-H", confirmed=True)

        response = client.get("/api/v1/subscriptions/history")

        assert response.status_code == 200
        assert {h["action"] for h in response.json()["history"]} == {"created", "activated"}

    def test_allowed_transitions(self, client):
        response = client.get("/api/v1/subscriptions/transitions/pending")

        assert response.status_code == 200
        assert response.json() == {
            "status": "pending",
            "allowed": ["active", "cancelled", "expired", "pending"],
        }

    def test_unknown_status_transitions(self, client):
        response = client.get("/api/v1/subscriptions/transitions/refunded")

        assert response.status_code == 404


class TestCourseAccessEndpoint:

    def test_unknown_course(self, client):
        response = client.get("/api/v1/courses/missing/access")

        assert response.status_code == 404

    def test_denied_then_granted(self, client, catalog, subscription_service, make_user):
        response = client.get("/api/v1/courses/course-prem-1/access")

        assert response.status_code == 200
        assert response.json()["granted"] is False

        subscription_service.create_subscription(catalog, "user-1", "annual", provider_ref="I-ANN", confirmed=True)
        response = client.get("/api/v1/courses/course-prem-1/access")

        assert response.json()["granted"] is True
        assert response.json()["source"] == "enrollment"


class TestPayPalWebhookEndpoint:

    def test_payment_completed_activates(self, client, catalog, subscription_service, provider, make_user):
        user = make_user("buyer")
        subscription = subscription_service.create_subscription(catalog, user.id, "monthly", provider_ref="I-WH")
        provider.verify_webhook_signature.return_value = True
        event = {
            "id": "WH-API-1",
            "event_type": "PAYMENT.SALE.COMPLETED",
            "resource": {"id": "SALE-1", "billing_agreement_id": "I-WH"},
        }

        response = client.post("/api/v1/webhooks/paypal", json=event)

        catalog.refresh(subscription)
        assert response.status_code == 200
        assert response.json()["outcome"] == "processed"
        assert subscription.status == SubscriptionStatus.ACTIVE

        duplicate = client.post("/api/v1/webhooks/paypal", json=event)
        assert duplicate.status_code == 200
        assert duplicate.json()["outcome"] == "duplicate"

    def test_unmatched_reference_asks_for_redelivery(self, client, provider):
        provider.verify_webhook_signature.return_value = True
        event = {
            "id": "WH-API-2",
            "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
            "resource": {"id": "I-NOWHERE"},
        }

        first = client.post("/api/v1/webhooks/paypal", json=event)
        second = client.post("/api/v1/webhooks/paypal", json=event)

        assert first.status_code == 404
        assert second.status_code == 200
        assert second.json()["outcome"] == "dropped"

    def test_invalid_signature(self, client, provider):
        provider.verify_webhook_signature.return_value = False

        response = client.post("/api/v1/webhooks/paypal", json={"id": "WH-BAD", "event_type": "PAYMENT.SALE.COMPLETED"})

        assert response.status_code == 400

    def test_invalid_json(self, client):
        response = client.post(
            "/api/v1/webhooks/paypal",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestAdminEndpoints:

    def test_customer_is_forbidden(self, client):
        response = client.get("/api/v1/admin/subscriptions/stats")

        assert response.status_code == 403

    def test_grant_and_stats(self, client, current_uid, make_user):
        make_user("admin-1", role=UserRole.ADMIN.value)
        make_user("student")
        current_uid["uid"] = "admin-1"

        response = client.post(
            "/api/v1/admin/subscriptions/grant",
            json={"user_email": "student@example.com", "plan_type": "starter", "duration_days": 14},
        )

        assert response.status_code == 200
        assert response.json()["provider"] == "manual"
        assert response.json()["status"] == "active"

        stats = client.get("/api/v1/admin/subscriptions/stats").json()
        assert stats["total"] == 1
        assert stats["active_by_plan"] == {"starter": 1}

    def test_grant_unknown_email(self, client, current_uid, make_user):
        make_user("admin-1", role=UserRole.ADMIN.value)
        current_uid["uid"] = "admin-1"

        response = client.post(
            "/api/v1/admin/subscriptions/grant",
            json={"user_email": "nobody@example.com", "plan_type": "starter"},
        )

        assert response.status_code == 404

    def test_expire_sweep(self, client, catalog, current_uid, make_user, subscription_service, clock):
        make_user("admin-1", role=UserRole.ADMIN.value)
        student = make_user("student")
        subscription = subscription_service.grant_subscription(catalog, student.id, "monthly", duration_days=1)
        current_uid["uid"] = "admin-1"
        clock.advance(days=2)

        response = client.post("/api/v1/admin/subscriptions/expire")

        assert response.status_code == 200
        assert response.json()["expired"] == [subscription.id]
        assert response.json()["failed"] == []
