"""
Admin API tests: key auth, user management, transactions, event logs.
"""
import pytest
from datetime import datetime, timezone

from backend.core.config import settings
from backend.models.event_log import EventLog
from backend.models.payment import Payment


def _payment(user, payment_id, **overrides):
    fields = {
        "payment_id": payment_id,
        "user_id": user.user_id,
        "user_email": user.email,
        "amount": 9900,
        "status": "succeeded",
        "payment_type": "one_time",
        "subscription_plan": "lifetime",
        "purchase_date": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Payment(**fields)


class TestAdminAuth:
    def test_unconfigured_key_is_503(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", None)
        resp = client.get("/api/admin/users", headers={"x-admin-api-key": "anything"})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "admin_auth_unconfigured"

    def test_missing_key_is_401(self, client, admin_headers):
        resp = client.get("/api/admin/users")
        assert resp.status_code == 401

    def test_wrong_key_is_403(self, client, admin_headers):
        resp = client.get("/api/admin/users", headers={"x-admin-api-key": "wrong"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "admin_forbidden"

    def test_bearer_token_accepted(self, client, admin_headers):
        token = admin_headers["x-admin-api-key"]
        resp = client.get("/api/admin/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200


class TestUsers:
    def test_list_with_pagination(self, client, admin_headers, make_user):
        for i in range(3):
            make_user(email=f"user{i}@example.com", name=f"User {i}")

        resp = client.get("/api/admin/users?limit=2&sort_by=email&sort_order=asc", headers=admin_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert [u["email"] for u in body["users"]] == ["user0@example.com", "user1@example.com"]
        assert body["pagination"] == {
            "current_page": 1,
            "total_pages": 2,
            "total": 3,
            "per_page": 2,
            "has_next": True,
            "has_prev": False,
        }

    def test_list_filters_by_status(self, client, admin_headers, make_user):
        make_user()
        make_user(email="paid@example.com", subscription_status="monthly", subscription_plan="monthly")
        body = client.get("/api/admin/users?status=monthly", headers=admin_headers).json()
        assert [u["email"] for u in body["users"]] == ["paid@example.com"]

    def test_invalid_sort_is_400(self, client, admin_headers):
        resp = client.get("/api/admin/users?sort_by=password_hash", headers=admin_headers)
        assert resp.status_code == 400

    def test_search(self, client, admin_headers, make_user):
        make_user(email="carol@example.com", name="Carol")
        make_user(email="dave@example.com", name="Dave")
        body = client.get("/api/admin/users/search?q=car", headers=admin_headers).json()
        assert [u["name"] for u in body["users"]] == ["Carol"]

    def test_search_requires_query(self, client, admin_headers):
        resp = client.get("/api/admin/users/search", headers=admin_headers)
        assert resp.status_code == 400

    def test_detail_includes_recent_payments(self, client, admin_headers, store, make_user):
        user = make_user()
        store.insert_payment(_payment(user, "p1"))
        body = client.get(f"/api/admin/users/{user.user_id}", headers=admin_headers).json()
        assert body["user"]["user_id"] == user.user_id
        assert [p["payment_id"] for p in body["recent_payments"]] == ["p1"]

    def test_override_subscription(self, client, admin_headers, store, make_user):
        user = make_user()

        resp = client.put(
            f"/api/admin/users/{user.user_id}/subscription",
            json={"subscriptionStatus": "lifetime", "subscriptionPlan": "lifetime"},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["user"]["subscription_status"] == "lifetime"
        log = store.list_event_logs(event_type="admin_subscription_override")[0]
        assert log.source.value == "admin"
        assert log.result == "free_trial/none -> lifetime/lifetime"

    def test_override_rejects_unknown_status(self, client, admin_headers, make_user):
        user = make_user()
        resp = client.put(
            f"/api/admin/users/{user.user_id}/subscription",
            json={"subscription_status": "gold"},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_override_unknown_user_is_404(self, client, admin_headers):
        resp = client.put(
            "/api/admin/users/missing/subscription",
            json={"subscription_status": "monthly"},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    def test_reset_trial(self, client, admin_headers, make_user):
        user = make_user(
            queries_used=5,
            decline_count=3,
            lockout_until=datetime(2099, 1, 1, tzinfo=timezone.utc),
            subscription_status="canceled",
        )

        body = client.post(f"/api/admin/users/{user.user_id}/reset-trial", headers=admin_headers).json()

        assert body["user"]["queries_used"] == 0
        assert body["user"]["decline_count"] == 0
        assert body["user"]["lockout_until"] is None
        assert body["user"]["subscription_status"] == "free_trial"
        assert body["user"]["can_query"] is True

    def test_delete_user(self, client, admin_headers, store, make_user):
        user = make_user()
        store.insert_payment(_payment(user, "p1"))

        resp = client.delete(f"/api/admin/users/{user.user_id}", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json()["payments_deleted"] == 1
        assert store.get_user(user.user_id) is None
        log = store.list_event_logs(event_type="admin_user_deleted")[0]
        assert log.event_data["email"] == user.email


class TestTransactions:
    def test_list_and_filter(self, client, admin_headers, store, make_user):
        user = make_user()
        store.insert_payment(_payment(user, "p1", registration_key="LT-AAAAAAAA-BBBBBBBB"))
        store.insert_payment(_payment(
            user, "p2",
            status="failed",
            payment_type="subscription",
            subscription_plan="monthly",
            purchase_date=datetime(2025, 3, 1, tzinfo=timezone.utc),
        ))

        body = client.get("/api/admin/transactions", headers=admin_headers).json()
        assert [p["payment_id"] for p in body["payments"]] == ["p2", "p1"]
        assert body["payments"][1]["has_registration_key"] is True
        assert body["payments"][0]["is_successful"] is False

        keyed = client.get("/api/admin/transactions?has_registration_key=true", headers=admin_headers).json()
        assert [p["payment_id"] for p in keyed["payments"]] == ["p1"]

        dated = client.get(
            "/api/admin/transactions?start_date=2025-02-01T00:00:00Z",
            headers=admin_headers,
        ).json()
        assert [p["payment_id"] for p in dated["payments"]] == ["p2"]

    def test_payment_detail_includes_user(self, client, admin_headers, store, make_user):
        user = make_user()
        store.insert_payment(_payment(user, "p1"))
        body = client.get("/api/admin/payments/p1", headers=admin_headers).json()
        assert body["user"]["email"] == user.email

    def test_unknown_payment_is_404(self, client, admin_headers):
        resp = client.get("/api/admin/payments/missing", headers=admin_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "payment_not_found"

    def test_mark_key_sent_once(self, client, admin_headers, store, make_user):
        user = make_user()
        store.insert_payment(_payment(user, "p1", registration_key="LT-AAAAAAAA-BBBBBBBB"))
        url = "/api/admin/transactions/p1/mark-key-sent"

        first = client.post(url, headers=admin_headers)
        assert first.status_code == 200
        body = first.json()
        assert body["payment"]["registration_key_sent"] is True
        assert body["payment"]["registration_key_sent_at"] is not None
        assert body["actor"].startswith("key:")

        second = client.post(url, headers=admin_headers)
        assert second.status_code == 409

        logs = store.list_event_logs(event_type="registration_key_sent")
        assert len(logs) == 1

    def test_mark_key_sent_without_key_is_400(self, client, admin_headers, store, make_user):
        user = make_user()
        store.insert_payment(_payment(user, "p1", payment_type="subscription", subscription_plan="monthly"))
        resp = client.post("/api/admin/transactions/p1/mark-key-sent", headers=admin_headers)
        assert resp.status_code == 400


def test_event_logs_listing(client, admin_headers, store):
    store.append_event_log(EventLog(event_type="checkout_completed", status="success", stripe_event_id="evt_1"))
    store.append_event_log(EventLog(event_type="invoice_paid", status="failed", stripe_event_id="evt_2"))

    body = client.get("/api/admin/event-logs?status=failed", headers=admin_headers).json()

    assert body["page"] == 1
    assert [e["stripe_event_id"] for e in body["event_logs"]] == ["evt_2"]


@pytest.mark.parametrize("path", ["/api/admin/payments", "/api/admin/event-logs", "/api/admin/transactions"])
def test_all_admin_routes_require_key(client, admin_headers, path):
    assert client.get(path).status_code == 401
