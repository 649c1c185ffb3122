"""
Stripe webhook route tests.

The provider fake trusts the request body, so each test posts the Stripe
event JSON directly.
"""
import json
from unittest.mock import Mock

from fastapi.testclient import TestClient

from backend.api.deps import get_billing_provider, get_reconciler
from backend.core.config import settings
from backend.features.billing.provider import BillingWebhookError

URL = "/api/webhooks/stripe"


def _checkout(user, event_id="evt_web_1", plan="monthly"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_web_1",
            "mode": "payment" if plan == "lifetime" else "subscription",
            "customer": "cus_web_1",
            "subscription": None if plan == "lifetime" else "sub_web_1",
            "amount_total": 1999,
            "currency": "usd",
            "metadata": {"userId": user.user_id, "plan": plan},
        }},
    }


def _post(client, event):
    return client.post(
        URL,
        content=json.dumps(event),
        headers={"stripe-signature": "t=1,v1=signed", "content-type": "application/json"},
    )


def test_checkout_webhook_activates_user(client, store, make_user):
    user = make_user()

    resp = _post(client, _checkout(user))

    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "received": True,
        "event_id": "evt_web_1",
        "status": "success",
        "action": "activate_subscription",
    }
    assert store.get_user(user.user_id).subscription_status.value == "monthly"


def test_raw_body_reaches_signature_check(client, fake_provider, make_user):
    user = make_user()
    event = _checkout(user)
    _post(client, event)

    headers, body = fake_provider.verify_webhook.call_args.args
    assert body == json.dumps(event).encode()
    assert headers["stripe-signature"] == "t=1,v1=signed"


def test_redelivery_is_acknowledged_once(client, store, make_user):
    user = make_user()
    _post(client, _checkout(user))
    resp = _post(client, _checkout(user))

    assert resp.status_code == 200
    assert resp.json()["action"] == "skip_duplicate"
    assert store.list_payments(user_id=user.user_id)[1] == 1


def test_unknown_user_still_acknowledged(client, store):
    event = {
        "id": "evt_orphan",
        "type": "invoice.paid",
        "data": {"object": {"id": "in_1", "customer": "cus_nobody", "amount_paid": 100}},
    }

    resp = _post(client, event)

    assert resp.status_code == 200
    assert resp.json()["status"] == "failed"
    assert resp.json()["action"] == "find_user"
    assert store.list_event_logs(stripe_event_id="evt_orphan")[0].error_message == "User not found"


def test_unhandled_type_is_acknowledged(client):
    resp = _post(client, {"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
    assert resp.status_code == 200
    assert resp.json()["action"] == "ignored"


def test_invalid_signature_is_400(client, fake_provider, store):
    fake_provider.verify_webhook.side_effect = BillingWebhookError("No signatures found matching the expected signature")

    resp = _post(client, {"id": "evt_bad", "type": "checkout.session.completed", "data": {"object": {}}})

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "invalid_webhook"
    assert error["message"].startswith("Webhook Error:")
    assert store.list_event_logs() == []


def test_handler_crash_is_500(app):
    crashing = Mock()
    crashing.reconcile.side_effect = RuntimeError("boom")
    app.dependency_overrides[get_reconciler] = lambda: crashing
    client = TestClient(app, raise_server_exceptions=False)

    resp = client.post(URL, content=b'{"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}')

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"


def test_billing_disabled_is_503(app, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    app.dependency_overrides.pop(get_billing_provider)
    client = TestClient(app)

    resp = client.post(URL, content=b"{}")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"
