# backend/conftest.py
import sys
import json
import pytest
from pathlib import Path
from unittest.mock import Mock

# Add repo root to PYTHONPATH so `backend.*` imports resolve
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.core.config import settings
from backend.core.database import Database, get_database
from backend.features.audit.service import EventAuditLog
from backend.features.billing.reconciler import SubscriptionReconciler
from backend.features.billing.store import BillingStore

TEST_DB_URL = "sqlite+pysqlite:///:memory:"
ADMIN_KEY = "test-admin-key"


@pytest.fixture
def database():
    """Fresh in-memory database per test."""
    db = Database(TEST_DB_URL)
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture
def store(database):
    return BillingStore(database)


@pytest.fixture
def audit(store):
    return EventAuditLog(store)


@pytest.fixture
def fake_provider():
    """Stand-in for StripeProvider: trusts the body, never calls Stripe."""
    provider = Mock()
    provider.verify_webhook.side_effect = lambda headers, body: json.loads(body)
    provider.get_subscription_interval.return_value = "month"
    provider.ensure_customer.return_value = "cus_test_123"
    provider.create_checkout_session.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.test/pay/cs_test_123",
    }
    provider.retrieve_checkout_session.return_value = {}
    provider.cancel_subscription.return_value = None
    return provider


@pytest.fixture
def reconciler(store, audit, fake_provider):
    return SubscriptionReconciler(store, audit, fake_provider)


@pytest.fixture
def make_user(store):
    """Create a stored user; keyword arguments are applied as column updates."""
    def _make(email="alice@example.com", name="Alice", **updates):
        user = store.create_user(name=name, email=email, password_hash="not-a-real-hash")
        if updates:
            user = store.update_user(user.user_id, **updates)
        return user
    return _make


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return {"x-admin-api-key": ADMIN_KEY}


@pytest.fixture
def app(database, fake_provider):
    from backend.api.deps import get_billing_provider
    from backend.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_database] = lambda: database
    fastapi_app.dependency_overrides[get_billing_provider] = lambda: fake_provider
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)
