"""
Shared FastAPI dependencies.

Tests override ``get_database`` and ``get_billing_provider`` through
``app.dependency_overrides``.
"""
from fastapi import Depends

from backend.core.database import Database, get_database
from backend.core.errors import BillingDisabledError
from backend.features.audit.service import EventAuditLog
from backend.features.billing.provider import BillingProvider
from backend.features.billing.reconciler import SubscriptionReconciler
from backend.features.billing.service import build_reconciler, get_provider
from backend.features.billing.store import BillingStore


def get_store(db: Database = Depends(get_database)) -> BillingStore:
    return BillingStore(db)


def get_audit(store: BillingStore = Depends(get_store)) -> EventAuditLog:
    return EventAuditLog(store)


def get_billing_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError(
            "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable."
        )
    return provider


def get_reconciler(
    store: BillingStore = Depends(get_store),
    provider: BillingProvider = Depends(get_billing_provider),
) -> SubscriptionReconciler:
    return build_reconciler(store, provider)
