"""
Payments API routes.

Accounts:
- POST /api/payments/signup, /login, /users (create-or-get)
- GET  /api/payments/users/{user_id}

Billing:
- GET  /api/payments/config
- POST /api/payments/create-checkout-session
- POST /api/payments/verify-payment-session
- POST /api/payments/cancel-subscription
- GET  /api/payments/payments/{user_id}

Metered actions:
- POST /api/payments/increment-query
- POST /api/payments/handle-decline

Request bodies accept the camelCase names used by the web client
(``userId``, ``sessionId``) as well as snake_case.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict, Field

from backend.api.deps import get_audit, get_billing_provider, get_reconciler, get_store
from backend.core.config import settings
from backend.core.errors import ValidationError
from backend.features.audit.service import EventAuditLog
from backend.features.billing import service as billing_service
from backend.features.billing.provider import BillingProvider
from backend.features.billing.reconciler import SubscriptionReconciler
from backend.features.billing.store import BillingStore
from backend.features.entitlements.service import consume_metered_action, remaining_actions
from backend.features.lockout.service import record_decline
from backend.features.users import service as user_service

router = APIRouter(prefix="/api/payments", tags=["payments"])

PAYMENT_HISTORY_LIMIT = 50


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(_Body):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(_Body):
    email: Optional[str] = None
    password: Optional[str] = None


class CheckoutRequest(_Body):
    plan: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    email: Optional[str] = None


class VerifySessionRequest(_Body):
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class UserRequest(_Body):
    user_id: Optional[str] = Field(default=None, alias="userId")


def _require_user_id(body: UserRequest) -> str:
    if not body.user_id:
        raise ValidationError("userId is required")
    return body.user_id


@router.get("/config")
def get_config():
    """Publishable Stripe configuration for the web client."""
    return {
        "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
        "environment": settings.ENV,
        "billing_enabled": billing_service.billing_enabled(),
    }


@router.post("/signup", status_code=201)
def signup(body: SignupRequest, store: BillingStore = Depends(get_store)):
    user = user_service.signup(store, body.name, body.email, body.password)
    return {"user": user_service.user_status(user), "message": "User account created successfully!"}


@router.post("/login")
def login(body: LoginRequest, store: BillingStore = Depends(get_store)):
    user = user_service.login(store, body.email, body.password)
    return {"user": user_service.user_status(user), "message": "Login successful!"}


@router.post("/users")
def create_or_get_user(body: SignupRequest, response: Response, store: BillingStore = Depends(get_store)):
    user, created = user_service.create_or_get(store, body.name, body.email, body.password)
    response.status_code = 201 if created else 200
    return {"user": user_service.user_status(user), "created": created}


@router.get("/users/{user_id}")
def get_user_status(user_id: str, store: BillingStore = Depends(get_store)):
    return {"user": user_service.user_status(store.require_user(user_id))}


@router.post("/create-checkout-session")
def create_checkout_session(
    body: CheckoutRequest,
    store: BillingStore = Depends(get_store),
    provider: BillingProvider = Depends(get_billing_provider),
):
    """
    Create a Stripe checkout session for a plan (monthly, yearly, lifetime).

    Errors:
        400: Missing/invalid plan or no user reference
        404: Unknown user
        502: Stripe API error
        503: Billing disabled
    """
    return billing_service.start_checkout(
        store,
        provider,
        plan=body.plan,
        user_id=body.user_id,
        email=body.email,
    )


@router.post("/verify-payment-session")
def verify_payment_session(
    body: VerifySessionRequest,
    store: BillingStore = Depends(get_store),
    provider: BillingProvider = Depends(get_billing_provider),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    user = billing_service.verify_payment_session(store, provider, reconciler, body.session_id)
    return {"user": user_service.user_status(user), "message": "Subscription activated successfully!"}


@router.post("/cancel-subscription")
def cancel_subscription(
    body: UserRequest,
    store: BillingStore = Depends(get_store),
    audit: EventAuditLog = Depends(get_audit),
    provider: BillingProvider = Depends(get_billing_provider),
):
    user = billing_service.cancel_subscription(store, provider, audit, _require_user_id(body))
    return {"user": user_service.user_status(user), "message": "Subscription canceled successfully"}


@router.post("/increment-query")
def increment_query(body: UserRequest, store: BillingStore = Depends(get_store)):
    """Consume one metered query. 403 when locked out or out of quota."""
    user = consume_metered_action(
        store,
        _require_user_id(body),
        meter_lapsed=settings.METER_LAPSED_SUBSCRIBERS,
    )
    return {
        "queries_used": user.queries_used,
        "remaining_queries": remaining_actions(user),
    }


@router.post("/handle-decline")
def handle_decline(
    body: UserRequest,
    store: BillingStore = Depends(get_store),
    audit: EventAuditLog = Depends(get_audit),
):
    user = record_decline(store, audit, _require_user_id(body))
    return {
        "lockout_until": user.lockout_until.isoformat(),
        "decline_count": user.decline_count,
    }


@router.get("/payments/{user_id}")
def get_payment_history(user_id: str, store: BillingStore = Depends(get_store)):
    payments, _ = store.list_payments(user_id=user_id, limit=PAYMENT_HISTORY_LIMIT)
    return {"payments": [p.model_dump(mode="json") for p in payments]}
