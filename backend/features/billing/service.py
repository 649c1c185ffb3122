"""
Billing service orchestrator.

Coordinates the provider boundary with the reconciler:
- Webhook processing (verify -> normalize -> reconcile)
- Checkout session creation
- Checkout session verification (reuses the reconciler)
- Subscription cancellation

All Stripe-specific code is in stripe_provider.py.
"""
from typing import Optional, Dict, Any, Tuple
import logging

from backend.core.config import settings
from backend.core.errors import AppError, NotFoundError, ValidationError
from backend.features.audit.service import EventAuditLog
from backend.features.billing.events import (
    MODE_ONE_TIME,
    MODE_RECURRING,
    normalize_stripe_event,
)
from backend.features.billing.provider import BillingProvider, BillingProviderError
from backend.features.billing.reconciler import ReconciliationOutcome, SubscriptionReconciler
from backend.features.billing.stripe_provider import StripeProvider
from backend.models.billing import (
    EventLogStatus,
    EventSource,
    SubscriptionPlan,
    SubscriptionStatus,
    parse_plan,
)
from backend.models.user import User

logger = logging.getLogger(__name__)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def build_reconciler(store, provider: Optional[BillingProvider] = None) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        store,
        EventAuditLog(store),
        provider,
        deduplicate_ledger=settings.LEDGER_DEDUPLICATE_EVENTS,
    )


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    reconciler: SubscriptionReconciler,
    provider: BillingProvider,
) -> ReconciliationOutcome:
    """
    Process a billing webhook delivery.

    1. Verify signature
    2. Normalize to a canonical event
    3. Reconcile (records exactly one audit entry)

    Raises:
        BillingWebhookError: If signature invalid or payload malformed
    """
    payload = provider.verify_webhook(headers, body)
    event = normalize_stripe_event(payload)
    logger.info(
        "Webhook received",
        extra={"stripe_event_id": event.event_id, "event_type": event.provider_type},
    )
    return reconciler.reconcile(event)


def get_price_for_plan(plan: SubscriptionPlan) -> Tuple[Optional[str], str]:
    """Map a plan to (Stripe price ID, checkout mode)."""
    price_map = {
        SubscriptionPlan.MONTHLY: (settings.STRIPE_MONTHLY_PRICE_ID, MODE_RECURRING),
        SubscriptionPlan.YEARLY: (settings.STRIPE_YEARLY_PRICE_ID, MODE_RECURRING),
        SubscriptionPlan.LIFETIME: (settings.STRIPE_ONETIME_PRICE_ID, MODE_ONE_TIME),
    }
    return price_map[plan]


def _checkout_user(store, user_id: Optional[str], email: Optional[str]) -> User:
    if user_id:
        return store.require_user(user_id)
    if email:
        user = store.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found. Please sign up first.", code="user_not_found")
        return user
    raise ValidationError("Either userId or email is required")


def start_checkout(
    store,
    provider: BillingProvider,
    *,
    plan: str,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Dict[str, str]:
    """
    Start a checkout session for a plan.

    The session carries ``userId`` and ``plan`` metadata so the completion
    webhook resolves the user and plan without inference.

    Returns:
        {"sessionId": ..., "url": ...}

    Raises:
        ValidationError: Missing or invalid plan / user reference
        NotFoundError: Unknown user
        BillingProviderError: If the provider rejects the request
    """
    if not plan:
        raise ValidationError("plan is required")
    parsed = parse_plan(plan)
    if parsed is None:
        raise ValidationError('Invalid plan. Must be "monthly", "yearly", or "lifetime"')

    user = _checkout_user(store, user_id, email)

    price_id, mode = get_price_for_plan(parsed)
    if not price_id:
        raise AppError(
            f"Price ID not configured for {parsed.value} plan",
            code="price_not_configured",
            status_code=500,
        )

    customer_id = user.stripe_customer_id
    if not customer_id:
        customer_id = provider.ensure_customer(user.user_id, user.email, user.name)
        store.update_user(user.user_id, stripe_customer_id=customer_id)

    base_url = settings.BACKEND_URL.rstrip("/")
    session = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        mode=mode,
        success_url=f"{base_url}/success.html?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/canceled.html",
        metadata={"userId": user.user_id, "plan": parsed.value},
    )
    logger.info(
        "Checkout session created",
        extra={"user_id": user.user_id, "plan": parsed.value, "session_id": session["id"]},
    )
    return {"sessionId": session["id"], "url": session["url"]}


def verify_payment_session(
    store,
    provider: BillingProvider,
    reconciler: SubscriptionReconciler,
    session_id: str,
) -> User:
    """
    Confirm a completed checkout from the browser redirect.

    A paid session is folded in as a checkout-completed event, so this path
    and the webhook share activation, ledger and key issuance semantics.
    Repeated verification of one session is deduplicated like a redelivery.

    Raises:
        ValidationError: Missing session id, unpaid session or no user reference
        NotFoundError: The session's user does not exist
        BillingProviderError: Session lookup failed
    """
    if not session_id:
        raise ValidationError("Session ID is required")

    session = provider.retrieve_checkout_session(session_id)
    if session.get("payment_status") != "paid":
        raise ValidationError(
            f"Payment not completed (status: {session.get('payment_status') or 'unknown'})",
            code="payment_incomplete",
        )
    if not (session.get("metadata") or {}).get("userId"):
        raise ValidationError("User ID not found in session")

    event = normalize_stripe_event({
        "id": f"verify_{session_id}",
        "type": "checkout.session.completed",
        "data": {"object": session},
    })
    outcome = reconciler.reconcile(event, source=EventSource.API)
    if not outcome.ok:
        if outcome.action == "find_user":
            raise NotFoundError("User not found", code="user_not_found")
        raise AppError(
            outcome.error or "Subscription activation failed",
            code="activation_failed",
            status_code=500,
        )
    return store.require_user(outcome.user_id)


def cancel_subscription(store, provider: BillingProvider, audit: EventAuditLog, user_id: str) -> User:
    """
    Cancel the user's recurring subscription at the provider and locally.

    Raises:
        NotFoundError: Unknown user
        ValidationError: No subscription on file
        BillingProviderError: Provider cancellation failed
    """
    user = store.require_user(user_id)
    if not user.stripe_subscription_id:
        raise ValidationError("No active subscription found")

    provider.cancel_subscription(user.stripe_subscription_id)
    updated = store.update_user(
        user_id,
        subscription_status=SubscriptionStatus.CANCELED,
        subscription_plan=None,
        stripe_subscription_id=None,
        queries_used=0,
    )
    audit.record_action(
        event_type="subscription_canceled",
        source=EventSource.API,
        status=EventLogStatus.SUCCESS,
        action="cancel_subscription",
        result=f"Canceled subscription {user.stripe_subscription_id}",
        user=updated,
    )
    return updated
