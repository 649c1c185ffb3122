"""
Stripe webhook route.

POST /api/webhooks/stripe

Responses:
    200: Event handled ({"received": true, ...}), including events whose user
         could not be resolved or whose writes failed (recorded in event_logs)
    400: Invalid signature or payload (Stripe redelivers)
    503: Billing disabled
    500: Handler crash
"""
from fastapi import APIRouter, Depends, Request

from backend.api.deps import get_billing_provider, get_reconciler
from backend.core.errors import ValidationError
from backend.core.logging import log_event
from backend.features.billing.provider import BillingProvider, BillingWebhookError
from backend.features.billing.reconciler import SubscriptionReconciler
from backend.features.billing.service import process_webhook_event

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    provider: BillingProvider = Depends(get_billing_provider),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        outcome = process_webhook_event(headers, body, reconciler=reconciler, provider=provider)
    except BillingWebhookError as e:
        log_event(
            "warning",
            "webhook.rejected",
            error_code="invalid_webhook",
            extra={"error_message": str(e)},
        )
        raise ValidationError(f"Webhook Error: {e}", code="invalid_webhook")

    log_event(
        "info",
        "webhook.processed",
        user_id=outcome.user_id,
        stripe_event_id=outcome.event_id,
        event_type=outcome.kind.value,
        extra={"status": outcome.status.value, "action": outcome.action},
    )

    return {
        "received": True,
        "event_id": outcome.event_id,
        "status": outcome.status.value,
        "action": outcome.action,
    }
