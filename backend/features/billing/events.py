"""
Canonical billing events.

Stripe webhook payloads are normalized into a provider-neutral
``CanonicalEvent`` before they reach the reconciler. The set of kinds is
closed: any Stripe type without a mapping becomes ``BillingEventKind.IGNORED``.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from backend.models.billing import SubscriptionPlan, parse_plan


class BillingEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    # Informational: audit-logged only
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_WILL_END = "trial_will_end"
    IGNORED = "ignored"


STRIPE_EVENT_KINDS: Dict[str, BillingEventKind] = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": BillingEventKind.TRIAL_WILL_END,
    "invoice.paid": BillingEventKind.INVOICE_PAID,
    "invoice.payment_failed": BillingEventKind.INVOICE_PAYMENT_FAILED,
    "payment_intent.succeeded": BillingEventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": BillingEventKind.PAYMENT_FAILED,
}

# Checkout session modes
MODE_ONE_TIME = "payment"
MODE_RECURRING = "subscription"


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider-neutral view of one webhook delivery."""
    event_id: str
    kind: BillingEventKind
    provider_type: str
    object_id: Optional[str] = None
    # Correlation metadata
    user_id: Optional[str] = None
    plan: Optional[SubscriptionPlan] = None
    # Customer / subscription references
    customer_email: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    provider_status: Optional[str] = None
    # Transaction shape
    mode: Optional[str] = None
    billing_interval: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    payment_intent_id: Optional[str] = None
    # Invoice details
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    attempt_count: Optional[int] = None
    last_error: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> Optional[str]:
        if self.kind == BillingEventKind.CHECKOUT_COMPLETED:
            return self.object_id
        return None


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe references arrive either as ids or as expanded objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: Dict[str, Any], container: str = "items") -> Dict[str, Any]:
    data = (obj.get(container) or {}).get("data") or []
    return data[0] if data else {}


def _line_item_interval(obj: Dict[str, Any]) -> Optional[str]:
    for container in ("items", "lines", "line_items"):
        item = _first_item(obj, container)
        price = item.get("price") or {}
        interval = (price.get("recurring") or {}).get("interval")
        if interval:
            return interval
    # Legacy plan objects
    return (obj.get("plan") or {}).get("interval")


def _subscription_period(obj: Dict[str, Any]) -> tuple:
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        # Newer API versions carry the period on the subscription item
        item = _first_item(obj)
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return _ts(start), _ts(end)


def _invoice_subscription(obj: Dict[str, Any]) -> Optional[str]:
    sub = _ref(obj.get("subscription"))
    if sub:
        return sub
    details = ((obj.get("parent") or {}).get("subscription_details") or {})
    return _ref(details.get("subscription"))


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def normalize_stripe_event(event: Dict[str, Any]) -> CanonicalEvent:
    """
    Normalize a verified Stripe event payload.

    Args:
        event: Stripe event as a plain dict (``id``, ``type``, ``data.object``)

    Returns:
        CanonicalEvent with the fields the reconciler consumes
    """
    provider_type = event.get("type") or ""
    kind = STRIPE_EVENT_KINDS.get(provider_type, BillingEventKind.IGNORED)
    obj = (event.get("data") or {}).get("object") or {}
    metadata = _metadata(obj)

    common: Dict[str, Any] = {
        "event_id": event.get("id") or "",
        "kind": kind,
        "provider_type": provider_type,
        "object_id": obj.get("id"),
        "user_id": metadata.get("userId") or metadata.get("user_id"),
        "plan": parse_plan(metadata.get("plan")),
        "customer_id": _ref(obj.get("customer")),
        "currency": obj.get("currency"),
        "payload": obj,
    }

    if kind == BillingEventKind.CHECKOUT_COMPLETED:
        details = obj.get("customer_details") or {}
        return CanonicalEvent(
            **common,
            customer_email=obj.get("customer_email") or details.get("email"),
            subscription_id=_ref(obj.get("subscription")),
            mode=obj.get("mode"),
            billing_interval=_line_item_interval(obj),
            amount=obj.get("amount_total"),
            payment_intent_id=_ref(obj.get("payment_intent")),
        )

    if kind in (
        BillingEventKind.SUBSCRIPTION_CREATED,
        BillingEventKind.SUBSCRIPTION_UPDATED,
        BillingEventKind.SUBSCRIPTION_DELETED,
        BillingEventKind.TRIAL_WILL_END,
    ):
        period_start, period_end = _subscription_period(obj)
        return CanonicalEvent(
            **common,
            subscription_id=obj.get("id"),
            provider_status=obj.get("status"),
            mode=MODE_RECURRING,
            billing_interval=_line_item_interval(obj),
            period_start=period_start,
            period_end=period_end,
        )

    if kind in (BillingEventKind.INVOICE_PAID, BillingEventKind.INVOICE_PAYMENT_FAILED):
        last_error = (obj.get("last_finalization_error") or {}).get("message")
        amount = obj.get("amount_paid") if kind == BillingEventKind.INVOICE_PAID else obj.get("amount_due")
        return CanonicalEvent(
            **common,
            customer_email=obj.get("customer_email"),
            subscription_id=_invoice_subscription(obj),
            provider_status=obj.get("status"),
            mode=MODE_RECURRING,
            billing_interval=_line_item_interval(obj),
            amount=amount,
            payment_intent_id=_ref(obj.get("payment_intent")),
            invoice_id=obj.get("id"),
            invoice_number=obj.get("number"),
            period_start=_ts(obj.get("period_start")),
            period_end=_ts(obj.get("period_end")),
            attempt_count=obj.get("attempt_count"),
            last_error=last_error,
        )

    if kind in (BillingEventKind.PAYMENT_SUCCEEDED, BillingEventKind.PAYMENT_FAILED):
        return CanonicalEvent(
            **common,
            customer_email=obj.get("receipt_email"),
            provider_status=obj.get("status"),
            amount=obj.get("amount_received") or obj.get("amount"),
            payment_intent_id=obj.get("id"),
            last_error=(obj.get("last_payment_error") or {}).get("message"),
        )

    return CanonicalEvent(**common)
