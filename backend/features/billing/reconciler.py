"""
Subscription reconciliation.

Folds canonical billing events into user state and the payment ledger:

1. Resolve the target user (metadata user id -> email -> customer ref)
2. Compute the transition for the event kind
3. Update the user, then append a ledger entry when the kind writes one
4. Record exactly one audit entry for the attempt

Each event is an independent unit of work. The user update and the ledger
append are separate writes; a failure in the second leaves the first in
place and is reported in the audit entry.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import traceback
import uuid

from backend.core.errors import NotFoundError, PersistenceError
from backend.features.billing.events import (
    BillingEventKind,
    CanonicalEvent,
    MODE_ONE_TIME,
    MODE_RECURRING,
)
from backend.features.billing.provider import BillingProviderError
from backend.features.billing.registration_keys import issue_registration_key_if_eligible
from backend.models.billing import (
    EventLogStatus,
    EventSource,
    PaymentStatus,
    PaymentType,
    SubscriptionPlan,
    SubscriptionStatus,
    TERMINAL_PROVIDER_STATUSES,
    status_for_plan,
    utc_now,
)
from backend.models.payment import Payment
from backend.models.user import User

logger = logging.getLogger(__name__)

# Every kind must have a handler; checked by tests
_HANDLERS: Dict[BillingEventKind, str] = {
    BillingEventKind.CHECKOUT_COMPLETED: "_on_checkout_completed",
    BillingEventKind.SUBSCRIPTION_CREATED: "_on_subscription_created",
    BillingEventKind.SUBSCRIPTION_UPDATED: "_on_subscription_updated",
    BillingEventKind.SUBSCRIPTION_DELETED: "_on_subscription_deleted",
    BillingEventKind.INVOICE_PAID: "_on_invoice_paid",
    BillingEventKind.INVOICE_PAYMENT_FAILED: "_on_invoice_payment_failed",
    BillingEventKind.PAYMENT_SUCCEEDED: "_on_informational",
    BillingEventKind.PAYMENT_FAILED: "_on_informational",
    BillingEventKind.TRIAL_WILL_END: "_on_informational",
    BillingEventKind.IGNORED: "_on_ignored",
}


@dataclass
class ReconciliationOutcome:
    """What happened to one event. Becomes the audit entry."""
    event_id: str
    kind: BillingEventKind
    status: EventLogStatus = EventLogStatus.PROCESSING
    action: Optional[str] = None
    result: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    payment_id: Optional[str] = None
    registration_key_issued: bool = False
    plan_fallback: bool = False
    error: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == EventLogStatus.SUCCESS

    def attach_user(self, user: User) -> None:
        self.user_id = user.user_id
        self.user_email = user.email

    def succeed(self, action: str, result: str) -> None:
        self.status = EventLogStatus.SUCCESS
        self.action = action
        self.result = result

    def fail(self, action: str, error: str, detail: Optional[str] = None, result: Optional[str] = None) -> None:
        self.status = EventLogStatus.FAILED
        self.action = action
        self.error = error
        self.error_detail = detail
        if result is not None:
            self.result = result


class SubscriptionReconciler:
    """
    Applies canonical billing events to users and the payment ledger.

    Args:
        store: BillingStore
        audit: EventAuditLog
        provider: BillingProvider used for interval lookups (optional)
        deduplicate_ledger: Skip ledger-writing events whose id is already
            recorded on a payment
        clock: Returns the current time (tests pin it)
    """

    def __init__(
        self,
        store,
        audit,
        provider=None,
        *,
        deduplicate_ledger: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.provider = provider
        self.deduplicate_ledger = deduplicate_ledger
        self.clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, event: CanonicalEvent, *, source: EventSource = EventSource.STRIPE_WEBHOOK) -> ReconciliationOutcome:
        """Apply one event and record its outcome.

        Store failures end up in the returned outcome. Anything else is
        audited and re-raised.
        """
        outcome = ReconciliationOutcome(event_id=event.event_id, kind=event.kind)
        handler = getattr(self, _HANDLERS[event.kind])

        try:
            handler(event, outcome)
        except PersistenceError as exc:
            operation = exc.operation or "persist"
            outcome.fail(operation, exc.message, detail=type(exc).__name__)
            logger.error(
                "[reconcile] persistence failure",
                extra={
                    "stripe_event_id": event.event_id,
                    "event_type": event.kind.value,
                    "operation": operation,
                    "error_code": exc.code,
                    "user_id": outcome.user_id,
                },
            )
        except NotFoundError as exc:
            # User removed between resolution and update; the audit row must not reference it
            vanished_user_id, outcome.user_id = outcome.user_id, None
            outcome.fail("find_user", exc.message, detail=type(exc).__name__)
            logger.warning(
                "[reconcile] user vanished during reconciliation",
                extra={"stripe_event_id": event.event_id, "user_id": vanished_user_id},
            )
        except Exception as exc:
            outcome.fail("handler_crash", str(exc), detail=traceback.format_exc())
            logger.exception(
                "[reconcile] handler crashed",
                extra={"stripe_event_id": event.event_id, "event_type": event.kind.value},
            )
            self.audit.record(event, outcome, source=source)
            raise

        self.audit.record(event, outcome, source=source)
        logger.info(
            "[reconcile] %s %s",
            event.kind.value,
            outcome.status.value,
            extra={
                "stripe_event_id": event.event_id,
                "user_id": outcome.user_id,
                "action": outcome.action,
            },
        )
        return outcome

    # ------------------------------------------------------------------
    # User resolution and plan inference
    # ------------------------------------------------------------------

    def resolve_user(self, event: CanonicalEvent) -> Tuple[Optional[User], List[str]]:
        """Find the event's user. Returns (user or None, keys attempted)."""
        attempted: List[str] = []

        if event.user_id:
            attempted.append(f"user_id={event.user_id}")
            user = self.store.get_user(event.user_id)
            if user:
                return user, attempted

        if event.customer_email:
            attempted.append(f"email={event.customer_email.lower()}")
            user = self.store.get_user_by_email(event.customer_email)
            if user:
                return user, attempted

        if event.customer_id:
            attempted.append(f"customer_id={event.customer_id}")
            user = self.store.get_user_by_customer_id(event.customer_id)
            if user:
                return user, attempted

        return None, attempted

    def _require_user(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> Optional[User]:
        user, attempted = self.resolve_user(event)
        if user is None:
            keys = ", ".join(attempted) or "no lookup keys"
            outcome.fail(
                "find_user",
                "User not found",
                result=f"No user matched ({keys})",
            )
            logger.warning(
                "[reconcile] no user for event",
                extra={
                    "stripe_event_id": event.event_id,
                    "event_type": event.kind.value,
                    "attempted": attempted,
                },
            )
            return None
        outcome.attach_user(user)
        return user

    def _plan_from_interval(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> SubscriptionPlan:
        interval = event.billing_interval
        if not interval and event.subscription_id and self.provider is not None:
            try:
                interval = self.provider.get_subscription_interval(event.subscription_id)
            except BillingProviderError as exc:
                outcome.plan_fallback = True
                logger.warning(
                    "[reconcile] interval lookup failed, defaulting to monthly",
                    extra={
                        "stripe_event_id": event.event_id,
                        "subscription_id": event.subscription_id,
                        "error_message": str(exc),
                    },
                )
                return SubscriptionPlan.MONTHLY
        return SubscriptionPlan.YEARLY if interval == "year" else SubscriptionPlan.MONTHLY

    def infer_plan(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> SubscriptionPlan:
        """Plan from metadata, else from the transaction shape."""
        if event.plan is not None:
            return event.plan
        if event.mode == MODE_ONE_TIME:
            return SubscriptionPlan.LIFETIME
        if event.mode == MODE_RECURRING:
            return self._plan_from_interval(event, outcome)

        outcome.plan_fallback = True
        logger.warning(
            "[reconcile] unknown checkout mode, defaulting to monthly",
            extra={"stripe_event_id": event.event_id, "mode": event.mode},
        )
        return SubscriptionPlan.MONTHLY

    # ------------------------------------------------------------------
    # Ledger helpers
    # ------------------------------------------------------------------

    def _is_duplicate_delivery(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> bool:
        if not self.deduplicate_ledger:
            return False
        existing = self.store.get_payment_by_event_id(event.event_id) if event.event_id else None
        if existing is None and event.kind == BillingEventKind.CHECKOUT_COMPLETED:
            # Webhook and browser verification report the same session under different ids
            existing = self.store.find_checkout_payment(
                session_id=event.session_id,
                payment_intent_id=event.payment_intent_id,
            )
        if existing is None:
            return False
        outcome.payment_id = existing.payment_id
        outcome.succeed(
            "skip_duplicate",
            f"Event already recorded as payment {existing.payment_id}",
        )
        return True

    def _append_payment(self, event: CanonicalEvent, user: User, **fields: Any) -> Payment:
        metadata = fields.pop("metadata", {})
        if not self.deduplicate_ledger:
            # Event id lives in metadata so redeliveries do not collide
            metadata = {**metadata, "stripeEventId": event.event_id}
        payment = Payment(
            payment_id=str(uuid.uuid4()),
            user_id=user.user_id,
            user_email=user.email,
            currency=event.currency or "usd",
            purchase_date=self.clock(),
            stripe_event_id=event.event_id if self.deduplicate_ledger and event.event_id else None,
            metadata=metadata,
            **fields,
        )
        payment = issue_registration_key_if_eligible(payment)
        return self.store.insert_payment(payment)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user = self._require_user(event, outcome)
        if user is None or self._is_duplicate_delivery(event, outcome):
            return

        plan = self.infer_plan(event, outcome)
        updates: Dict[str, Any] = {
            "subscription_status": status_for_plan(plan),
            "subscription_plan": plan,
            "subscription_start_date": self.clock(),
            "queries_used": 0,
            "lockout_until": None,
            "decline_count": 0,
        }
        if event.customer_id:
            updates["stripe_customer_id"] = event.customer_id
        if event.subscription_id:
            updates["stripe_subscription_id"] = event.subscription_id
        user = self.store.update_user(user.user_id, **updates)

        payment = self._append_payment(
            event,
            user,
            amount=event.amount or 0,
            status=PaymentStatus.SUCCEEDED,
            payment_type=PaymentType.ONE_TIME if plan == SubscriptionPlan.LIFETIME else PaymentType.SUBSCRIPTION,
            subscription_plan=plan,
            stripe_payment_intent_id=event.payment_intent_id,
            metadata={
                "sessionId": event.session_id,
                "customerEmail": event.customer_email,
            },
        )
        outcome.payment_id = payment.payment_id
        outcome.registration_key_issued = bool(payment.registration_key)

        result = f"Activated {plan.value} plan"
        if outcome.plan_fallback:
            result += " (plan defaulted)"
        if payment.registration_key:
            result += "; registration key issued"
            logger.info(
                "[reconcile] registration key issued",
                extra={"user_id": user.user_id, "payment_id": payment.payment_id},
            )
        outcome.succeed("activate_subscription", result)

    def _on_subscription_created(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user = self._require_user(event, outcome)
        if user is None:
            return

        plan = self._plan_from_interval(event, outcome)
        updates: Dict[str, Any] = {
            "subscription_status": status_for_plan(plan),
            "subscription_plan": plan,
        }
        if event.subscription_id:
            updates["stripe_subscription_id"] = event.subscription_id
        if event.period_start:
            updates["subscription_start_date"] = event.period_start
        if event.period_end:
            updates["subscription_end_date"] = event.period_end
        self.store.update_user(user.user_id, **updates)
        outcome.succeed("create_subscription", f"Subscription set to {plan.value}")

    def _on_subscription_updated(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user = self._require_user(event, outcome)
        if user is None:
            return

        updates: Dict[str, Any] = {}
        provider_status = (event.provider_status or "").lower()
        terminal = {s.value for s in TERMINAL_PROVIDER_STATUSES}
        if provider_status in terminal:
            updates["subscription_status"] = SubscriptionStatus(provider_status)
        if event.period_end:
            updates["subscription_end_date"] = event.period_end

        if updates:
            user = self.store.update_user(user.user_id, **updates)
        outcome.succeed(
            "update_subscription",
            f"Status {user.subscription_status.value} (provider status {provider_status or 'unknown'})",
        )

    def _on_subscription_deleted(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user = self._require_user(event, outcome)
        if user is None:
            return

        self.store.update_user(
            user.user_id,
            subscription_status=SubscriptionStatus.CANCELED,
            subscription_plan=None,
            stripe_subscription_id=None,
            subscription_end_date=self.clock(),
            queries_used=0,
        )
        outcome.succeed("cancel_subscription", "Subscription canceled")

    def _on_invoice_paid(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user = self._require_user(event, outcome)
        if user is None or self._is_duplicate_delivery(event, outcome):
            return

        payment = self._append_payment(
            event,
            user,
            amount=event.amount or 0,
            status=PaymentStatus.SUCCEEDED,
            payment_type=PaymentType.SUBSCRIPTION,
            subscription_plan=user.subscription_plan,
            stripe_invoice_id=event.invoice_id,
            stripe_payment_intent_id=event.payment_intent_id,
            metadata={
                "invoiceNumber": event.invoice_number,
                "periodStart": event.period_start.isoformat() if event.period_start else None,
                "periodEnd": event.period_end.isoformat() if event.period_end else None,
            },
        )
        outcome.payment_id = payment.payment_id
        outcome.succeed("record_invoice_payment", f"Recorded payment of {payment.amount} {payment.currency}")

    def _on_invoice_payment_failed(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user = self._require_user(event, outcome)
        if user is None or self._is_duplicate_delivery(event, outcome):
            return

        user = self.store.update_user(user.user_id, subscription_status=SubscriptionStatus.PAST_DUE)
        payment = self._append_payment(
            event,
            user,
            amount=event.amount or 0,
            status=PaymentStatus.FAILED,
            payment_type=PaymentType.SUBSCRIPTION,
            subscription_plan=user.subscription_plan,
            stripe_invoice_id=event.invoice_id,
            metadata={
                "invoiceNumber": event.invoice_number,
                "attemptCount": event.attempt_count,
                "lastError": event.last_error,
            },
        )
        outcome.payment_id = payment.payment_id
        outcome.succeed("mark_past_due", "Invoice payment failed; status past_due")

    def _on_informational(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        user, _ = self.resolve_user(event)
        if user is not None:
            outcome.attach_user(user)
        result = f"{event.provider_type} received"
        if event.last_error:
            result += f": {event.last_error}"
        outcome.succeed("log_only", result)

    def _on_ignored(self, event: CanonicalEvent, outcome: ReconciliationOutcome) -> None:
        outcome.succeed("ignored", f"Unhandled event type {event.provider_type or 'unknown'}")
