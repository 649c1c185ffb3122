"""
Admin billing operations service.

Handles:
- User listing, search and detail (with recent payments)
- Subscription overrides and trial resets
- User deletion (ledger entries go with the user)
- Payment transaction listing and registration key delivery tracking
- Event log queries

Every mutating operation is recorded in the event log with source=admin.
"""
from datetime import datetime
from math import ceil
from typing import Any, Dict, List, Optional

from backend.core.config import settings
from backend.core.errors import NotFoundError, ValidationError
from backend.features.users.service import user_status
from backend.models.billing import (
    EventLogStatus,
    EventSource,
    SubscriptionPlan,
    SubscriptionStatus,
    utc_now,
)
from backend.models.event_log import EventLog
from backend.models.payment import Payment
from backend.models.user import User

RECENT_PAYMENTS_LIMIT = 10
SEARCH_LIMIT = 10


def _pagination(page: int, limit: int, total: int, returned: int) -> Dict[str, Any]:
    offset = (page - 1) * limit
    return {
        "current_page": page,
        "total_pages": ceil(total / limit) if limit else 0,
        "total": total,
        "per_page": limit,
        "has_next": offset + returned < total,
        "has_prev": page > 1,
    }


def _check_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1:
        raise ValidationError("limit must be >= 1")


def list_users(
    store,
    *,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    status: Optional[str] = None,
    plan: Optional[str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    _check_page(page, limit)
    users, total = store.list_users(
        status=status,
        plan=plan,
        search=search,
        limit=limit,
        offset=(page - 1) * limit,
        sort_by=sort_by,
        descending=sort_order != "asc",
    )
    return {
        "users": [user_status(u) for u in users],
        "pagination": _pagination(page, limit, total, len(users)),
    }


def search_users(store, query: str) -> List[Dict[str, Any]]:
    if not query or not query.strip():
        raise ValidationError("Search query is required")
    users, _ = store.list_users(search=query.strip(), limit=SEARCH_LIMIT)
    return [user_status(u) for u in users]


def get_user_detail(store, user_id: str) -> Dict[str, Any]:
    user = store.require_user(user_id)
    payments, _ = store.list_payments(user_id=user_id, limit=RECENT_PAYMENTS_LIMIT)
    return {
        "user": user_status(user),
        "recent_payments": [p.model_dump(mode="json") for p in payments],
    }


def override_subscription(
    store,
    audit,
    user_id: str,
    *,
    status: Optional[str] = None,
    plan: Optional[str] = None,
) -> User:
    """
    Set a user's subscription status and/or plan directly.

    Raises:
        ValidationError: Nothing to change, or unknown status/plan
        NotFoundError: Unknown user
    """
    if not status and not plan:
        raise ValidationError("subscription_status or subscription_plan is required")

    updates: Dict[str, Any] = {}
    try:
        if status:
            updates["subscription_status"] = SubscriptionStatus(status)
        if plan:
            updates["subscription_plan"] = SubscriptionPlan(plan)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    before = store.require_user(user_id)
    updated = store.update_user(user_id, **updates)
    audit.record_action(
        event_type="admin_subscription_override",
        source=EventSource.ADMIN,
        status=EventLogStatus.SUCCESS,
        action="override_subscription",
        result=(
            f"{before.subscription_status.value}/{before.subscription_plan.value if before.subscription_plan else 'none'}"
            f" -> {updated.subscription_status.value}/{updated.subscription_plan.value if updated.subscription_plan else 'none'}"
        ),
        user=updated,
        event_data={k: v.value for k, v in updates.items()},
    )
    return updated


def reset_trial(store, audit, user_id: str) -> User:
    """Put the user back on a fresh free trial."""
    store.require_user(user_id)
    updated = store.update_user(
        user_id,
        queries_used=0,
        queries_limit=settings.FREE_TRIAL_QUERY_LIMIT,
        lockout_until=None,
        decline_count=0,
        subscription_status=SubscriptionStatus.FREE_TRIAL,
    )
    audit.record_action(
        event_type="admin_trial_reset",
        source=EventSource.ADMIN,
        status=EventLogStatus.SUCCESS,
        action="reset_trial",
        result=f"Trial reset to {updated.queries_limit} queries",
        user=updated,
    )
    return updated


def delete_user(store, audit, user_id: str) -> int:
    """Delete a user and their payments. Returns the number of payments removed."""
    user = store.require_user(user_id)
    deleted = store.delete_user(user_id)
    # The user row is gone, so the entry carries the identity in event_data
    audit.record_action(
        event_type="admin_user_deleted",
        source=EventSource.ADMIN,
        status=EventLogStatus.SUCCESS,
        action="delete_user",
        result=f"Deleted user and {deleted} payment(s)",
        event_data={"user_id": user.user_id, "email": user.email},
    )
    return deleted


def _transaction_view(payment: Payment) -> Dict[str, Any]:
    data = payment.model_dump(mode="json")
    data["is_successful"] = payment.status.value == "succeeded"
    data["has_registration_key"] = bool(payment.registration_key)
    return data


def list_payments(
    store,
    *,
    page: int = 1,
    limit: int = 50,
    sort_by: str = "purchase_date",
    sort_order: str = "desc",
    status: Optional[str] = None,
    plan: Optional[str] = None,
    email: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    has_registration_key: Optional[bool] = None,
) -> Dict[str, Any]:
    _check_page(page, limit)
    payments, total = store.list_payments(
        status=status,
        plan=plan,
        email=email,
        start_date=start_date,
        end_date=end_date,
        has_registration_key=has_registration_key,
        limit=limit,
        offset=(page - 1) * limit,
        sort_by=sort_by,
        descending=sort_order != "asc",
    )
    return {
        "payments": [_transaction_view(p) for p in payments],
        "pagination": _pagination(page, limit, total, len(payments)),
    }


def get_payment(store, payment_id: str) -> Dict[str, Any]:
    payment = store.get_payment(payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", code="payment_not_found")
    user = store.get_user(payment.user_id)
    data = _transaction_view(payment)
    data["user"] = user_status(user) if user else None
    return data


def mark_key_sent(store, audit, payment_id: str) -> Payment:
    """
    Record that a payment's registration key was delivered.

    Raises:
        NotFoundError: Unknown payment
        ValidationError: Payment has no registration key
        ConflictError: Key already marked as sent
    """
    payment = store.mark_registration_key_sent(payment_id, utc_now())
    audit.record_action(
        event_type="registration_key_sent",
        source=EventSource.ADMIN,
        status=EventLogStatus.SUCCESS,
        action="mark_key_sent",
        result=f"Key sent for payment {payment.payment_id}",
        user=store.get_user(payment.user_id),
        event_data={"payment_id": payment.payment_id},
    )
    return payment


def list_event_logs(
    store,
    *,
    page: int = 1,
    limit: int = 50,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    stripe_event_id: Optional[str] = None,
) -> List[EventLog]:
    _check_page(page, limit)
    return store.list_event_logs(
        user_id=user_id,
        event_type=event_type,
        status=status,
        stripe_event_id=stripe_event_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
