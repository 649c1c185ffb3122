"""
Admin API routes.

All routes require the admin API key (x-admin-api-key or Bearer).

Users:
- GET    /api/admin/users                    (paginated, filter/search/sort)
- GET    /api/admin/users/search?q=
- GET    /api/admin/users/{user_id}          (with recent payments)
- PUT    /api/admin/users/{user_id}/subscription
- POST   /api/admin/users/{user_id}/reset-trial
- DELETE /api/admin/users/{user_id}

Payments:
- GET    /api/admin/payments
- GET    /api/admin/payments/{payment_id}
- GET    /api/admin/transactions             (sorted by purchase date)
- POST   /api/admin/transactions/{payment_id}/mark-key-sent

Audit:
- GET    /api/admin/event-logs
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from backend.api.deps import get_audit, get_store
from backend.core.admin_auth import AdminActor, require_admin
from backend.features.audit.service import EventAuditLog
from backend.features.billing import admin_service
from backend.features.billing.store import BillingStore
from backend.features.users.service import user_status

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class SubscriptionOverride(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_status: Optional[str] = Field(default=None, alias="subscriptionStatus")
    subscription_plan: Optional[str] = Field(default=None, alias="subscriptionPlan")


@router.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    status: Optional[str] = None,
    plan: Optional[str] = None,
    search: Optional[str] = None,
    store: BillingStore = Depends(get_store),
):
    return admin_service.list_users(
        store,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        status=status,
        plan=plan,
        search=search,
    )


@router.get("/users/search")
def search_users(q: Optional[str] = None, store: BillingStore = Depends(get_store)):
    return {"users": admin_service.search_users(store, q)}


@router.get("/users/{user_id}")
def get_user(user_id: str, store: BillingStore = Depends(get_store)):
    return admin_service.get_user_detail(store, user_id)


@router.put("/users/{user_id}/subscription")
def update_user_subscription(
    user_id: str,
    body: SubscriptionOverride,
    store: BillingStore = Depends(get_store),
    audit: EventAuditLog = Depends(get_audit),
):
    user = admin_service.override_subscription(
        store,
        audit,
        user_id,
        status=body.subscription_status,
        plan=body.subscription_plan,
    )
    return {"user": user_status(user), "message": "User subscription updated successfully"}


@router.post("/users/{user_id}/reset-trial")
def reset_user_trial(
    user_id: str,
    store: BillingStore = Depends(get_store),
    audit: EventAuditLog = Depends(get_audit),
):
    user = admin_service.reset_trial(store, audit, user_id)
    return {"user": user_status(user), "message": "User trial reset successfully"}


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    store: BillingStore = Depends(get_store),
    audit: EventAuditLog = Depends(get_audit),
):
    deleted = admin_service.delete_user(store, audit, user_id)
    return {
        "message": "User and associated payments deleted successfully",
        "payments_deleted": deleted,
    }


@router.get("/payments")
def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    status: Optional[str] = None,
    plan: Optional[str] = None,
    email: Optional[str] = None,
    store: BillingStore = Depends(get_store),
):
    return admin_service.list_payments(
        store,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        status=status,
        plan=plan,
        email=email,
    )


@router.get("/payments/{payment_id}")
def get_payment(payment_id: str, store: BillingStore = Depends(get_store)):
    return admin_service.get_payment(store, payment_id)


@router.get("/transactions")
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    sort_by: str = Query("purchase_date"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    status: Optional[str] = None,
    plan: Optional[str] = None,
    email: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    has_registration_key: Optional[bool] = None,
    store: BillingStore = Depends(get_store),
):
    return admin_service.list_payments(
        store,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        status=status,
        plan=plan,
        email=email,
        start_date=start_date,
        end_date=end_date,
        has_registration_key=has_registration_key,
    )


@router.post("/transactions/{payment_id}/mark-key-sent")
def mark_key_sent(
    payment_id: str,
    store: BillingStore = Depends(get_store),
    audit: EventAuditLog = Depends(get_audit),
    actor: AdminActor = Depends(require_admin),
):
    payment = admin_service.mark_key_sent(store, audit, payment_id)
    return {
        "message": "Registration key marked as sent",
        "payment": {
            "payment_id": payment.payment_id,
            "user_email": payment.user_email,
            "registration_key": payment.registration_key,
            "registration_key_sent": payment.registration_key_sent,
            "registration_key_sent_at": payment.registration_key_sent_at.isoformat()
            if payment.registration_key_sent_at else None,
        },
        "actor": actor.actor_id,
    }


@router.get("/event-logs")
def list_event_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    status: Optional[str] = None,
    stripe_event_id: Optional[str] = None,
    store: BillingStore = Depends(get_store),
):
    logs = admin_service.list_event_logs(
        store,
        page=page,
        limit=limit,
        user_id=user_id,
        event_type=event_type,
        status=status,
        stripe_event_id=stripe_event_id,
    )
    return {"event_logs": [entry.model_dump(mode="json") for entry in logs], "page": page, "limit": limit}
