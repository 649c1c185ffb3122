from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator

from backend.models.billing import (
    SubscriptionPlan,
    SubscriptionStatus,
    UserRole,
    ensure_utc,
)


class User(BaseModel):
    """Account with its subscription and free-trial quota state.

    Instances are immutable; state changes produce a copy via
    ``model_copy(update=...)`` and are persisted by the billing store.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str
    email: str
    role: UserRole = UserRole.USER

    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE_TRIAL
    subscription_plan: Optional[SubscriptionPlan] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

    queries_used: int = 0
    queries_limit: int = 5
    lockout_until: Optional[datetime] = None
    decline_count: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator(
        "subscription_start_date",
        "subscription_end_date",
        "lockout_until",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()
