"""
Billing vocabulary shared by users, the payment ledger and the event log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionStatus(str, Enum):
    FREE_TRIAL = "free_trial"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class SubscriptionPlan(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


# Statuses that mirror a paid plan and are never metered
PAID_STATUSES = frozenset({
    SubscriptionStatus.MONTHLY,
    SubscriptionStatus.YEARLY,
    SubscriptionStatus.LIFETIME,
})

# Provider subscription statuses that override the plan-mirrored status
TERMINAL_PROVIDER_STATUSES = frozenset({
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.UNPAID,
})


def status_for_plan(plan: SubscriptionPlan) -> SubscriptionStatus:
    """Paid statuses mirror the plan one-to-one."""
    return SubscriptionStatus(plan.value)


def parse_plan(value: Optional[str]) -> Optional[SubscriptionPlan]:
    """Return the plan for a raw string, or None for empty/unknown values."""
    if not value:
        return None
    try:
        return SubscriptionPlan(str(value).strip().lower())
    except ValueError:
        return None


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class EventLogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    PROCESSING = "processing"


class EventSource(str, Enum):
    STRIPE_WEBHOOK = "stripe_webhook"
    API = "api"
    SYSTEM = "system"
    ADMIN = "admin"
