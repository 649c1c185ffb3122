"""
backend/features/entitlements/service.py

Entitlement model for metered actions (AI queries).

Handles:
- Whether a user may perform a metered action right now
- How many metered actions remain (or UNLIMITED for paid plans)
- Recording a metered action against the free-trial quota

Paid statuses (monthly, yearly, lifetime) are never metered. Everyone else
is gated by the decline lockout and the query quota.
"""

from datetime import datetime
from typing import Optional, Union
import logging

from backend.core.errors import QuotaExceededError
from backend.models.billing import PAID_STATUSES, SubscriptionStatus, ensure_utc, utc_now
from backend.models.user import User


logger = logging.getLogger(__name__)

UNLIMITED = "Unlimited"

Remaining = Union[int, str]


def is_paid(user: User) -> bool:
    return user.subscription_status in PAID_STATUSES


def is_locked_out(user: User, now: Optional[datetime] = None) -> bool:
    if user.lockout_until is None:
        return False
    current = ensure_utc(now) if now is not None else utc_now()
    return current < user.lockout_until


def can_perform_metered_action(user: User, now: Optional[datetime] = None) -> bool:
    if is_paid(user):
        return True
    if is_locked_out(user, now):
        return False
    return user.queries_used < user.queries_limit


def remaining_actions(user: User) -> Remaining:
    if is_paid(user):
        return UNLIMITED
    return max(0, user.queries_limit - user.queries_used)


def is_metered(user: User, meter_lapsed: bool = False) -> bool:
    """Whether a metered action counts against the user's quota.

    Only ``free_trial`` is metered by default; ``meter_lapsed`` extends
    metering to past_due/canceled/unpaid.
    """
    if user.subscription_status == SubscriptionStatus.FREE_TRIAL:
        return True
    return meter_lapsed and not is_paid(user)


def record_metered_action(user: User, meter_lapsed: bool = False) -> User:
    """Return the user with one more query used, when the user is metered."""
    if not is_metered(user, meter_lapsed):
        return user
    return user.model_copy(update={"queries_used": user.queries_used + 1})


def consume_metered_action(store, user_id: str, *, meter_lapsed: bool = False, now: Optional[datetime] = None) -> User:
    """
    Check and record one metered action for a stored user.

    Args:
        store: BillingStore
        user_id: User performing the action
        meter_lapsed: Meter non-paid statuses other than free_trial
        now: Fixed timestamp for deterministic checks

    Returns:
        The user after the action was recorded

    Raises:
        NotFoundError: Unknown user
        QuotaExceededError: Locked out or quota exhausted
    """
    user = store.require_user(user_id)

    if not can_perform_metered_action(user, now):
        logger.warning(
            "[entitlement] BLOCKED",
            extra={
                "user_id": user_id,
                "subscription_status": user.subscription_status.value,
                "queries_used": user.queries_used,
                "queries_limit": user.queries_limit,
                "lockout_until": user.lockout_until,
            },
        )
        raise QuotaExceededError("Query limit reached or account locked")

    if not is_metered(user, meter_lapsed):
        return user

    # Conditional increment: a concurrent request that used the last query wins
    if not store.increment_queries_used(user_id):
        raise QuotaExceededError("Query limit reached or account locked")

    updated = store.require_user(user_id)
    logger.info(
        "[entitlement] ALLOWED",
        extra={
            "user_id": user_id,
            "queries_used": updated.queries_used,
            "remaining": remaining_actions(updated),
        },
    )
    return updated
