"""
Escalating lockout after repeated payment declines.

First decline locks the free trial for 24 hours, the second for 48 hours,
every later one for 7 days. The lockout is only consulted by the
entitlement model for non-paid users.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from backend.models.billing import EventLogStatus, EventSource, ensure_utc, utc_now
from backend.models.user import User

logger = logging.getLogger(__name__)

LOCKOUT_HOURS = {
    1: 24,
    2: 48,
}
MAX_LOCKOUT_HOURS = 24 * 7


def lockout_duration(decline_count: int) -> timedelta:
    if decline_count < 1:
        raise ValueError("decline_count must be >= 1")
    return timedelta(hours=LOCKOUT_HOURS.get(decline_count, MAX_LOCKOUT_HOURS))


def apply_decline(user: User, now: Optional[datetime] = None) -> User:
    """Return the user with the decline counted and the lockout extended."""
    current = ensure_utc(now) if now is not None else utc_now()
    decline_count = user.decline_count + 1
    return user.model_copy(update={
        "decline_count": decline_count,
        "lockout_until": current + lockout_duration(decline_count),
    })


def record_decline(store, audit, user_id: str, now: Optional[datetime] = None) -> User:
    """
    Persist a payment decline for a user.

    Args:
        store: BillingStore
        audit: EventAuditLog
        user_id: Declined user
        now: Fixed timestamp (defaults to now)

    Raises:
        NotFoundError: Unknown user
    """
    user = store.require_user(user_id)
    declined = apply_decline(user, now)
    updated = store.update_user(
        user_id,
        decline_count=declined.decline_count,
        lockout_until=declined.lockout_until,
    )

    logger.info(
        "[lockout] decline recorded",
        extra={
            "user_id": user_id,
            "decline_count": updated.decline_count,
            "lockout_until": updated.lockout_until,
        },
    )
    audit.record_action(
        event_type="payment_declined",
        source=EventSource.API,
        status=EventLogStatus.SUCCESS,
        action="apply_decline",
        result=f"Locked out until {updated.lockout_until.isoformat()} (decline #{updated.decline_count})",
        user=updated,
    )
    return updated
