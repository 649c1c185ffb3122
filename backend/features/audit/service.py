import logging
from typing import Any, Dict, List, Optional

from backend.core.errors import PersistenceError
from backend.core.logging import _safe_truncate
from backend.models.billing import EventLogStatus, EventSource, utc_now
from backend.models.event_log import EventLog
from backend.models.user import User

logger = logging.getLogger(__name__)

# Per string leaf; the payload keeps its shape
PAYLOAD_TRUNCATE = 2000


def _structured(value: Any) -> Any:
    """JSON-safe copy of a payload with long strings cut."""
    if isinstance(value, dict):
        return {str(k): _structured(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_structured(v) for v in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return _safe_truncate(value, PAYLOAD_TRUNCATE)


def _safe_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not payload:
        return {}
    return _structured(payload)


class EventAuditLog:
    """Append-only audit trail over the event_logs table.

    Every webhook processing attempt is recorded once via ``record``.
    API and admin operations use ``record_action``. A failed write never
    propagates: the entry is logged and kept in ``pending``.
    """

    def __init__(self, store):
        self._store = store
        self.pending: List[EventLog] = []

    def _append(self, entry: EventLog) -> Optional[EventLog]:
        try:
            return self._store.append_event_log(entry)
        except PersistenceError as exc:
            logger.error(
                "Audit write failed",
                extra={
                    "event_type": entry.event_type,
                    "stripe_event_id": entry.stripe_event_id,
                    "error_message": str(exc),
                },
            )
            self.pending.append(entry)
            return None

    def record(self, event, outcome, source: EventSource = EventSource.STRIPE_WEBHOOK) -> Optional[EventLog]:
        """Record the outcome of reconciling one canonical event."""
        entry = EventLog(
            event_type=event.kind.value,
            source=source,
            status=outcome.status,
            user_id=outcome.user_id,
            user_email=outcome.user_email or event.customer_email,
            stripe_event_id=event.event_id or None,
            stripe_session_id=event.session_id,
            stripe_customer_id=event.customer_id,
            action=outcome.action,
            result=outcome.result,
            event_data={
                "provider_type": event.provider_type,
                "payment_id": outcome.payment_id,
                "object": _safe_payload(event.payload),
            },
            error_message=outcome.error,
            error_detail=outcome.error_detail,
            created_at=utc_now(),
        )
        return self._append(entry)

    def record_action(
        self,
        *,
        event_type: str,
        source: EventSource,
        status: EventLogStatus,
        action: str,
        result: Optional[str] = None,
        user: Optional[User] = None,
        event_data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[EventLog]:
        """Record a non-webhook operation (metered API, admin override...)."""
        entry = EventLog(
            event_type=event_type,
            source=source,
            status=status,
            user_id=user.user_id if user else None,
            user_email=user.email if user else None,
            stripe_customer_id=user.stripe_customer_id if user else None,
            action=action,
            result=result,
            event_data=_safe_payload(event_data),
            error_message=error,
            created_at=utc_now(),
        )
        return self._append(entry)
