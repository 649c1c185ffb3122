from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.models.billing import EventLogStatus, EventSource, ensure_utc


class EventLog(BaseModel):
    """Audit record of one processing attempt (webhook, API or admin)."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    event_type: str
    source: EventSource = EventSource.SYSTEM
    status: EventLogStatus = EventLogStatus.PENDING
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    stripe_event_id: Optional[str] = None
    stripe_session_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    action: Optional[str] = None
    result: Optional[str] = None
    event_data: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)
