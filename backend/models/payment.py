"""
Payment ledger entry.

One row per completed or failed payment outcome. Entries are immutable
after insert except for the registration-key-sent pair.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.models.billing import (
    PaymentStatus,
    PaymentType,
    SubscriptionPlan,
    ensure_utc,
)


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_id: str
    user_id: str
    user_email: str
    amount: int  # minor currency units
    currency: str = "usd"
    status: PaymentStatus = PaymentStatus.PENDING
    payment_type: PaymentType = PaymentType.SUBSCRIPTION
    subscription_plan: Optional[SubscriptionPlan] = None
    purchase_date: datetime

    stripe_payment_intent_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    stripe_event_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    registration_key: Optional[str] = None
    registration_key_sent: bool = False
    registration_key_sent_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("purchase_date", "registration_key_sent_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()
