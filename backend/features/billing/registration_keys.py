"""
Registration keys for one-time ("lifetime") purchases.

Issuance is an explicit transform applied to a Payment before it is
written. Uniqueness is enforced by the payments.registration_key UNIQUE
constraint; a collision surfaces as ConflictError from the store and is
not retried here.
"""
import uuid

from backend.models.billing import PaymentStatus, SubscriptionPlan
from backend.models.payment import Payment

REGISTRATION_KEY_PREFIX = "LT"


def _token() -> str:
    return uuid.uuid4().hex[:8].upper()


def generate_registration_key() -> str:
    """Return a key of the form ``LT-XXXXXXXX-XXXXXXXX``."""
    return f"{REGISTRATION_KEY_PREFIX}-{_token()}-{_token()}"


def is_eligible(payment: Payment) -> bool:
    return (
        payment.subscription_plan == SubscriptionPlan.LIFETIME
        and payment.status == PaymentStatus.SUCCEEDED
        and not payment.registration_key
    )


def issue_registration_key_if_eligible(payment: Payment) -> Payment:
    """Return the payment with a fresh key when eligible, unchanged otherwise."""
    if not is_eligible(payment):
        return payment
    return payment.model_copy(update={"registration_key": generate_registration_key()})
