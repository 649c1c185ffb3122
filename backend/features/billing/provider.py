"""
Billing provider protocol.

Defines the interface the backend needs from the payment provider (Stripe).
Business logic depends on this protocol only, so tests substitute a fake.
"""
from typing import Protocol, Dict, Any, Optional


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification
    - Customer creation
    - Checkout session creation and retrieval
    - Subscription lookups and cancellation
    """

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify webhook signature and return the event as a plain dict.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or payload malformed
        """
        ...

    def get_subscription_interval(self, subscription_id: str) -> Optional[str]:
        """
        Return the billing interval ("month", "year") of a subscription's
        first line item.

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def ensure_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """
        Create a billing customer for the user.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        """
        Create a checkout session.

        Args:
            customer_id: Provider customer ID
            price_id: Provider price ID
            mode: "payment" (one-time) or "subscription" (recurring)
            success_url: URL to redirect on success
            cancel_url: URL to redirect on cancellation
            metadata: Correlation metadata echoed back on the webhook

        Returns:
            {"id": session id, "url": checkout url}

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """
        Fetch a checkout session as a plain dict.

        Raises:
            BillingProviderError: If the session cannot be fetched
        """
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        """
        Cancel a subscription immediately.

        Raises:
            BillingProviderError: If cancellation fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Webhook authenticity failure (bad signature or payload)."""
    pass
