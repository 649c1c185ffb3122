"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Handles webhook signature verification and subscription lookups.
"""
import json
from typing import Dict, Any, Optional

import stripe

from backend.core.config import settings
from backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """Verify Stripe webhook signature and return the event payload."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        # Signature checked; hand the plain JSON to normalization
        return json.loads(body)

    def get_subscription_interval(self, subscription_id: str) -> Optional[str]:
        """Read the first line item's recurring interval."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
            items = subscription["items"]["data"]
            if not items:
                return None
            return items[0]["price"]["recurring"]["interval"]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        except (KeyError, IndexError, TypeError) as e:
            raise BillingProviderError(f"Stripe subscription has no recurring price: {e}")

    def ensure_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """Create Stripe customer for user."""
        customer_data: Dict[str, Any] = {
            "email": email,
            "metadata": {"userId": user_id},
        }
        if name:
            customer_data["name"] = name
        try:
            customer = stripe.Customer.create(**customer_data)
            return customer["id"]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode=mode,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
            return {"id": session["id"], "url": session["url"]}
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e}")
        return json.loads(str(session))

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")
