"""Stripe client for checkout, billing portal and webhook verification."""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from app.core.config import settings
from app.modules.billing.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)


# Configure Stripe API key
stripe.api_key = settings.STRIPE_SECRET_KEY


@dataclass
class StripeSession:
    """A hosted Stripe session the user is redirected to."""
    session_id: str
    url: str


class StripeClient:
    """Thin wrapper over the Stripe API calls billing needs."""

    def __init__(self):
        """Initialize Stripe client."""
        if not settings.STRIPE_SECRET_KEY:
            raise PaymentProviderError("STRIPE_SECRET_KEY is not configured")

    # ==================== Checkout Session ====================

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: dict,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> StripeSession:
        """Create a subscription-mode Checkout session.

        Args:
            price_id: Stripe price ID
            success_url: URL to redirect on success
            cancel_url: URL to redirect on cancel
            client_reference_id: Our user id, echoed back on completion
            metadata: Copied to both the session and the subscription
            customer_id: Existing Stripe customer, if any
            customer_email: Prefills a new customer when there is none

        Returns:
            StripeSession with id and redirect url
        """
        params = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "allow_promotion_codes": True,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout session failed", extra={"error": str(e)})
            raise PaymentProviderError(f"Failed to create checkout session: {e}") from e
        return StripeSession(session_id=session.id, url=session.url)

    def create_billing_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> StripeSession:
        """Create a Stripe Billing Portal session.

        Args:
            customer_id: Stripe customer ID
            return_url: URL to return to after portal
        """
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.error("Stripe portal session failed", extra={"error": str(e)})
            raise PaymentProviderError(f"Failed to create portal session: {e}") from e
        return StripeSession(session_id=session.id, url=session.url)

    # ==================== Subscriptions ====================

    def get_latest_subscription(self, customer_id: str) -> Optional[dict]:
        """Most recent subscription of a customer, in any status."""
        try:
            subscriptions = stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=1,
            )
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Failed to list subscriptions: {e}") from e
        if not subscriptions.data:
            return None
        return subscriptions.data[0]

    # ==================== Webhook Handling ====================

    @staticmethod
    def construct_webhook_event(
        payload: bytes,
        sig_header: str,
    ) -> stripe.Event:
        """Construct and verify a webhook event.

        Args:
            payload: Raw request body
            sig_header: Stripe-Signature header value

        Returns:
            Verified Stripe Event

        Raises:
            ValueError: If the payload or signature is invalid
        """
        try:
            return stripe.Webhook.construct_event(
                payload,
                sig_header,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}")


# Singleton instance
_stripe_client: Optional[StripeClient] = None


def get_stripe_client() -> StripeClient:
    """Get the Stripe client singleton."""
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client
