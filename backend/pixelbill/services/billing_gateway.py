"""Thin wrapper over the Stripe customer/subscription/checkout/portal APIs.

Services receive a gateway instance instead of calling the ``stripe`` module
directly, so tests can hand them a fake with the same methods.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from pixelbill.core.config import settings
from pixelbill.core.errors import WebhookVerificationError
from pixelbill.schemas.events import SubscriptionSnapshot, parse_subscription

logger = logging.getLogger(__name__)


class StripeGateway:
    """Billing gateway backed by the Stripe API"""

    def __init__(self, api_key: str):
        if not api_key:
            logger.warning("Stripe secret key not configured; billing API calls will fail")
        stripe.api_key = api_key

    def create_customer(self, email: str, user_id: int) -> str:
        customer = stripe.Customer.create(email=email, metadata={"userId": str(user_id)})
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    def list_active_subscription_ids(self, customer_id: str) -> List[str]:
        subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=10)
        return [sub.id for sub in subscriptions.data]

    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        """Live subscription state, or None when Stripe no longer knows the subscription"""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.info(f"Subscription {subscription_id} does not exist in Stripe")
                return None
            raise
        return parse_subscription(subscription)

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Optional[str]:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            payment_method_types=["card"],
            billing_address_collection="auto",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        logger.info(f"Created checkout session {session.id} for customer {customer_id}")
        return session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        return session.url

    def construct_event(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict"""
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("Invalid signature") from e
        except ValueError as e:
            raise WebhookVerificationError("Invalid payload") from e
        return json.loads(payload)


_gateway: Optional[StripeGateway] = None


def get_billing_gateway() -> StripeGateway:
    """Process-wide gateway, created on first use (also the FastAPI dependency)"""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway(settings.STRIPE_SECRET_KEY)
    return _gateway
