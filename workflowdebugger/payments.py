"""Thin wrapper over the Stripe SDK: customers, checkout, portal, subscriptions, webhook signatures."""
import json
import logging

import stripe

from . import config
from .errors import ApiError

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    pass


def _stripe():
    if not config.STRIPE_SECRET_KEY:
        raise ApiError.unavailable("Stripe not configured")
    stripe.api_key = config.STRIPE_SECRET_KEY
    stripe.max_network_retries = config.STRIPE_MAX_NETWORK_RETRIES
    return stripe


def get_or_create_customer(user_id: int, email: str, name: str = None) -> str:
    client = _stripe()
    existing = client.Customer.list(email=email, limit=1)
    if existing.data:
        customer = existing.data[0]
        if not (customer.metadata or {}).get("user_id"):
            client.Customer.modify(customer.id, metadata={"user_id": str(user_id)})
        return customer.id

    customer = client.Customer.create(
        email=email,
        name=name or None,
        metadata={"user_id": str(user_id)},
    )
    logger.info("Created Stripe customer", extra={"user_id": user_id, "customer_id": customer.id})
    return customer.id


def create_checkout_session(customer_id: str, user_id: int, price_id: str,
                            success_url: str, cancel_url: str, trial_days: int = 0) -> dict:
    subscription_data = {"metadata": {"user_id": str(user_id)}}
    if trial_days:
        subscription_data["trial_period_days"] = trial_days

    session = _stripe().checkout.Session.create(
        customer=customer_id,
        mode="subscription",
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"user_id": str(user_id)},
        subscription_data=subscription_data,
        allow_promotion_codes=True,
        billing_address_collection="auto",
    )
    return {"id": session.id, "url": session.url}


def create_portal_session(customer_id: str, return_url: str) -> dict:
    session = _stripe().billing_portal.Session.create(customer=customer_id, return_url=return_url)
    return {"url": session.url}


def cancel_subscription(subscription_id: str, immediate: bool = False):
    client = _stripe()
    if immediate:
        return client.Subscription.cancel(subscription_id)
    return client.Subscription.modify(subscription_id, cancel_at_period_end=True)


def reactivate_subscription(subscription_id: str):
    return _stripe().Subscription.modify(subscription_id, cancel_at_period_end=False)


def change_subscription_plan(subscription_id: str, new_price_id: str):
    client = _stripe()
    subscription = client.Subscription.retrieve(subscription_id)
    items = subscription["items"]["data"]
    if not items:
        raise ApiError.bad_request("No subscription item found")
    return client.Subscription.modify(
        subscription_id,
        items=[{"id": items[0]["id"], "price": new_price_id}],
        proration_behavior="create_prorations",
    )


def verify_webhook(payload: bytes, signature: str) -> dict:
    """Check the Stripe-Signature header against the raw body and return the decoded event."""
    secret = config.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            body, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
        event = json.loads(body)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc
    except ValueError as exc:
        raise WebhookSignatureError("Malformed payload") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("Malformed payload")
    return event
