"""Stripe calls shared by checkout, subscription management and deletion."""

from typing import Optional
import datetime as dt
import logging

import stripe

from .config import Settings

logger = logging.getLogger("promptr.payments")

LIVE_STATUSES = ("active", "trialing")


def configure(settings: Settings) -> None:
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key


def is_resource_missing(err: Exception) -> bool:
    """True when Stripe reports the referenced object no longer exists."""
    return isinstance(err, stripe.StripeError) and getattr(err, "code", None) == "resource_missing"


def field(obj, key, default=None):
    """Read a key from a Stripe object or plain dict, tolerating absent keys."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def object_id(value) -> Optional[str]:
    """Expandable Stripe references arrive either as an id or an object."""
    if value is None or isinstance(value, str):
        return value or None
    return field(value, "id")


def to_iso(timestamp) -> Optional[str]:
    if not timestamp:
        return None
    return dt.datetime.fromtimestamp(int(timestamp), tz=dt.timezone.utc).isoformat()


def list_subscriptions(customer_id: str, limit: int = 10) -> list:
    result = stripe.Subscription.list(customer=customer_id, status="all", limit=limit)
    return list(field(result, "data", []))


def find_live_subscription(customer_id: str):
    for sub in list_subscriptions(customer_id):
        if field(sub, "status") in LIVE_STATUSES:
            return sub
    return None


def create_checkout_session(settings: Settings, email: str):
    site = settings.site_url.rstrip("/")
    return stripe.checkout.Session.create(
        mode="subscription",
        payment_method_types=["card"],
        payment_method_collection="always",
        customer_email=email,
        line_items=[{"price": settings.stripe_price_id, "quantity": 1}],
        subscription_data={"trial_period_days": settings.trial_period_days},
        success_url=site + "/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url=site + "/?canceled=true",
    )


def create_portal_session(customer_id: str, return_url: str):
    return stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)


def cancel_now(subscription_id: str):
    return stripe.Subscription.cancel(subscription_id)


def cancel_at_period_end(subscription_id: str):
    return stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)


def purge_customer(customer_id: str) -> list:
    """Cancel live subscriptions, detach payment methods and delete the customer.

    Returns the ids of the objects touched, for logging.
    """
    touched = []
    for sub in list_subscriptions(customer_id, limit=100):
        if field(sub, "status") in LIVE_STATUSES:
            cancel_now(field(sub, "id"))
            touched.append(field(sub, "id"))
    methods = stripe.PaymentMethod.list(customer=customer_id, limit=100)
    for method in field(methods, "data", []):
        stripe.PaymentMethod.detach(field(method, "id"))
        touched.append(field(method, "id"))
    stripe.Customer.delete(customer_id)
    touched.append(customer_id)
    logger.info("Purged Stripe customer %s (%d objects)", customer_id, len(touched))
    return touched
