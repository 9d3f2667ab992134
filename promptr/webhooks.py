"""Stripe webhook receiver.

Applies subscription lifecycle events to the local record. Every handler
sets an absolute status, so a redelivered event leaves the same end state.
A failing event is logged and acknowledged: a non-2xx answer would only make
Stripe retry the same event.
"""

import logging

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db import get_db
from .models import ACTIVE, INACTIVE
from .security import rate_limit, webhooks_limiter
from . import access
from .payments import field, object_id

logger = logging.getLogger("promptr.webhooks")

router = APIRouter(tags=["webhooks"])

MAX_PAYLOAD = 1_000_000

# remote subscription status -> local status; absent means leave unchanged
SUBSCRIPTION_STATUS_MAP = {
    "active": ACTIVE,
    "past_due": INACTIVE,
    "unpaid": INACTIVE,
    "canceled": INACTIVE,
    "incomplete_expired": INACTIVE,
    "paused": INACTIVE,
}


def _customer_status(db: Session, obj, status: str, label: str) -> None:
    customer_id = object_id(field(obj, "customer"))
    if not customer_id:
        logger.error("Missing customer in %s", label)
        return
    records = access.set_status_for_customer(db, customer_id, status)
    if not records:
        logger.warning("No local record for customer %s (%s), skipping", customer_id, label)
        return
    for record in records:
        logger.info("Set %s to %s for customer %s (%s)", record.email, status, customer_id, label)


def on_checkout_completed(db: Session, session) -> None:
    customer_id = object_id(field(session, "customer"))
    email = field(session, "customer_email") or field(field(session, "customer_details"), "email")
    if not customer_id or not email:
        logger.error("Missing customer information in checkout session %s", field(session, "id"))
        return
    record, created = access.upsert_checkout(db, email, customer_id)
    logger.info("%s user %s with trialing status", "Created" if created else "Updated", record.email)


def on_payment_succeeded(db: Session, invoice) -> None:
    _customer_status(db, invoice, ACTIVE, "invoice.payment_succeeded")


def on_payment_failed(db: Session, invoice) -> None:
    _customer_status(db, invoice, INACTIVE, "invoice.payment_failed")


def on_subscription_deleted(db: Session, subscription) -> None:
    _customer_status(db, subscription, INACTIVE, "customer.subscription.deleted")


def on_subscription_updated(db: Session, subscription) -> None:
    remote = field(subscription, "status")
    status = SUBSCRIPTION_STATUS_MAP.get(remote)
    if status is None:
        logger.info("Subscription %s is %s, local status unchanged", field(subscription, "id"), remote)
        return
    _customer_status(db, subscription, status, f"customer.subscription.updated ({remote})")


def on_informational(db: Session, obj) -> None:
    logger.info("Informational event for customer %s", object_id(field(obj, "customer")))


HANDLERS = {
    "checkout.session.completed": on_checkout_completed,
    "invoice.payment_succeeded": on_payment_succeeded,
    "invoice.payment_failed": on_payment_failed,
    "customer.subscription.deleted": on_subscription_deleted,
    "customer.subscription.updated": on_subscription_updated,
    "customer.subscription.trial_will_end": on_informational,
    "invoice.created": on_informational,
}


def handle_event(db: Session, event) -> bool:
    """Apply one verified event. Returns False when the event was skipped or failed."""
    event_type = field(event, "type", "")
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled event type: %s", event_type)
        return False
    obj = field(field(event, "data"), "object")
    try:
        handler(db, obj)
    except (SQLAlchemyError, stripe.StripeError):
        db.rollback()
        logger.exception("Failed to process %s (%s)", event_type, field(event, "id"))
        return False
    return True


@router.post("/stripe-webhooks", dependencies=[Depends(rate_limit(webhooks_limiter))])
async def stripe_webhooks(request: Request, db: Session = Depends(get_db),
                          settings: Settings = Depends(get_settings)):
    raw_body = await request.body()
    if len(raw_body) > MAX_PAYLOAD:
        return PlainTextResponse("Payload too large", status_code=413)

    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.error("Missing stripe-signature header")
        return PlainTextResponse("Missing signature", status_code=400)
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        return PlainTextResponse("Webhook not configured", status_code=500)

    try:
        event = stripe.Webhook.construct_event(raw_body, signature, settings.stripe_webhook_secret)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error("Webhook signature verification failed: %s", e)
        return PlainTextResponse("Invalid signature", status_code=400)

    logger.info("Processing webhook event %s (%s)", field(event, "type"), field(event, "id"))
    try:
        handle_event(db, event)
    except Exception:
        logger.exception("Webhook processing error")
        return PlainTextResponse("Internal server error", status_code=500)
    return PlainTextResponse("OK")
