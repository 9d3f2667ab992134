from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging
import stripe

from .config import Settings, get_settings
from .db import get_db
from .deps import SessionGuard, session_guard
from .models import INACTIVE
from .schemas import CheckoutIn, ManageSubscriptionIn
from .security import api_general_limiter, envelope, rate_limit
from .accounts import delete_account
from . import access, payments

logger = logging.getLogger("promptr.billing")

router = APIRouter(tags=["billing"])

TRIAL_CANCELLED = "Your trial has been cancelled"
PERIOD_END_CANCEL = "Subscription will be cancelled at the end of the billing period"


@router.post("/create-checkout-session", dependencies=[Depends(rate_limit(api_general_limiter))])
def create_checkout_session(payload: CheckoutIn, db: Session = Depends(get_db),
                            settings: Settings = Depends(get_settings)):
    record = access.get_by_email(db, payload.email)
    if record is not None and record.has_access:
        logger.info("Checkout refused for %s: already %s", payload.email, record.status)
        return envelope(
            409, "already_subscribed",
            "You already have an active subscription. Manage it from your account page.",
            status=record.status, redirect_url=settings.account_url,
        )
    if not settings.stripe_secret_key or not settings.stripe_price_id:
        return envelope(500, "configuration_error", "Stripe not configured")
    try:
        session = payments.create_checkout_session(settings, payload.email)
    except stripe.StripeError as e:
        logger.error("create-checkout-session error for %s: %s", payload.email, e)
        return envelope(502, "payment_provider_error", "Payment service temporarily unavailable")
    return {"success": True, "url": payments.field(session, "url")}


@router.post("/manage-subscription", dependencies=[Depends(rate_limit(api_general_limiter))])
def manage_subscription(payload: ManageSubscriptionIn, db: Session = Depends(get_db),
                        settings: Settings = Depends(get_settings),
                        guard: SessionGuard = Depends(session_guard)):
    guard.ensure_owns(payload.email)

    if payload.action == "delete_account":
        steps = delete_account(db, payload.email, guard.clerk)
        return {"success": True, "message": "Account successfully deleted", "steps": steps}

    record = access.get_by_email(db, payload.email)
    if record is None:
        # checkout webhook never arrived; materialize the record now
        logger.info("User not found for %s, auto-creating record", payload.email)
        try:
            record, _ = access.create_or_get(db, payload.email)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to auto-create user for %s", payload.email)
            return envelope(404, "user_not_found", "User not found")

    handler = ACTIONS[payload.action]
    return handler(db, record, settings)


def _subscription_status(db, record, settings):
    data = {
        "status": record.status,
        "plan": settings.plan_name,
        "amount": settings.plan_amount,
        "interval": settings.plan_interval,
        "trial_end": None,
        "current_period_end": None,
        "cancel_at_period_end": False,
    }
    if record.stripe_customer_id:
        try:
            subs = payments.list_subscriptions(record.stripe_customer_id, limit=1)
        except stripe.StripeError as e:
            logger.info("Stripe error for %s (using database status): %s", record.email, e)
            if payments.is_resource_missing(e):
                access.scrub_customer(db, record)
            subs = []
        if subs:
            sub = subs[0]
            remote = payments.field(sub, "status")
            data.update(
                status=remote if remote in payments.LIVE_STATUSES else INACTIVE,
                trial_end=payments.to_iso(payments.field(sub, "trial_end")),
                current_period_end=payments.to_iso(_period_end(sub)),
                cancel_at_period_end=bool(payments.field(sub, "cancel_at_period_end", False)),
            )
    return {"success": True, "subscription": data}


def _period_end(sub):
    end = payments.field(sub, "current_period_end")
    if end:
        return end
    # newer API versions moved the period onto subscription items
    items = payments.field(payments.field(sub, "items"), "data", [])
    return payments.field(items[0], "current_period_end") if items else None


def _customer_portal(db, record, settings):
    if not record.stripe_customer_id:
        return envelope(400, "no_customer", "No Stripe customer ID found")
    try:
        session = payments.create_portal_session(record.stripe_customer_id, settings.account_url)
    except stripe.StripeError as e:
        if payments.is_resource_missing(e):
            access.scrub_customer(db, record)
            return envelope(400, "customer_not_found", "Customer not found in Stripe")
        logger.error("Billing portal error for %s: %s", record.email, e)
        return envelope(502, "payment_provider_error", "Payment service temporarily unavailable")
    return {"success": True, "url": payments.field(session, "url")}


def _cancel_subscription(db, record, settings):
    if not record.stripe_customer_id:
        access.deactivate(db, record)
        return {"success": True, "message": TRIAL_CANCELLED}
    try:
        sub = payments.find_live_subscription(record.stripe_customer_id)
        if sub is None:
            access.deactivate(db, record)
            return {"success": True, "message": TRIAL_CANCELLED}
        if payments.field(sub, "status") == "trialing":
            payments.cancel_now(payments.field(sub, "id"))
            access.deactivate(db, record)
            return {"success": True, "message": TRIAL_CANCELLED}
        payments.cancel_at_period_end(payments.field(sub, "id"))
        return {"success": True, "message": PERIOD_END_CANCEL}
    except stripe.StripeError as e:
        logger.error("Stripe error during cancellation for %s: %s", record.email, e)
        if payments.is_resource_missing(e):
            access.scrub_customer(db, record, status=INACTIVE)
            return {"success": True, "message": TRIAL_CANCELLED}
        return envelope(400, "cancel_failed", "Failed to cancel subscription")


ACTIONS = {
    "get_subscription_status": _subscription_status,
    "create_customer_portal": _customer_portal,
    "cancel_subscription": _cancel_subscription,
}
