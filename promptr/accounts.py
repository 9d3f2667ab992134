"""Account deletion: local record, Stripe customer and Clerk identity.

Provider cleanup is best effort. Each step is reported back to the caller,
and only a failure to remove the local record is treated as an error.
"""

from typing import Optional
import logging

import stripe
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .auth import ClerkClient, ClerkError, get_clerk
from .db import get_db
from .deps import SessionGuard, session_guard
from .schemas import EmailIn
from .security import auth_operations_limiter, rate_limit
from . import access, payments

logger = logging.getLogger("promptr.accounts")

router = APIRouter(tags=["accounts"])


def delete_account(db: Session, email: str, clerk: Optional[ClerkClient] = None) -> list:
    email = access.normalize_email(email)
    steps = []
    record = access.get_by_email(db, email)

    if record is not None:
        steps.append("Found user in database")
        if record.stripe_customer_id:
            try:
                payments.purge_customer(record.stripe_customer_id)
                steps.append("Cleaned up Stripe data")
            except stripe.StripeError as e:
                logger.warning("Stripe cleanup error for %s (continuing): %s", email, e)
                steps.append("Stripe cleanup had issues (continuing)")
        else:
            steps.append("No Stripe data to clean up")
        access.delete_by_email(db, email)
        steps.append("Deleted from database")
    else:
        steps.append("No database record found")

    if clerk is None:
        steps.append("No auth provider configured")
        return steps
    try:
        users = clerk.find_users_by_email(email)
        for user in users:
            clerk.delete_user(user["id"])
        steps.append("Deleted auth user" if users else "No auth user to clean up")
    except ClerkError as e:
        logger.warning("Auth cleanup error for %s (continuing): %s", email, e)
        steps.append("Auth cleanup had issues")
    logger.info("Deletion completed for %s: %s", email, steps)
    return steps


@router.post("/user-self-deletion", dependencies=[Depends(rate_limit(auth_operations_limiter))])
def user_self_deletion(payload: EmailIn, db: Session = Depends(get_db),
                       guard: SessionGuard = Depends(session_guard)):
    guard.ensure_owns(payload.email)
    logger.info("Starting deletion for %s", payload.email)
    steps = delete_account(db, payload.email, guard.clerk)
    return {
        "success": True,
        "message": f"Account for {payload.email} has been deleted.",
        "steps": steps,
    }
