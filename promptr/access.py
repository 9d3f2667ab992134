"""Local subscription records: lookups, insert-or-get and status updates.

Every mutation commits on its own; callers never hold a transaction open
across a payment-provider call.
"""

from typing import Optional
import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import UserAccess, STATUSES, TRIALING, INACTIVE

logger = logging.getLogger("promptr.access")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def new_access_token() -> str:
    return str(uuid.uuid4())


def mask_token(token: Optional[str]) -> str:
    if not token:
        return ""
    return token[:8] + "..."


def get_by_email(db: Session, email: str) -> Optional[UserAccess]:
    return db.query(UserAccess).filter(UserAccess.email == normalize_email(email)).first()


def get_by_token(db: Session, token: str) -> Optional[UserAccess]:
    return db.query(UserAccess).filter(UserAccess.access_token == token).first()


def get_by_customer(db: Session, customer_id: str) -> Optional[UserAccess]:
    return db.query(UserAccess).filter(UserAccess.stripe_customer_id == customer_id).first()


def create_or_get(db: Session, email: str, status: str = TRIALING,
                  stripe_customer_id: Optional[str] = None) -> tuple:
    """Insert a record for ``email`` or return the one that already exists.

    Returns ``(record, created)``. A concurrent insert of the same email
    loses on the unique constraint and falls back to reading the winner.
    """
    email = normalize_email(email)
    existing = get_by_email(db, email)
    if existing:
        return existing, False
    record = UserAccess(
        email=email,
        access_token=new_access_token(),
        stripe_customer_id=stripe_customer_id,
        status=status,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_by_email(db, email)
        if winner is None:
            raise
        logger.info("Concurrent insert for %s, using existing record", email)
        return winner, False
    db.refresh(record)
    return record, True


def upsert_checkout(db: Session, email: str, customer_id: str) -> tuple:
    """Apply a completed checkout: link the customer and start the trial."""
    record, created = create_or_get(db, email, status=TRIALING, stripe_customer_id=customer_id)
    if not created and (record.stripe_customer_id != customer_id or record.status != TRIALING):
        record.stripe_customer_id = customer_id
        record.status = TRIALING
        db.commit()
        db.refresh(record)
    return record, created


def set_status(db: Session, record: UserAccess, status: str) -> UserAccess:
    if status not in STATUSES:
        raise ValueError(f"Unknown status: {status}")
    if record.status != status:
        record.status = status
        db.commit()
        db.refresh(record)
    return record


def set_status_for_customer(db: Session, customer_id: str, status: str) -> list:
    """Update every record linked to ``customer_id``; empty when unmatched."""
    if status not in STATUSES:
        raise ValueError(f"Unknown status: {status}")
    records = db.query(UserAccess).filter(UserAccess.stripe_customer_id == customer_id).all()
    changed = [r for r in records if r.status != status]
    for record in changed:
        record.status = status
    if changed:
        db.commit()
    return records


def scrub_customer(db: Session, record: UserAccess, status: Optional[str] = None) -> UserAccess:
    """Forget an orphaned customer id, optionally changing the status too."""
    logger.info("Cleaning up orphaned customer ID %s for %s", record.stripe_customer_id, record.email)
    record.stripe_customer_id = None
    if status is not None:
        record.status = status
    db.commit()
    db.refresh(record)
    return record


def deactivate(db: Session, record: UserAccess) -> UserAccess:
    return set_status(db, record, INACTIVE)


def delete_by_email(db: Session, email: str) -> bool:
    deleted = db.query(UserAccess).filter(UserAccess.email == normalize_email(email)).delete()
    db.commit()
    return bool(deleted)
