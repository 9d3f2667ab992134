"""Access tokens for the editor extension.

Validation answers 200 with ``access: false`` for unknown tokens, the same
body an inactive subscription gets, so callers cannot learn which tokens
exist.
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import get_db
from .models import UserAccess
from .deps import SessionGuard, session_guard
from .schemas import EmailIn, TokenIn
from .security import auth_operations_limiter, rate_limit, read_json, token_validation_limiter
from . import access

logger = logging.getLogger("promptr.tokens")

router = APIRouter(tags=["tokens"])

NO_TOKEN_MESSAGE = "No access token found for this email. Please complete your purchase first."
NO_TOKEN_SUGGESTION = "If you recently completed payment, please try again in a few minutes or contact support."


@router.post("/get-user-token", dependencies=[Depends(rate_limit(auth_operations_limiter))])
def get_user_token(payload: EmailIn, db: Session = Depends(get_db),
                   guard: SessionGuard = Depends(session_guard)):
    guard.ensure_owns(payload.email)
    record = access.get_by_email(db, payload.email)
    if record is not None:
        return {"success": True, "token": record.access_token, "status": record.status}

    logger.info("User not found: %s, attempting auto-creation", payload.email)
    try:
        record, created = access.create_or_get(db, payload.email)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to auto-create user %s", payload.email)
        return JSONResponse(
            {"success": False, "message": NO_TOKEN_MESSAGE, "suggestion": NO_TOKEN_SUGGESTION},
            status_code=404,
        )
    logger.info("Auto-created user %s with token %s", record.email, access.mask_token(record.access_token))
    body = {"success": True, "token": record.access_token, "status": record.status}
    if created:
        body["auto_created"] = True
    return body


def _no_access(status: int = 200) -> JSONResponse:
    return JSONResponse({"access": False}, status_code=status)


@router.post("/validate-token", dependencies=[Depends(rate_limit(token_validation_limiter))])
async def validate_token(request: Request, db: Session = Depends(get_db)):
    body, err = await read_json(request)
    if err:
        logger.info("Invalid token request body: %s", err)
        return _no_access(413 if err == "payload_too_large" else 400)
    try:
        token = TokenIn.model_validate(body).token
    except ValidationError:
        logger.info("Missing or malformed token")
        return _no_access(400)

    try:
        record = access.get_by_token(db, token)
    except SQLAlchemyError:
        logger.exception("Database error during token lookup")
        return _no_access(500)

    if record is None:
        logger.info("Token %s not found", access.mask_token(token))
        return _no_access()
    logger.info("Token validation %s (status: %s)", "granted" if record.has_access else "denied", record.status)
    return {"access": record.has_access}


def _check_result(record: Optional[UserAccess]) -> dict:
    if record is None:
        return {"valid": False, "message": "Invalid promptr token"}
    if not record.has_access:
        return {
            "valid": False,
            "status": record.status,
            "email": record.email,
            "message": f"Subscription is {record.status}. Please update your payment method.",
        }
    return {
        "valid": True,
        "status": record.status,
        "email": record.email,
        "message": f"Access granted for {record.status} subscription",
        # tokens never expire; the subscription behind them does
        "expires_at": None,
    }


@router.api_route(
    "/promptr-token-check",
    methods=["GET", "POST"],
    dependencies=[Depends(rate_limit(token_validation_limiter))],
)
async def promptr_token_check(request: Request, db: Session = Depends(get_db)):
    if request.method == "POST":
        body, err = await read_json(request)
        if err:
            return JSONResponse({"valid": False, "message": "Invalid request body"}, status_code=400)
        token = body.get("promptr_token")
    else:
        token = request.query_params.get("promptr_token")

    if not token or not isinstance(token, str):
        return JSONResponse({"valid": False, "message": "Missing promptr_token"}, status_code=400)

    logger.info("Promptr token validation request for %s", access.mask_token(token))
    try:
        record = access.get_by_token(db, token.strip().lower())
    except SQLAlchemyError:
        logger.exception("Promptr token validation error")
        return JSONResponse({"valid": False, "message": "Internal server error"}, status_code=500)
    return _check_result(record)
