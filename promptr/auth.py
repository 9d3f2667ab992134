"""Clerk integration: session JWT verification, Backend API calls and the
``/validate-clerk-user`` endpoint used by the editor extension.

Session tokens are verified offline with the instance's PEM public key
(``CLERK_JWT_KEY``), so no JWKS round-trip happens on the request path.
"""

from typing import Optional
from urllib.parse import quote
import logging

import httpx
import jwt
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db import get_db
from . import access
from .schemas import ClerkUserIn, error_messages
from .security import read_json, rate_limit, require_valid_origin, token_validation_limiter

logger = logging.getLogger("promptr.auth")

router = APIRouter(tags=["auth"])


class ClerkError(Exception):
    pass


class ClerkClient:
    """Thin wrapper over the Clerk Backend API (users endpoints only)."""

    def __init__(self, secret_key: str, base_url: str = "https://api.clerk.com/v1",
                 transport: Optional[httpx.BaseTransport] = None, timeout: float = 10.0):
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {secret_key}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ClerkError(f"Clerk request failed: {e}") from e
        if resp.status_code >= 400 and resp.status_code != 404:
            raise ClerkError(f"Clerk API returned {resp.status_code} for {method} {path}")
        return resp

    def get_user(self, user_id: str) -> Optional[dict]:
        resp = self._request("GET", f"/users/{quote(user_id, safe='')}")
        if resp.status_code == 404:
            return None
        return resp.json()

    def find_users_by_email(self, email: str) -> list:
        resp = self._request("GET", "/users", params={"email_address": email})
        if resp.status_code == 404:
            return []
        data = resp.json()
        # the list endpoint answers with a bare array; tolerate the paginated shape too
        return data.get("data", []) if isinstance(data, dict) else data

    def delete_user(self, user_id: str) -> bool:
        resp = self._request("DELETE", f"/users/{quote(user_id, safe='')}")
        return resp.status_code != 404

    def primary_email(self, user_id: str) -> Optional[str]:
        user = self.get_user(user_id)
        if not user:
            return None
        return primary_email_of(user)

    def close(self):
        self._client.close()


def primary_email_of(user: dict) -> Optional[str]:
    primary_id = user.get("primary_email_address_id")
    addresses = user.get("email_addresses") or []
    for addr in addresses:
        if addr.get("id") == primary_id and addr.get("email_address"):
            return access.normalize_email(addr["email_address"])
    if addresses and addresses[0].get("email_address"):
        return access.normalize_email(addresses[0]["email_address"])
    return None


def verify_session_token(token: str, settings: Settings) -> Optional[dict]:
    """Verify a Clerk session JWT and return its claims, or None if invalid."""
    if not token or not settings.clerk_jwt_key:
        return None
    try:
        claims = jwt.decode(
            token,
            settings.clerk_jwt_key,
            algorithms=["RS256"],
            options={"verify_aud": False, "require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.debug("Session token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug("Invalid session token: %s", e)
        return None
    parties = settings.clerk_authorized_parties
    if parties and claims.get("azp") not in parties:
        logger.warning("Session token from unauthorized party %s", claims.get("azp"))
        return None
    return claims


def build_clerk_client(settings: Settings) -> Optional[ClerkClient]:
    if not settings.clerk_secret_key:
        return None
    return ClerkClient(settings.clerk_secret_key, base_url=settings.clerk_api_url)


def get_clerk(settings: Settings = Depends(get_settings)):
    client = build_clerk_client(settings)
    try:
        yield client
    finally:
        if client is not None:
            client.close()


def _deny(status: int, /, message: str, **extra) -> JSONResponse:
    return JSONResponse({"access": False, "message": message, **extra}, status_code=status)


@router.post(
    "/validate-clerk-user",
    dependencies=[Depends(rate_limit(token_validation_limiter)), Depends(require_valid_origin)],
)
async def validate_clerk_user(request: Request, db: Session = Depends(get_db),
                              clerk: Optional[ClerkClient] = Depends(get_clerk)):
    body, err = await read_json(request)
    if err:
        return _deny(413 if err == "payload_too_large" else 400, "Invalid request format")
    try:
        payload = ClerkUserIn.model_validate(body)
    except ValidationError as e:
        return _deny(400, "; ".join(error_messages(e)))

    user_id = (payload.clerk_user_id or "").strip() or None
    email = payload.email
    if not email:
        if clerk is None:
            return _deny(400, "Clerk user ID lookup is not available. Please use email.")
        try:
            email = clerk.primary_email(user_id)
        except ClerkError:
            logger.exception("Clerk lookup failed for %s", user_id)
            return _deny(500, "Internal server error")
        if not email:
            return _deny(200, "User not found. Please complete your purchase first.")

    try:
        record = access.get_by_email(db, email)
    except SQLAlchemyError:
        logger.exception("Database error during user validation")
        return _deny(500, "Internal server error")

    if record is None:
        logger.info("User validation failed: user not found (%s)", email)
        return _deny(200, "User not found. Please complete your purchase first.")

    if not record.has_access:
        logger.info("User validation failed: status %s for %s", record.status, record.email)
        return _deny(200, "Subscription is not active. Please update your payment method.",
                     status=record.status, email=record.email)

    logger.info("User validation successful: %s (%s)", record.email, record.status)
    return {"access": True, "status": record.status, "email": record.email, "user_id": user_id}
