from fastapi import Depends, HTTPException, Request
from typing import Optional
import logging

from .config import Settings, get_settings
from .auth import ClerkClient, ClerkError, get_clerk, verify_session_token
from . import access

logger = logging.getLogger("promptr.deps")


def _bearer(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header[:7].lower() == "bearer ":
        return header[7:].strip() or None
    return None


def clerk_session(request: Request, settings: Settings = Depends(get_settings)) -> Optional[dict]:
    """Claims of the caller's Clerk session, enforced only when a verification key is configured."""
    if not settings.clerk_jwt_key:
        return None
    claims = verify_session_token(_bearer(request), settings)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"error": "unauthenticated", "message": "Please sign in to continue."},
        )
    return claims


class SessionGuard:
    """Resolves the session owner lazily and checks it against a request email."""

    def __init__(self, claims: Optional[dict], clerk: Optional[ClerkClient]):
        self.claims = claims
        self.clerk = clerk

    def owner_email(self) -> Optional[str]:
        if not self.claims:
            return None
        if self.claims.get("email"):
            return access.normalize_email(self.claims["email"])
        if self.clerk is None:
            return None
        try:
            return self.clerk.primary_email(self.claims["sub"])
        except ClerkError:
            logger.exception("Could not resolve session owner %s", self.claims.get("sub"))
            return None

    def ensure_owns(self, email: str) -> None:
        if not self.claims:
            return
        owner = self.owner_email()
        if owner is not None and owner != access.normalize_email(email):
            raise HTTPException(
                status_code=403,
                detail={"error": "forbidden", "message": "You don't have permission to access this account."},
            )


def session_guard(claims: Optional[dict] = Depends(clerk_session),
                  clerk: Optional[ClerkClient] = Depends(get_clerk)) -> SessionGuard:
    return SessionGuard(claims, clerk)
