import re
from typing import Optional

from pydantic import BaseModel, EmailStr, field_validator, model_validator

ACTIONS = ("get_subscription_status", "create_customer_portal", "cancel_subscription", "delete_account")

TOKEN_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
CLERK_USER_ID_RE = re.compile(r"^user_[A-Za-z0-9]+$")


def _check_email(value):
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Email must be a string")
    value = value.strip()
    if len(value) > 254:
        raise ValueError("Email too long (max 254 characters)")
    if len(value) < 5:
        raise ValueError("Email too short (min 5 characters)")
    if ".." in value or value.startswith(".") or value.endswith("."):
        raise ValueError("Invalid email format")
    return value


def is_valid_token(token) -> bool:
    return isinstance(token, str) and len(token) == 36 and bool(TOKEN_RE.match(token))


class EmailIn(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def _shape(cls, v):
        return _check_email(v)

    @field_validator("email")
    @classmethod
    def _lower(cls, v):
        return v.lower()


class CheckoutIn(EmailIn):
    pass


class ManageSubscriptionIn(EmailIn):
    action: str

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, v):
        if not isinstance(v, str) or not v:
            raise ValueError("Action must be a string")
        v = v.strip()
        if len(v) > 50:
            raise ValueError("Action too long")
        if v not in ACTIONS:
            raise ValueError("Invalid action type")
        return v


class TokenIn(BaseModel):
    token: str

    @field_validator("token", mode="before")
    @classmethod
    def _token(cls, v):
        if not isinstance(v, str) or not v:
            raise ValueError("Token must be a string")
        v = v.strip()
        if not is_valid_token(v):
            raise ValueError("Invalid token format")
        return v.lower()


class ClerkUserIn(BaseModel):
    clerk_user_id: Optional[str] = None
    email: Optional[EmailStr] = None

    @field_validator("clerk_user_id", mode="before")
    @classmethod
    def _user_id(cls, v):
        if v is None or v == "":
            return None
        if not isinstance(v, str) or not CLERK_USER_ID_RE.match(v.strip()):
            raise ValueError("Invalid clerk_user_id format")
        return v.strip()

    @field_validator("email", mode="before")
    @classmethod
    def _shape(cls, v):
        if v is None or v == "":
            return None
        return _check_email(v)

    @field_validator("email")
    @classmethod
    def _lower(cls, v):
        return v.lower() if v else v

    @model_validator(mode="after")
    def _one_of(self):
        if not self.email and not (self.clerk_user_id or "").strip():
            raise ValueError("Either clerk_user_id or email is required")
        return self


def error_messages(exc) -> list:
    """Flatten pydantic errors into plain itemized messages."""
    messages = []
    for err in exc.errors():
        msg = str(err.get("msg", "Invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        if err.get("type") == "missing" and loc:
            msg = f"Missing required field: {loc[-1]}"
        messages.append(msg)
    return messages
