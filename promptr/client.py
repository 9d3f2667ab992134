"""HTTP client for the Promptr API, used by the dashboard tooling and the
editor extension.

Failed calls are classified into an ``ApiError``, retried with exponential
backoff when the class is retryable, and surfaced to the user through a
``NotificationCenter``.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

logger = logging.getLogger("promptr.client")

NETWORK = "NETWORK"
VALIDATION = "VALIDATION"
AUTHENTICATION = "AUTHENTICATION"
AUTHORIZATION = "AUTHORIZATION"
SERVER = "SERVER"
UNKNOWN = "UNKNOWN"

ERROR_TITLES = {
    NETWORK: "Connection Error",
    VALIDATION: "Invalid Request",
    AUTHENTICATION: "Authentication Required",
    AUTHORIZATION: "Access Denied",
    SERVER: "Server Error",
}


@dataclass(frozen=True)
class ApiError:
    type: str
    message: str
    retryable: bool
    details: Optional[str] = None


class PromptrApiError(Exception):
    """Raised when a call fails after retries. Carries the classified error."""

    def __init__(self, error: ApiError, status: Optional[int] = None, body: Any = None):
        super().__init__(error.message)
        self.error = error
        self.status = status
        self.body = body


class HTTPStatusFailure(Exception):
    def __init__(self, status: int, message: str, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


def classify_status(status: int, details: Optional[str] = None) -> ApiError:
    if status == 400:
        return ApiError(VALIDATION, "Invalid request. Please check your input and try again.", False, details)
    if status == 401:
        return ApiError(AUTHENTICATION, "Please sign in to continue.", False, details)
    if status == 403:
        return ApiError(AUTHORIZATION, "You don't have permission to access this resource.", False, details)
    if status == 404:
        return ApiError(VALIDATION, "The requested resource was not found.", False, details)
    if status == 429:
        return ApiError(SERVER, "Too many requests. Please wait a moment and try again.", True, details)
    if status in (500, 502, 503, 504):
        return ApiError(SERVER, "Server is temporarily unavailable. Please try again in a moment.", True, details)
    return ApiError(UNKNOWN, "An unexpected error occurred. Please try again.", True, details)


def classify_error(exc: BaseException) -> ApiError:
    if isinstance(exc, HTTPStatusFailure):
        return classify_status(exc.status, str(exc))
    if isinstance(exc, httpx.TransportError):
        return ApiError(NETWORK, "Unable to connect to server. Please check your internet connection.", True, str(exc))
    return ApiError(UNKNOWN, str(exc) or "An unexpected error occurred. Please try again.", True)


@dataclass
class Notification:
    id: int
    type: str
    title: str
    message: str
    duration: float = 5.0
    persistent: bool = False
    created_at: float = field(default_factory=time.monotonic)


class NotificationCenter:
    """Keeps user-facing notifications and fans them out to subscribers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._ids = itertools.count(1)
        self._subscribers: list = []
        self.notifications: list = []

    def subscribe(self, callback: Callable[[list], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _publish(self):
        snapshot = list(self.notifications)
        for callback in list(self._subscribers):
            callback(snapshot)

    def add(self, type: str, title: str, message: str, duration: float = 5.0,
            persistent: bool = False) -> Notification:
        note = Notification(next(self._ids), type, title, message, duration, persistent, self._clock())
        self.notifications.append(note)
        self._publish()
        return note

    def remove(self, note_id: int):
        self.notifications = [n for n in self.notifications if n.id != note_id]
        self._publish()

    def clear(self):
        self.notifications = []
        self._publish()

    def expire(self):
        """Drop non-persistent notifications whose duration has elapsed."""
        now = self._clock()
        kept = [n for n in self.notifications if n.persistent or now - n.created_at < n.duration]
        if len(kept) != len(self.notifications):
            self.notifications = kept
            self._publish()

    def error(self, err: ApiError) -> Notification:
        return self.add(
            "error",
            ERROR_TITLES.get(err.type, "Error"),
            err.message,
            duration=7.0 if err.retryable else 5.0,
            persistent=err.type == AUTHENTICATION,
        )

    def success(self, message: str, title: str = "Success") -> Notification:
        return self.add("success", title, message, duration=4.0)

    def warning(self, message: str, title: str = "Warning") -> Notification:
        return self.add("warning", title, message, duration=6.0)

    def info(self, message: str, title: str = "Info") -> Notification:
        return self.add("info", title, message, duration=5.0)


def retry_call(call: Callable[[], Any], max_retries: int = 3, delay: float = 1.0,
               context: str = "API", sleep: Callable[[float], None] = time.sleep) -> Any:
    """Run ``call``, retrying retryable failures with delays of delay * 2**n."""
    for attempt in range(1, max_retries + 1):
        try:
            return call()
        except Exception as exc:
            err = classify_error(exc)
            if not err.retryable or attempt == max_retries:
                raise
            wait = delay * 2 ** (attempt - 1)
            logger.warning("[%s] Attempt %d failed (%s), retrying in %.1fs", context, attempt, err.type, wait)
            sleep(wait)


def _error_details(resp: httpx.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or None
    if isinstance(data, dict):
        return data.get("message") or data.get("error")
    return None


class PromptrClient:
    def __init__(self, base_url: str, notifications: Optional[NotificationCenter] = None,
                 bearer_token: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None,
                 max_retries: int = 3, delay: float = 1.0, timeout: float = 10.0,
                 sleep: Callable[[float], None] = time.sleep):
        headers = {"Content-Type": "application/json"}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self.notifications = notifications or NotificationCenter()
        self.max_retries = max_retries
        self.delay = delay
        self._sleep = sleep
        self._http = httpx.Client(base_url=base_url.rstrip("/"), headers=headers,
                                  timeout=timeout, transport=transport)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def post(self, path: str, payload: dict, context: Optional[str] = None,
             ok_statuses: tuple = ()) -> dict:
        """POST JSON and return the decoded body.

        Statuses in ``ok_statuses`` are returned instead of raised.
        """
        context = context or path

        def attempt():
            resp = self._http.post(path, json=payload)
            if resp.status_code >= 400 and resp.status_code not in ok_statuses:
                raise HTTPStatusFailure(resp.status_code, _error_details(resp) or resp.reason_phrase, resp)
            return resp.json()

        try:
            return retry_call(attempt, self.max_retries, self.delay, context, self._sleep)
        except Exception as exc:
            err = classify_error(exc)
            logger.error("[%s] %s: %s", context, err.type, err.message)
            self.notifications.error(err)
            status = exc.status if isinstance(exc, HTTPStatusFailure) else None
            body = None
            if isinstance(exc, HTTPStatusFailure):
                try:
                    body = exc.body.json()
                except ValueError:
                    body = None
            raise PromptrApiError(err, status, body) from exc

    def create_checkout_session(self, email: str) -> str:
        return self.post("/create-checkout-session", {"email": email}, "checkout")["url"]

    def manage_subscription(self, action: str, email: str) -> dict:
        return self.post("/manage-subscription", {"action": action, "email": email}, action)

    def get_subscription_status(self, email: str) -> dict:
        return self.manage_subscription("get_subscription_status", email)["subscription"]

    def open_billing_portal(self, email: str) -> str:
        return self.manage_subscription("create_customer_portal", email)["url"]

    def cancel_subscription(self, email: str) -> str:
        message = self.manage_subscription("cancel_subscription", email)["message"]
        self.notifications.success(message)
        return message

    def delete_account(self, email: str) -> dict:
        result = self.manage_subscription("delete_account", email)
        self.notifications.success(result.get("message", "Account deleted"))
        return result

    def get_user_token(self, email: str) -> dict:
        return self.post("/get-user-token", {"email": email}, "get-user-token")

    def validate_token(self, token: str) -> bool:
        body = self.post("/validate-token", {"token": token}, "validate-token", ok_statuses=(400,))
        return bool(body.get("access"))

    def check_access(self, token: Optional[str]) -> bool:
        """Gate an extension command on the stored access token."""
        if not token:
            self.notifications.warning("Enter your Promptr access token to continue.", "Access Token Required")
            return False
        if not self.validate_token(token):
            self.notifications.warning(
                "Your subscription is not active. Renew it from your account page.", "Access Denied")
            return False
        return True
