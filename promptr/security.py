"""Request gating shared by every route: rate limits, origins, envelopes.

The rate limiter is an in-memory fixed window per client key. Counters
live in the process, so each running instance enforces its own budget.
"""

from dataclasses import dataclass
from typing import Callable, Optional
import datetime as dt
import json
import logging
import math
import threading
import time

from fastapi import Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Settings, get_settings

logger = logging.getLogger("promptr.security")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type", "stripe-signature"]


def envelope(status: int, /, error: str, message: str, headers: Optional[dict] = None, **extra) -> JSONResponse:
    """Standard error body: ``{success: false, error, message, timestamp}``."""
    body = {
        "success": False,
        "error": error,
        "message": message,
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
    }
    body.update(extra)
    return JSONResponse(body, status_code=status, headers=headers)


MAX_BODY_SIZE = 4096


async def read_json(request: Request, max_size: int = MAX_BODY_SIZE):
    """Read a JSON object body. Returns ``(dict, error)``, error being a short code."""
    raw = await request.body()
    if len(raw) > max_size:
        return None, "payload_too_large"
    if not raw:
        return {}, None
    try:
        body = json.loads(raw)
    except ValueError:
        return None, "invalid_body"
    if not isinstance(body, dict):
        return None, "invalid_body"
    return body, None


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.split(",")[0].strip():
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header, "").strip()
        if value:
            return value
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def headers(self, now: float) -> dict:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, math.ceil(self.reset_at - now)))
        return headers


class RateLimiter:
    SWEEP_INTERVAL = 300

    def __init__(self, name: str, max_requests: int, window_seconds: int = 60,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._store = {}  # key -> [count, reset_at]
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.SWEEP_INTERVAL:
            return
        self._last_sweep = now
        expired = [k for k, (_, reset_at) in self._store.items() if reset_at <= now]
        for k in expired:
            del self._store[k]

    def check(self, key: str) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            self._sweep(now)
            entry = self._store.get(key)
            if entry is None or entry[1] <= now:
                entry = [0, now + self.window_seconds]
                self._store[key] = entry
            entry[0] += 1
            count, reset_at = entry
        if count > self.max_requests:
            return RateLimitResult(False, self.max_requests, 0, reset_at)
        return RateLimitResult(True, self.max_requests, self.max_requests - count, reset_at)

    def reset(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


# per-minute budgets by endpoint class
token_validation_limiter = RateLimiter("token_validation", 30)
api_general_limiter = RateLimiter("api_general", 60)
webhooks_limiter = RateLimiter("webhooks", 200)
auth_operations_limiter = RateLimiter("auth_operations", 10)

ALL_LIMITERS = (token_validation_limiter, api_general_limiter, webhooks_limiter, auth_operations_limiter)


def rate_limit(limiter: RateLimiter):
    """Dependency factory rejecting over-budget clients with 429."""
    def dependency(request: Request) -> RateLimitResult:
        result = limiter.check(client_key(request))
        if not result.allowed:
            logger.warning("Rate limit exceeded on %s for %s", limiter.name, client_key(request))
            raise HTTPException(
                status_code=429,
                detail={"error": "rate_limited", "message": "Too many requests. Please try again later."},
                headers=result.headers(limiter.clock()),
            )
        return result
    return dependency


def origin_allowed(origin: Optional[str], settings: Settings) -> bool:
    if not settings.is_production:
        return True
    if not origin:
        return False
    return origin.rstrip("/") in settings.allowed_origins


def require_valid_origin(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not origin_allowed(request.headers.get("origin"), settings):
        raise HTTPException(
            status_code=403,
            detail={"error": "origin_not_allowed", "message": "Request origin is not allowed"},
        )
