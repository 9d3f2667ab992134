from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from .config import Settings, get_settings
from .db import init_db
from .schemas import error_messages
from .security import CORS_ALLOW_HEADERS, SECURITY_HEADERS, envelope
from . import accounts, auth, billing, payments, tokens, webhooks

logger = logging.getLogger("promptr")

ERROR_CODES = {
    400: "bad_request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    429: "rate_limited",
}


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    payments.configure(settings)

    app = FastAPI(title="Promptr")

    # unhandled errors become the 500 envelope here, inside CORS
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = envelope(500, "internal_error", "An unexpected error occurred")
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)
        return response

    # outermost middleware; wildcard in development, the site's own origins in production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.is_production else ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
        max_age=86400,
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            error = detail.get("error") or ERROR_CODES.get(exc.status_code, "error")
            message = detail.get("message") or error
        else:
            error = ERROR_CODES.get(exc.status_code, "error")
            message = str(detail)
        return envelope(exc.status_code, error, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return envelope(400, "validation_failed", "Invalid request. Please check your input.",
                        details=error_messages(exc))

    @app.get("/health")
    def health():
        return JSONResponse({"ok": True})

    app.include_router(billing.router)
    app.include_router(webhooks.router)
    app.include_router(tokens.router)
    app.include_router(auth.router)
    app.include_router(accounts.router)
    return app


init_db()
app = create_app()
