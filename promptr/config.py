from dataclasses import dataclass, field
from functools import lru_cache
import os

from dotenv import load_dotenv
load_dotenv()


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///data/promptr.db"
    environment: str = "development"
    site_url: str = "http://localhost:5173"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_price_id: str = ""
    trial_period_days: int = 7
    plan_name: str = "Pro Plan"
    plan_amount: int = 499
    plan_interval: str = "month"
    clerk_secret_key: str = ""
    clerk_api_url: str = "https://api.clerk.com/v1"
    clerk_jwt_key: str = ""
    clerk_authorized_parties: tuple = field(default_factory=tuple)
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allowed_origins(self) -> list:
        """Origins accepted in production; the dev server ports otherwise."""
        if not self.is_production:
            return ["http://localhost:5173", "http://localhost:3000"]
        host = self.site_url.split("://", 1)[-1].rstrip("/")
        origins = [self.site_url.rstrip("/"), f"https://{host}"]
        return list(dict.fromkeys(origins))

    @property
    def account_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/account"


def load_settings() -> Settings:
    parties = tuple(p.strip() for p in _env("CLERK_AUTHORIZED_PARTIES").split(",") if p.strip())
    return Settings(
        database_url=_env("DATABASE_URL", "sqlite:///data/promptr.db"),
        environment=_env("ENVIRONMENT", "development").lower(),
        site_url=_env("SITE_URL", "http://localhost:5173"),
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        stripe_price_id=_env("STRIPE_PRICE_ID"),
        trial_period_days=_env_int("TRIAL_PERIOD_DAYS", 7),
        plan_name=_env("PLAN_NAME", "Pro Plan"),
        plan_amount=_env_int("PLAN_AMOUNT", 499),
        plan_interval=_env("PLAN_INTERVAL", "month"),
        clerk_secret_key=_env("CLERK_SECRET_KEY"),
        clerk_api_url=_env("CLERK_API_URL", "https://api.clerk.com/v1").rstrip("/"),
        # PEM keys are often stored with escaped newlines in env files
        clerk_jwt_key=_env("CLERK_JWT_KEY").replace("\\n", "\n"),
        clerk_authorized_parties=parties,
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
