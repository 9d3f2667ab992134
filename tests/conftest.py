"""Shared fixtures for Promptr tests."""

import hashlib
import hmac
import json
import os
import time
from typing import Iterator

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "development"
for _name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "STRIPE_PRICE_ID",
              "CLERK_SECRET_KEY", "CLERK_JWT_KEY", "CLERK_AUTHORIZED_PARTIES"):
    os.environ.pop(_name, None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from promptr.auth import get_clerk
from promptr.config import Settings, get_settings
from promptr.db import get_db
from promptr.main import create_app
from promptr.models import Base, UserAccess
from promptr.security import ALL_LIMITERS
from promptr import access

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    for limiter in ALL_LIMITERS:
        limiter.reset()
    yield
    for limiter in ALL_LIMITERS:
        limiter.reset()


@pytest.fixture()
def db() -> Iterator[Session]:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        site_url="https://promptr.dev",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id="price_test_123",
    )


def build_client(settings: Settings, db: Session, clerk=None) -> TestClient:
    app = create_app(settings)

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clerk] = lambda: clerk
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def client(settings: Settings, db: Session) -> Iterator[TestClient]:
    test_client = build_client(settings, db)
    try:
        yield test_client
    finally:
        test_client.close()


@pytest.fixture()
def make_user(db: Session):
    def _make(email="dev@promptr.io", status="trialing", customer_id=None) -> UserAccess:
        record, _ = access.create_or_get(db, email, status=status, stripe_customer_id=customer_id)
        return record
    return _make


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture()
def send_event(client: TestClient):
    """POST a correctly signed Stripe event to the webhook receiver."""
    def _send(event: dict):
        payload = json.dumps(event).encode()
        return client.post(
            "/stripe-webhooks",
            content=payload,
            headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"},
        )
    return _send
