import os

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_mock"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ.pop("SMTP_HOST", None)

import datetime as dt
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from workflowdebugger.auth import pwd_context
from workflowdebugger.db import get_db
from workflowdebugger.deps import create_access_token
from workflowdebugger.main import app
from workflowdebugger.models import Base, Subscription, User
from workflowdebugger.rate_limit import limiter

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
PASSWORD = "correct-horse-battery"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    ts = int(timestamp or time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email="ada@acme.io", name="Ada", password=PASSWORD, **fields) -> User:
    user = User(email=email, name=name, password_hash=pwd_context.hash(password), **fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_subscription(db, user, sub_id="sub_123", status="active", price_id="price_pro",
                      period_end=None, **fields) -> Subscription:
    now = dt.datetime.now(dt.timezone.utc)
    sub = Subscription(
        id=sub_id,
        user_id=user.id,
        status=status,
        price_id=price_id,
        current_period_start=now - dt.timedelta(days=20),
        current_period_end=period_end or now + dt.timedelta(days=10),
        **fields,
    )
    db.add(sub)
    db.commit()
    return sub


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def premium_headers(db, user, auth_headers):
    make_subscription(db, user)
    return auth_headers


@pytest.fixture
def post_event(client):
    """POST a correctly signed Stripe event to the webhook endpoint."""

    def _post(event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event).encode()
        return client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"},
        )

    return _post
