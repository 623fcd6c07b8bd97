"""Shared pytest fixtures for test suite"""
import base64
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List, Optional
from unittest.mock import patch

# Settings are read at import time; point them at test values first
CLERK_SIGNING_KEY = b"pixelbill-test-clerk-signing-key"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_pixelbill"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test_secret"
os.environ["CLERK_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(CLERK_SIGNING_KEY).decode()
os.environ["EXPIRY_SWEEP_ENABLED"] = "false"

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pixelbill.core.config import settings
from pixelbill.core.security import Identity, get_optional_identity
from pixelbill.db import redis as redis_module
from pixelbill.db.session import get_db
from pixelbill.main import app
from pixelbill.models import Base
from pixelbill.models.enums import EntitlementTier, SubscriptionStatus
from pixelbill.models.subscription import Subscription
from pixelbill.models.user import User
from pixelbill.schemas.events import SubscriptionSnapshot
from pixelbill.services.billing_gateway import StripeGateway, get_billing_gateway


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeGateway(StripeGateway):
    """Stripe gateway with in-memory customers and subscriptions.

    Webhook signature checking is inherited unchanged, so tests sign payloads
    the way Stripe does.
    """

    def __init__(self):
        super().__init__("sk_test_pixelbill")
        self.subscriptions: Dict[str, SubscriptionSnapshot] = {}
        self.active_by_customer: Dict[str, List[str]] = {}
        self.customers: List[str] = []
        self.checkout_calls: List[dict] = []
        self.portal_calls: List[dict] = []
        self.checkout_url: Optional[str] = "https://checkout.stripe.test/c/session_1"
        self.retrieve_errors: Dict[str, Exception] = {}

    def create_customer(self, email: str, user_id: int) -> str:
        customer_id = f"cus_test_{len(self.customers) + 1}"
        self.customers.append(customer_id)
        return customer_id

    def list_active_subscription_ids(self, customer_id: str) -> List[str]:
        return list(self.active_by_customer.get(customer_id, []))

    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        if subscription_id in self.retrieve_errors:
            raise self.retrieve_errors[subscription_id]
        return self.subscriptions.get(subscription_id)

    def create_checkout_session(self, customer_id, price_id, metadata, success_url, cancel_url):
        self.checkout_calls.append({
            "customer_id": customer_id,
            "price_id": price_id,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        return self.checkout_url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portal_calls.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/p/{customer_id}"

    def add_subscription(
        self,
        subscription_id: str,
        price_id: Optional[str],
        period_end: datetime,
        customer_id: Optional[str] = None,
        status: str = "active",
        cancel_at_period_end: bool = False
    ) -> SubscriptionSnapshot:
        snapshot = SubscriptionSnapshot(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            price_id=price_id,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
        )
        self.subscriptions[subscription_id] = snapshot
        return snapshot


class AuthState:
    """Identity returned by the overridden auth dependency"""
    identity: Optional[Identity] = None


def stripe_signature(payload: bytes, secret: str = None, timestamp: int = None) -> str:
    """Build a stripe-signature header the way Stripe signs deliveries"""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def svix_headers(payload: bytes, msg_id: str = "msg_test_1", timestamp: int = None, key: bytes = CLERK_SIGNING_KEY) -> Dict[str, str]:
    """Build the svix-* headers Clerk sends with a delivery"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + payload
    signature = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("utf-8")
    return {
        "svix-id": msg_id,
        "svix-timestamp": str(timestamp),
        "svix-signature": f"v1,{signature}",
    }


def stripe_event(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode("utf-8")


def epoch(moment: datetime) -> int:
    return int(moment.timestamp())


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No real sleeping in retry and race-recovery paths"""
    monkeypatch.setattr(settings, "USER_RACE_RETRY_DELAY", 0.0)
    monkeypatch.setattr(settings, "REFRESH_BASE_DELAY", 0.0)
    monkeypatch.setattr(settings, "REFRESH_MAX_DELAY", 0.0)


@pytest.fixture(scope="function")
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def auth_state() -> AuthState:
    return AuthState()


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, fake_gateway: FakeGateway, auth_state: AuthState) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis, fake Stripe and stubbed auth"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_optional_identity] = lambda: auth_state.identity

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """FREE user with the baseline grant"""
    user = User(clerk_id="user_test_1", email="a@x.com", tier=EntitlementTier.FREE, credits=settings.FREE_TIER_CREDITS)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def pro_user(db_session: Session) -> User:
    """PRO user with a live subscription and a bound Stripe customer"""
    user = User(
        clerk_id="user_pro_1",
        email="pro@x.com",
        stripe_customer_id="cus_pro_1",
        tier=EntitlementTier.PRO,
        credits=120,
    )
    db_session.add(user)
    db_session.commit()
    db_session.add(Subscription(
        user_id=user.id,
        stripe_subscription_id="sub_pro_1",
        stripe_price_id=settings.STRIPE_PRICE_PRO,
        current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
        status=SubscriptionStatus.ACTIVE,
    ))
    db_session.commit()
    db_session.refresh(user)
    return user
