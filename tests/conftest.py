import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Tuple
from unittest.mock import MagicMock

import mongomock
import pytest
from fastapi.testclient import TestClient

from assistant import EventAssistant
from config import Settings
from database import DocumentStore
from main import create_app
from payments import PaymentGateway
from rate_limit import RateLimiter
from schemas import Event, Subscription, UserProfile
from services import Services

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def store() -> DocumentStore:
    """A fresh in-memory database per test."""
    return DocumentStore(mongomock.MongoClient()["eventwise_test"])


@pytest.fixture
def services(store: DocumentStore) -> Services:
    return Services(store)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="mongodb://localhost:27017",
        database_name="eventwise_test",
        openai_api_key="sk-test",
        stripe_secret_key="sk_test_123",
        stripe_publishable_key="pk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        plan_price_ids={"starter": "price_starter", "professional": "price_pro", "enterprise": "price_ent"},
        app_url="http://localhost:9002",
    )


@pytest.fixture
def gateway(settings: Settings) -> PaymentGateway:
    return PaymentGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)


@pytest.fixture
def openai_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def assistant(openai_client: MagicMock, services: Services) -> EventAssistant:
    return EventAssistant(openai_client, services)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(max_requests=1000, window_seconds=60)


@pytest.fixture
def client(
    settings: Settings,
    store: DocumentStore,
    gateway: PaymentGateway,
    assistant: EventAssistant,
    rate_limiter: RateLimiter,
) -> Iterator[TestClient]:
    app = create_app(
        settings=settings, store=store, gateway=gateway, assistant=assistant, rate_limiter=rate_limiter
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sign() -> Callable[[dict], Tuple[str, str]]:
    """Serialise a Stripe event and build a matching ``Stripe-Signature`` header."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET) -> Tuple[str, str]:
        payload = json.dumps(event)
        timestamp = int(time.time())
        digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
        return payload, f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def organizer(services: Services) -> str:
    """An organizer on the starter plan."""
    services.users.create(
        "org_1",
        UserProfile(email="org@example.com", name="Olive Organizer", role="organizer", subscription_status="starter"),
    )
    now = datetime.now(timezone.utc)
    services.subscriptions.create(
        Subscription(
            user_id="org_1",
            plan="starter",
            stripe_subscription_id="sub_org",
            stripe_customer_id="cus_org",
            status="active",
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )
    )
    return "org_1"


@pytest.fixture
def attendee_user(services: Services) -> str:
    services.users.create("user_1", UserProfile(email="ada@example.com", name="Ada"))
    return "user_1"


@pytest.fixture
def event_id(services: Services, organizer: str) -> str:
    start = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
    return services.events.create(
        Event(
            organizer_id=organizer,
            title="Founders Summit",
            description="Two days of talks",
            start_date=start,
            end_date=start + timedelta(days=1),
        )
    )
