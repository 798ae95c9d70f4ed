"""Test configuration and fixtures."""

import hashlib
import hmac
import json
import os
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BEARER_TOKEN_SECRET", "test-bearer-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tourbook.core.config import settings
from tourbook.core.database import Base, get_db
from tourbook.core.dependencies import get_payment_gateway
from tourbook.core.exceptions import ExternalServiceError
from tourbook.models import *  # noqa: F403 - Import all models
from tourbook.models import AddOn, Departure, Tour
from tourbook.services.payment_gateway import (
    INTENT_CANCELED,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
    InvoiceInfo,
    PaymentIntentInfo,
    RefundInfo,
)
from tourbook.services.stripe_gateway import parse_webhook_event

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"

OWNER = {"user_id": "user-owner", "email": "owner@example.com", "name": "Olive Owner", "roles": []}
OTHER_USER = {"user_id": "user-other", "email": "other@example.com", "name": "Oscar Other", "roles": []}
ADMIN = {"user_id": "user-admin", "email": "admin@example.com", "name": "Ada Admin", "roles": ["ADMIN"]}


class FakePaymentGateway:
    """In-memory payment processor implementing the PaymentGateway protocol."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.webhook_secret = webhook_secret
        self.intents: dict[str, PaymentIntentInfo] = {}
        self.invoices: dict[str, InvoiceInfo] = {}
        self.refunds: list[dict[str, Any]] = []
        self.created: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.fail_with: Optional[ExternalServiceError] = None
        self._idempotent: dict[str, str] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    def _check_failure(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        payment_method_type: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentInfo:
        self._check_failure()
        if idempotency_key in self._idempotent:
            return self.intents[self._idempotent[idempotency_key]]

        intent_id = self._next_id("pi")
        intent = PaymentIntentInfo(
            id=intent_id,
            status=INTENT_REQUIRES_PAYMENT_METHOD,
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            payment_method_types=(payment_method_type,),
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self._idempotent[idempotency_key] = intent_id
        self.created.append({"id": intent_id, "amount": amount, "idempotency_key": idempotency_key})
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        self._check_failure()
        if intent_id not in self.intents:
            raise ExternalServiceError(detail=f"No such payment_intent: {intent_id}")
        return self.intents[intent_id]

    async def update_payment_intent_amount(self, intent_id: str, amount: int) -> PaymentIntentInfo:
        self._check_failure()
        self.intents[intent_id] = replace(self.intents[intent_id], amount=amount)
        return self.intents[intent_id]

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        self._check_failure()
        self.intents[intent_id] = replace(self.intents[intent_id], status=INTENT_CANCELED)
        self.cancelled.append(intent_id)
        return self.intents[intent_id]

    async def create_bank_transfer_invoice(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        days_until_due: int,
        idempotency_key: str,
    ) -> InvoiceInfo:
        self._check_failure()
        invoice_id = self._next_id("in")
        invoice = InvoiceInfo(
            id=invoice_id,
            customer_id=self._next_id("cus"),
            status="open",
            amount_due=amount,
            currency=currency,
            hosted_invoice_url=f"https://invoice.example.com/{invoice_id}",
            due_date=datetime.now(timezone.utc) + timedelta(days=days_until_due),
        )
        self.invoices[invoice_id] = invoice
        return invoice

    async def refund_payment_intent(
        self,
        *,
        intent_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> RefundInfo:
        self._check_failure()
        refund = RefundInfo(id=self._next_id("re"), status="succeeded", amount=amount)
        self.refunds.append({"intent_id": intent_id, "amount": amount, "refund_id": refund.id})
        return refund

    def parse_webhook_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        return parse_webhook_event(payload, signature, self.webhook_secret)

    # Test helpers

    def succeed(self, intent_id: str, charge_id: str = "ch_test_1") -> PaymentIntentInfo:
        """Simulate the traveler completing the payment sheet."""
        self.intents[intent_id] = replace(self.intents[intent_id], status=INTENT_SUCCEEDED, latest_charge=charge_id)
        return self.intents[intent_id]

    def set_status(self, intent_id: str, status: str) -> PaymentIntentInfo:
        self.intents[intent_id] = replace(self.intents[intent_id], status=status)
        return self.intents[intent_id]


def make_token(user: dict, secret: Optional[str] = None, expires_in: int = 3600) -> str:
    """Issue an HS256 bearer token for a test user."""
    payload = {
        "sub": user["user_id"],
        "email": user.get("email"),
        "name": user.get("name"),
        "roles": user.get("roles", []),
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(payload, secret or settings.bearer_token_secret, algorithm="HS256")


def auth_headers(user: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user)}"}


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a raw webhook body."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def webhook_body(event_type: str, intent_id: str, **fields) -> bytes:
    event = {
        "id": f"evt_{intent_id}_{event_type}",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", **fields}},
    }
    return json.dumps(event).encode("utf-8")


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def test_session(test_engine):
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def gateway():
    """In-memory payment processor."""
    return FakePaymentGateway()


@pytest.fixture
def headers_for():
    """Authorization headers for a test user."""
    return auth_headers


@pytest.fixture
def signed_event():
    """Build a webhook body and its signature headers."""
    def _build(event_type: str, intent_id: str, secret: str = WEBHOOK_SECRET, **fields):
        body = webhook_body(event_type, intent_id, **fields)
        return body, {"Stripe-Signature": sign_webhook(body, secret), "Content-Type": "application/json"}
    return _build


@pytest.fixture
def owner():
    return dict(OWNER)


@pytest.fixture
def other_user():
    return dict(OTHER_USER)


@pytest.fixture
def admin_user():
    return dict(ADMIN)


@pytest_asyncio.fixture(scope="function")
async def sample_tour(test_session):
    """An active tour priced at $100.00 per traveler."""
    tour = Tour(
        title="Northern Lights Adventure",
        slug="northern-lights-adventure",
        description="Experience the magical Aurora Borealis in Iceland",
        price_amount=10000,
        price_currency="USD",
    )
    test_session.add(tour)
    await test_session.commit()
    return tour


@pytest_asyncio.fixture(scope="function")
async def sample_departure(test_session, sample_tour):
    """A departure with ten seats, none booked."""
    departure = Departure(
        tour_id=sample_tour.id,
        starts_at=datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc),
        ends_at=datetime(2030, 6, 6, 18, 0, tzinfo=timezone.utc),
        available_slots=10,
        booked_slots=0,
    )
    test_session.add(departure)
    await test_session.commit()
    return departure


@pytest_asyncio.fixture(scope="function")
async def sample_add_on(test_session, sample_tour):
    """A $20.00 add-on for the sample tour."""
    add_on = AddOn(tour_id=sample_tour.id, name="Airport transfer", price_amount=2000, display_order=0)
    test_session.add(add_on)
    await test_session.commit()
    return add_on


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, gateway):
    """Create the application with the database and processor overridden."""
    from tourbook.main import create_app

    app = create_app()

    # Override database dependency
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def booking_request_data(sample_tour, sample_departure):
    """Two adults on the sample departure, paying in full."""
    return {
        "tour_id": str(sample_tour.id),
        "departure_id": str(sample_departure.id),
        "adults": 2,
        "travelers": [
            {"full_name": "Olive Owner", "age": 34},
            {"full_name": "Otto Owner", "age": 36},
        ],
    }
