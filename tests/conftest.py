"""
Pytest configuration and fixtures for Vinclub tests.

Database tests run against an in-memory SQLite database (aiosqlite);
carrier APIs are served by an httpx.MockTransport.
"""
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["LABEL_RETRY_ENABLED"] = "false"
os.environ["TRACKING_SYNC_ENABLED"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["DB_CREATE_TABLES"] = "false"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from vinclub.core.config import Settings
from vinclub.core.database import Base
from vinclub.models import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    Wine,
    WineCave,
)
from vinclub.modules.shipping.carriers import build_carrier_registry
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.webhook_verifier import WebhookVerifier

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "test-admin-token"

PERIOD_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 3, 31, tzinfo=timezone.utc)


# ==================== Settings / DB ====================


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENVIRONMENT="development",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_SECRET_KEY="",
        ALLOCATION_ORDER="newest_first",
        DEFAULT_CARRIER="chronopost",
        CARRIER_MAX_RETRIES=0,
        CARRIER_TIMEOUT_SECONDS=2.0,
        CHRONOPOST_API_KEY="chrono-key",
        CHRONOPOST_BASE_URL="https://chronopost.test/v1",
        COLISSIMO_API_KEY="coli-key",
        COLISSIMO_BASE_URL="https://colissimo.test/v1",
        SHIPPING_ORIGIN_ADDRESS="1 Quai des Chartrons",
        SHIPPING_ORIGIN_CITY="Bordeaux",
        SHIPPING_ORIGIN_POSTAL_CODE="33000",
        LABEL_RETRY_MAX_ATTEMPTS=3,
        REDIS_URL="",
        ADMIN_API_TOKEN=ADMIN_TOKEN,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_db() -> AsyncMock:
    """Create mock async database session."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.execute = AsyncMock()
    return db


# ==================== Seed data ====================


async def seed_cave(db, stocks: List[int] = (2, 1, 0, 3, 1), **cave_fields) -> WineCave:
    """A cave whose wines are added one minute apart, in list order."""
    cave = WineCave(name="Cave des Chartrons", **cave_fields)
    db.add(cave)
    await db.flush()

    added = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i, stock in enumerate(stocks):
        db.add(Wine(
            wine_cave_id=cave.id,
            name=f"Wine {i + 1}",
            varietal="Merlot" if i % 2 == 0 else None,
            vintage=2018 + i,
            stock_quantity=stock,
            created_at=added + timedelta(minutes=i),
        ))
    await db.flush()
    return cave


async def seed_subscription(
    db,
    cave: WineCave,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    bottles: int = 3,
    external_id: str = "sub_123",
    period_start: Optional[datetime] = PERIOD_START,
    period_end: Optional[datetime] = PERIOD_END,
) -> Subscription:
    tier = SubscriptionTier(name="Découverte", bottles_per_month=bottles, monthly_price=49.0)
    db.add(tier)
    await db.flush()

    subscription = Subscription(
        member_id="member-1",
        wine_cave_id=cave.id,
        tier_id=tier.id,
        external_subscription_id=external_id,
        external_customer_id="cus_123",
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=False,
        recipient_name="Jeanne Martin",
        address_line1="12 Rue de la Paix",
        city="Paris",
        postal_code="75002",
        country_code="FR",
        phone="+33100000000",
    )
    db.add(subscription)
    await db.flush()
    await db.commit()
    return subscription


async def wine_stocks(db, cave_id: int) -> List[int]:
    from sqlalchemy import select

    result = await db.execute(
        select(Wine.stock_quantity).where(Wine.wine_cave_id == cave_id).order_by(Wine.id)
    )
    return [row[0] for row in result.all()]


# ==================== Webhooks ====================


def sign_payload(body: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for body."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_id: str, event_type: str, obj: Dict[str, Any]) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    })


def invoice_paid(event_id: str = "evt_paid_1", subscription: str = "sub_123",
                 start: datetime = datetime(2024, 4, 1, tzinfo=timezone.utc),
                 end: datetime = datetime(2024, 5, 1, tzinfo=timezone.utc)) -> str:
    return make_event(event_id, "invoice.payment_succeeded", {
        "id": f"in_{event_id}",
        "object": "invoice",
        "subscription": subscription,
        "customer": "cus_123",
        "lines": {"data": [{"period": {"start": int(start.timestamp()), "end": int(end.timestamp())}}]},
    })


@pytest.fixture
def verifier() -> WebhookVerifier:
    return WebhookVerifier(WEBHOOK_SECRET, tolerance_seconds=300)


# ==================== Carriers ====================


class FakeCarrierAPI:
    """
    In-process carrier backend for httpx.MockTransport.

    mode: "ok" | "unavailable" (503) | "rejected" (422)
    """

    def __init__(self):
        self.mode = "ok"
        self.requests: List[httpx.Request] = []
        self.tracking: Dict[str, Dict[str, Any]] = {}
        self.rates: List[Dict[str, Any]] = [
            {"service": "standard", "service_name": "Standard", "cost": 12.5,
             "delivery_days_min": 2, "delivery_days_max": 4},
        ]
        self._counter = 0

    def label_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "POST" and r.url.path.endswith("labels")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.mode == "unavailable":
            return httpx.Response(503, json={"error": "maintenance"})
        if self.mode == "rejected":
            return httpx.Response(422, json={"error": "invalid postal code"})

        path = request.url.path
        if request.method == "POST" and path.endswith("labels"):
            self._counter += 1
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "tracking_number": f"TRK{self._counter:06d}",
                "label_url": f"https://labels.test/{body['reference']}.pdf",
                "cost": 14.9,
                "estimated_delivery": "2024-04-05T12:00:00Z",
            })
        if request.method == "POST" and path.endswith("rates"):
            return httpx.Response(200, json={"rates": self.rates})
        if request.method == "GET" and "/tracking/" in path:
            tracking_number = path.rsplit("/", 1)[-1]
            if tracking_number not in self.tracking:
                return httpx.Response(404, json={"error": "unknown tracking number"})
            return httpx.Response(200, json=self.tracking[tracking_number])
        return httpx.Response(404)


@pytest.fixture
def carrier_api() -> FakeCarrierAPI:
    return FakeCarrierAPI()


@pytest_asyncio.fixture
async def registry(test_settings, carrier_api):
    registry = build_carrier_registry(test_settings, transport=httpx.MockTransport(carrier_api.handler))
    yield registry
    await registry.close()


@pytest.fixture
def gateway(registry) -> CarrierGateway:
    return CarrierGateway(registry)
