"""
Shared fixtures: in-memory database, ASGI client, and patched side effects
(WebSocket fan-out and the Celery callback queue).
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["STAFF_API_TOKEN"] = "test-staff-token"
os.environ["ENV_MODE"] = "development"
os.environ["DEBUG"] = "false"

import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db, seed_counters
from app.main import app
from app.models import MenuItem, Platform, PlatformConfig
from app.services import events
from app.services.aggregator.callbacks import get_callback_dispatcher
from app.services.aggregator.ingestion import get_ingestion_service
from app.services.aggregator.signature import compute_signature
from app.tasks import deliver_status_callback

WEBHOOK_SECRET = "whsec_test_secret"


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        await seed_counters(session)
    return maker


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def broadcast():
    """Captures fan-out events instead of sending them."""
    with patch.object(events.manager, "broadcast", new=AsyncMock(return_value=0)) as mock:
        yield mock


@pytest.fixture(autouse=True)
def enqueued():
    """Captures Celery callback jobs instead of sending them to the broker."""
    get_callback_dispatcher.cache_clear()
    get_ingestion_service.cache_clear()
    with patch.object(deliver_status_callback, "delay", return_value=Mock(id="task-123")) as mock:
        yield mock


@pytest_asyncio.fixture
async def client(db_session):
    """ASGI client sharing the test session."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": "Bearer test-admin-token"}


@pytest.fixture
def staff_headers():
    return {"Authorization": "Bearer test-staff-token"}


@pytest.fixture
def make_config(db_session):
    """Saves a PlatformConfig; enabled with a webhook secret unless overridden."""
    async def _make(platform: Platform = Platform.SWIGGY, **overrides) -> PlatformConfig:
        values = {
            "platform": platform,
            "is_enabled": True,
            "api_key": "sk_live_abcd1234",
            "api_secret": "api_secret_value",
            "store_id": "STORE-42",
            "webhook_secret": WEBHOOK_SECRET,
            "platform_base_url": f"https://partner.{platform.value}.test",
            "auto_accept": False,
            "default_prep_time": 25,
            "menu_overrides": [],
        }
        values.update(overrides)
        config = PlatformConfig(**values)
        db_session.add(config)
        await db_session.commit()
        return config

    return _make


@pytest_asyncio.fixture
async def menu_items(db_session):
    items = [
        MenuItem(name="Paneer Butter Masala", category="Main Course", price=240.0, is_veg=True),
        MenuItem(name="Garlic Naan", category="Breads", price=60.0, is_veg=True),
        MenuItem(name="Chicken Biryani", category="Rice", price=320.0, is_veg=False),
    ]
    db_session.add_all(items)
    await db_session.commit()
    return items


@pytest.fixture
def swiggy_payload():
    def _payload(order_id: str = "SW-1001", **overrides) -> dict:
        payload = {
            "order_id": order_id,
            "customer": {"name": "Asha Rao", "phone": "+91-9800000001"},
            "delivery_address": {
                "line1": "12 MG Road",
                "landmark": "Near Metro",
                "city": "Bengaluru",
                "pincode": "560001",
            },
            "items": [
                {"name": "Paneer Butter Masala", "quantity": 2, "unit_price": 240},
                {"name": "Garlic Naan", "qty": 3, "price": 180, "notes": "extra butter"},
            ],
        }
        payload.update(overrides)
        return payload

    return _payload


@pytest.fixture
def signed():
    """Serializes a payload and returns (body, headers) signed with the test secret."""
    def _signed(payload, platform: Platform = Platform.SWIGGY, secret: str = WEBHOOK_SECRET):
        body = json.dumps(payload).encode()
        headers = {f"x-{platform.value}-signature": compute_signature(secret, body)}
        return body, headers

    return _signed
