import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from sqlalchemy.pool import StaticPool

from gateway.config import Settings
from gateway.database import create_engine, init_db
from gateway.models import Merchant, Order
from gateway.queues import JobQueue
from gateway.store import EntityStore

WEBHOOK_URL = "https://merchant.example.com/webhooks"
WEBHOOK_SECRET = "whsec_test_abc123"
AUTH = {"X-Api-Key": "key_test_abc123", "X-Api-Secret": "secret_test_xyz789"}


@pytest.fixture
def settings():
    """Deterministic settings: forced success, no settlement delay."""
    return Settings(
        test_mode=True,
        test_processing_delay=0,
        test_payment_success=True,
        webhook_fast_retries=True,
    )


@pytest_asyncio.fixture
async def store():
    # One shared connection so every session sees the same in-memory database
    engine = create_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    store = EntityStore(engine)
    yield store
    await store.close()


@pytest.fixture
def mock_queue():
    return AsyncMock(spec=JobQueue)


@pytest_asyncio.fixture
async def merchant(store):
    return await store.add_merchant(
        Merchant(
            name="Test Merchant",
            email="test@example.com",
            api_key="key_test_abc123",
            api_secret="secret_test_xyz789",
            webhook_url=WEBHOOK_URL,
            webhook_secret=WEBHOOK_SECRET,
        )
    )


@pytest_asyncio.fixture
async def order(store, merchant):
    return await store.create_order(Order(merchant_id=merchant.id, amount=50000, currency="INR"))
