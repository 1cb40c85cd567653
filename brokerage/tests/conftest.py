"""Shared test fixtures for the brokerage test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions).
"""

import itertools
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from brokerage.database import Base, get_db
from brokerage.main import app
from brokerage.models import *  # noqa: ensure all models are loaded for create_all
from brokerage.services.execution_service import ExecutionQueue, get_dispatcher, get_execution_queue
from brokerage.services.stripe_service import get_stripe_service
from brokerage.tests.support import FakeStripe, TestSession, make_dispatcher, test_engine


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
def dispatcher():
    return make_dispatcher()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
async def execution_queue(dispatcher, fake_stripe):
    """Single-worker queue on the test session factory; tests await ``join()``."""
    queue = ExecutionQueue(TestSession, dispatcher=dispatcher, workers=1, maxsize=100, stripe=fake_stripe)
    queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
async def client(execution_queue, dispatcher, fake_stripe):
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_execution_queue] = lambda: execution_queue
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_stripe_service] = lambda: fake_stripe

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def operator_headers():
    from brokerage.core.auth import create_access_token

    token = create_access_token("operator-1", "Test Operator")
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


_created_clock = itertools.count()


def _created_at() -> datetime:
    # Strictly increasing so creation-order tie breaks are deterministic
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    return base + timedelta(milliseconds=next(_created_clock))


@pytest.fixture
def make_agent(db: AsyncSession):
    """Factory fixture: create an AutonomousAgent (worker)."""
    from brokerage.models.agent import AutonomousAgent

    async def _make(agent_type: str = "api_consumer", status: str = "idle",
                    performance_score: float = 0.5, **kwargs):
        agent = AutonomousAgent(
            id=_new_id(),
            agent_name=kwargs.get("agent_name", f"worker-{_new_id()[:8]}"),
            agent_type=agent_type,
            capabilities=json.dumps(kwargs.get("capabilities", [])),
            status=status,
            performance_score=Decimal(str(performance_score)),
            success_rate=Decimal("1"),
            daily_budget=Decimal(str(kwargs.get("daily_budget", 100))),
            error_count=kwargs.get("error_count", 0),
            created_at=_created_at(),
        )
        db.add(agent)
        await db.commit()
        await db.refresh(agent)
        return agent

    return _make


@pytest.fixture
def make_api_key(db: AsyncSession):
    """Factory fixture: create an ApiKey and return (key, raw_key)."""
    from brokerage.services.api_key_service import create_api_key

    async def _make(owner_id: str = "owner-1", **kwargs):
        return await create_api_key(db, owner_id=owner_id, name=kwargs.pop("name", "test key"), **kwargs)

    return _make


@pytest.fixture
def make_seller(db: AsyncSession):
    from brokerage.models.product import Seller

    async def _make(stripe_account_id: str | None = "acct_test_123"):
        seller = Seller(
            id=_new_id(),
            business_name=f"Seller {_new_id()[:6]}",
            email=f"seller-{_new_id()[:6]}@test.com",
            stripe_account_id=stripe_account_id,
        )
        db.add(seller)
        await db.commit()
        await db.refresh(seller)
        return seller

    return _make


@pytest.fixture
def make_product(db: AsyncSession):
    """Factory fixture: create an ApiProduct (a simulated target unless an endpoint is given)."""
    from brokerage.models.product import ApiProduct

    async def _make(price_per_call: float = 1.0, **kwargs):
        product = ApiProduct(
            id=_new_id(),
            seller_id=kwargs.get("seller_id"),
            name=kwargs.get("name", f"Product {_new_id()[:6]}"),
            description=kwargs.get("description", "Test product"),
            api_endpoint=kwargs.get("api_endpoint", "simulated://test"),
            request_method=kwargs.get("request_method", "POST"),
            request_headers=json.dumps(kwargs.get("request_headers", {})),
            auth_method=kwargs.get("auth_method", "none"),
            auth_credentials=json.dumps(kwargs.get("auth_credentials", {})),
            price_per_call=Decimal(str(price_per_call)),
            rate_limit_per_minute=kwargs.get("rate_limit_per_minute", 60),
            rate_limit_per_hour=kwargs.get("rate_limit_per_hour", 1000),
            is_active=kwargs.get("is_active", True),
            active_consumers=kwargs.get("active_consumers", 0),
            created_at=_created_at(),
        )
        db.add(product)
        await db.commit()
        await db.refresh(product)
        return product

    return _make


@pytest.fixture
def make_usage(db: AsyncSession):
    """Factory fixture: add hourly usage rows for a product."""
    from brokerage.models.product import ApiUsageMetric

    async def _make(api_product_id: str, hours: int = 3, calls: int = 100, successes: int | None = None):
        now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        for i in range(hours):
            db.add(ApiUsageMetric(
                api_product_id=api_product_id,
                consumer_id="consumer-1",
                time_window=now - timedelta(hours=i + 1),
                time_granularity="hour",
                call_count=calls,
                success_count=calls if successes is None else successes,
                error_count=0 if successes is None else calls - successes,
                avg_response_time_ms=120,
                total_cost=0,
            ))
        await db.commit()

    return _make


@pytest.fixture
def make_listing(db: AsyncSession):
    """Factory fixture: create a MarketplaceListing."""
    from brokerage.models.product import MarketplaceListing

    async def _make(price: float = 5.0, agent_id: str | None = None, **kwargs):
        listing = MarketplaceListing(
            id=_new_id(),
            agent_id=agent_id,
            api_product_id=kwargs.get("api_product_id"),
            name=kwargs.get("name", "Test listing"),
            short_description="Test listing",
            description="Test listing description",
            category=kwargs.get("category", "automation"),
            tags=json.dumps(kwargs.get("tags", ["test"])),
            price_per_execution=Decimal(str(price)),
            min_credits_required=1,
            status=kwargs.get("status", "active"),
            is_public=True,
            is_featured=kwargs.get("is_featured", False),
        )
        db.add(listing)
        await db.commit()
        await db.refresh(listing)
        return listing

    return _make
