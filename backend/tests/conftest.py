"""
Pytest configuration and fixtures.
"""
import math
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courier_dispatch.core.database import Base
from courier_dispatch.core.exceptions import DependencyException
from courier_dispatch.services.assignment.engine import AssignmentEngine, AssignmentRequest, RadiusPolicy
from courier_dispatch.services.assignment.events import EventPublisher, RecordingListener
from courier_dispatch.services.assignment.ledger import PartnerLedger
from courier_dispatch.services.assignment.store import AssignmentStore
from courier_dispatch.services.assignment.sweeper import TimeoutSweeper
from courier_dispatch.services.container import DispatchServices
from courier_dispatch.services.geo.geometry import EARTH_RADIUS_KM, GeoPoint, haversine_km
from courier_dispatch.services.geo.partner_index import (
    DeliveryPartnerSnapshot,
    PartnerAvailability,
    PartnerPerformance,
)

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

RESTAURANT = GeoPoint(12.97, 77.59, "MG Road")
CUSTOMER = GeoPoint(12.93, 77.62, "Koramangala")

KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * math.pi / 180


def point_north_of(origin: GeoPoint, km: float) -> GeoPoint:
    """Point ``km`` kilometers due north of ``origin``."""
    return GeoPoint(origin.latitude + km / KM_PER_DEGREE_LAT, origin.longitude)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakePartnerIndex:
    """Deterministic in-memory partner index with a linear scan."""

    def __init__(self):
        self.snapshots: dict[str, DeliveryPartnerSnapshot] = {}
        self.fail_with: Optional[Exception] = None
        self.queries: list[tuple[GeoPoint, float]] = []

    async def upsert(self, snapshot: DeliveryPartnerSnapshot) -> None:
        self.snapshots[snapshot.partner_id] = snapshot

    async def remove(self, partner_id: str) -> bool:
        return self.snapshots.pop(partner_id, None) is not None

    async def get(self, partner_id: str) -> Optional[DeliveryPartnerSnapshot]:
        return self.snapshots.get(partner_id)

    async def set_availability(self, partner_id, status):
        snapshot = self.snapshots.get(partner_id)
        if snapshot is None:
            return None
        self.snapshots[partner_id] = replace(snapshot, availability_status=status)
        return self.snapshots[partner_id]

    async def find_candidates(self, center, radius_km, max_age_seconds=None, now=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.queries.append((center, radius_km))
        found = [
            s
            for s in self.snapshots.values()
            if s.availability_status == PartnerAvailability.ONLINE
            and haversine_km(center, s.location) <= radius_km
            and (
                max_age_seconds is None
                or now is None
                or now - s.reported_at <= timedelta(seconds=max_age_seconds)
            )
        ]
        return sorted(found, key=lambda s: (haversine_km(center, s.location), s.partner_id))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async engine for tests; one shared in-memory connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory, clock) -> AssignmentStore:
    return AssignmentStore(session_factory, clock=clock)


@pytest.fixture
def ledger(session_factory, clock) -> PartnerLedger:
    return PartnerLedger(session_factory, clock=clock)


@pytest.fixture
def partner_index() -> FakePartnerIndex:
    return FakePartnerIndex()


@pytest.fixture
def recorder() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def publisher(recorder) -> EventPublisher:
    return EventPublisher([recorder])


@pytest.fixture
def engine(store, ledger, partner_index, publisher, clock) -> AssignmentEngine:
    return AssignmentEngine(
        store=store,
        ledger=ledger,
        index=partner_index,
        publisher=publisher,
        lease_seconds=30,
        default_radius_km=5.0,
        max_attempts=3,
        radius_policy=RadiusPolicy(),
        clock=clock,
    )


@pytest.fixture
def sweeper(engine, clock) -> TimeoutSweeper:
    return TimeoutSweeper(engine, batch_size=100, pending_retry_seconds=60, clock=clock)


@pytest.fixture
def services(partner_index, store, ledger, publisher, engine, sweeper) -> DispatchServices:
    return DispatchServices(
        index=partner_index,
        store=store,
        ledger=ledger,
        publisher=publisher,
        engine=engine,
        sweeper=sweeper,
    )


@pytest_asyncio.fixture(scope="function")
async def client(services, db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client wired to the test services."""
    from courier_dispatch.core.database import get_db
    from courier_dispatch.main import app

    async def override_get_db():
        yield db_session

    app.state.services = services
    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.services = None


# Sample data fixtures
@pytest.fixture
def make_partner(clock):
    """Build a partner snapshot near the restaurant."""

    def _make(
        partner_id: str,
        km: float = 1.0,
        acceptance_rate: float = 100.0,
        avg_response_time_seconds: Optional[float] = 10.0,
        current_load: int = 0,
        max_concurrent_orders: int = 1,
        availability_status: PartnerAvailability = PartnerAvailability.ONLINE,
        reported_at: Optional[datetime] = None,
    ) -> DeliveryPartnerSnapshot:
        return DeliveryPartnerSnapshot(
            partner_id=partner_id,
            location=point_north_of(RESTAURANT, km),
            reported_at=reported_at or clock(),
            availability_status=availability_status,
            performance=PartnerPerformance(
                acceptance_rate=acceptance_rate,
                avg_response_time_seconds=avg_response_time_seconds,
            ),
            current_load=current_load,
            max_concurrent_orders=max_concurrent_orders,
        )

    return _make


@pytest.fixture
def add_partner(partner_index, ledger, make_partner):
    """Register a partner with the index and the capacity ledger."""

    async def _add(partner_id: str, **kwargs) -> DeliveryPartnerSnapshot:
        snapshot = make_partner(partner_id, **kwargs)
        await ledger.ensure_partner(partner_id, snapshot.max_concurrent_orders)
        await partner_index.upsert(snapshot)
        return snapshot

    return _add


@pytest.fixture
def make_request():
    """Build an AssignmentRequest for an order."""

    def _make(order_id: str = "order-1", **kwargs) -> AssignmentRequest:
        defaults = dict(
            order_id=order_id,
            customer_id="customer-1",
            restaurant_id="restaurant-1",
            restaurant_location=RESTAURANT,
            customer_location=CUSTOMER,
            order_total_amount=Decimal("24.50"),
            order_item_count=3,
            special_instructions="Ring twice",
            estimated_preparation_minutes=15,
        )
        defaults.update(kwargs)
        return AssignmentRequest(**defaults)

    return _make


@pytest.fixture
def sample_assignment_payload():
    """Sample POST /assignments body."""
    return {
        "order_id": "order-api-1",
        "customer_id": "customer-1",
        "restaurant_id": "restaurant-1",
        "restaurant_location": {"latitude": 12.97, "longitude": 77.59, "address": "MG Road"},
        "customer_location": {"latitude": 12.93, "longitude": 77.62},
        "order_summary": {"total_amount": "24.50", "item_count": 3},
        "priority": 2,
    }


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for tests."""
    redis = MagicMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.mget = AsyncMock(return_value=[])
    redis.geosearch = AsyncMock(return_value=[])
    redis.delete = AsyncMock()

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[True, 1])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=pipe)
    return redis


@pytest.fixture
def index_unavailable():
    return DependencyException("partner index", "connection refused")
