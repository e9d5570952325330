"""
Centralized Test Configuration.
"""

from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.dependencies import get_spatial_index
from backend.app.core.redis_client import get_redis
from backend.app.core.reliability import spatial_circuit_breaker
from backend.app.domain.tracking.spatial_index import GridSpatialIndex
from backend.app.models.fleet_vehicle import FleetVehicle
from backend.app.services.cache import CacheService
import backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def delete(self, key):
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def spatial_index():
    return GridSpatialIndex(cell_size_degrees=0.05)


@pytest.fixture(autouse=True)
def apply_overrides(mock_redis, spatial_index, monkeypatch):
    """Route the app to the in-memory database, grid index and mock Redis."""
    monkeypatch.setattr(redis_client_module, "redis_client", mock_redis)

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return mock_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_spatial_index] = lambda: spatial_index
    yield

    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await CacheService.clear()
    spatial_circuit_breaker.reset_state()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def vehicle_factory(db_session):
    """Register fleet vehicles the tracking engine can ingest fixes for."""
    counter = {"n": 0}

    async def _create(vehicle_number=None, vehicle_type="Truck"):
        counter["n"] += 1
        vehicle = FleetVehicle(
            vehicle_number=vehicle_number or f"V{counter['n']}",
            vehicle_type=vehicle_type,
            is_active=True,
        )
        db_session.add(vehicle)
        await db_session.commit()
        await db_session.refresh(vehicle)
        return vehicle

    return _create


@pytest.fixture
def base_time():
    """A fixed reference instant well in the past of the test run."""
    return datetime.utcnow().replace(microsecond=0) - timedelta(hours=1)
