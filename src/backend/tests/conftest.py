"""Pytest configuration and fixtures for telemetry core tests."""

import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from greenbro.core.config import Settings
from greenbro.main import create_app
from greenbro.models import AlertRuleRow, Base, Device
from greenbro.services.device_directory import DeviceRef
from greenbro.services.health_service import HealthState

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine, as services receive it."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def org_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def site_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture(scope="function")
async def test_device(db_session: AsyncSession, org_id, site_id) -> Device:
    """Create a provisioned heat pump."""
    device = Device(
        id=uuid.uuid4(),
        external_id="HP-0001",
        name="Plant room heat pump",
        organisation_id=org_id,
        site_id=site_id,
        created_at=T0,
        updated_at=T0,
    )
    db_session.add(device)
    await db_session.commit()
    return device


@pytest.fixture
def device_ref(test_device: Device) -> DeviceRef:
    return DeviceRef.from_model(test_device)


@pytest.fixture
def make_rule(db_session: AsyncSession, org_id):
    """Factory persisting an enabled alert rule row."""

    async def _make_rule(**overrides) -> AlertRuleRow:
        values = {
            "id": uuid.uuid4(),
            "org_id": org_id,
            "metric": "supply_temp",
            "rule_type": "threshold_above",
            "threshold": 60.0,
            "severity": "warning",
            "enabled": True,
        }
        values.update(overrides)
        row = AlertRuleRow(**values)
        db_session.add(row)
        await db_session.commit()
        return row

    return _make_rule


@pytest.fixture
def health() -> HealthState:
    return HealthState()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        mqtt_url="",
        metrics_enabled=False,
    )


@pytest.fixture
def app(test_settings):
    """Fresh application; the lifespan is not run, so no broker or database."""
    return create_app(test_settings)


@pytest_asyncio.fixture(scope="function")
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
