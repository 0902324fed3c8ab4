"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import src.models  # noqa: F401  registers every table on Base.metadata
from src.core.database import Base, get_db_session, get_session_factory
from src.main import app
from src.models.plan import Plan
from src.models.port import Port, PortStatus
from src.models.port_allocation_log import PortAllocationLog
from src.models.subscription import Subscription, SubscriptionStatus
from src.models.user import User
from src.services.allocation_engine import AllocationEngine
from src.services.events import EventPublisher, PortEvent

# Test database URL (using SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Ports are seeded with increasing creation times so "oldest first" is deterministic
BASE_TIME = datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


class RecordingEventPublisher(EventPublisher):
    """Event publisher that keeps published events in memory."""

    def __init__(self):
        super().__init__()
        self.events: List[PortEvent] = []

    async def publish_event(self, event: PortEvent) -> bool:
        self.events.append(event)
        return True

    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


class Seeder:
    """Inserts fixture rows, each in its own committed transaction."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._counter = 0

    async def _add(self, instance):
        async with self.session_factory() as session:
            session.add(instance)
            await session.commit()
        return instance

    async def user(self, name: str = "Jane Customer", email: Optional[str] = None, role: str = "CUSTOMER") -> User:
        self._counter += 1
        email = email or f"user{self._counter}@example.com"
        return await self._add(User(name=name, email=email, role=role))

    async def plan(self, name: str = "Business") -> Plan:
        return await self._add(Plan(name=name))

    async def subscription(
        self,
        customer: Optional[User] = None,
        plan: Optional[Plan] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **fields,
    ) -> Subscription:
        customer = customer or await self.user()
        self._counter += 1
        return await self._add(Subscription(
            customer_id=customer.id,
            plan_id=plan.id if plan else None,
            status=status.value,
            created_at=BASE_TIME + timedelta(seconds=self._counter),
            **fields,
        ))

    async def port(
        self,
        instance_url: Optional[str] = None,
        status: PortStatus = PortStatus.AVAILABLE,
        **fields,
    ) -> Port:
        self._counter += 1
        return await self._add(Port(
            instance_url=instance_url or f"https://instance-{self._counter}.example.com",
            status=status.value,
            created_at=BASE_TIME + timedelta(seconds=self._counter),
            **fields,
        ))


@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test database."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory):
    """Row factory for users, plans, subscriptions and ports."""
    return Seeder(session_factory)


@pytest.fixture
def fetch(session_factory):
    """Read a row back in a fresh session."""

    async def _fetch(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)

    return _fetch


@pytest.fixture
def audit_entries(session_factory):
    """All allocation log entries, oldest first."""

    async def _entries(**filters):
        query = select(PortAllocationLog).order_by(PortAllocationLog.created_at.asc())
        for column, value in filters.items():
            query = query.where(getattr(PortAllocationLog, column) == value)
        async with session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    return _entries


@pytest.fixture
def event_publisher():
    return RecordingEventPublisher()


@pytest.fixture
def allocation_engine(session_factory, event_publisher):
    """Allocation engine over the test database."""
    return AllocationEngine(session_factory, event_publisher)


@pytest.fixture
def admin_id():
    """Test administrator ID."""
    return "550e8400-e29b-41d4-a716-446655440098"


@pytest_asyncio.fixture
async def client(session_factory):
    """Create a test client with database dependency overrides."""

    async def get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = get_test_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
